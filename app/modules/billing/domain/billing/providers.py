"""Per-provider webhook wiring: signature scheme, secrets, event allow-list, adapter."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, FrozenSet, Optional, Type

import structlog
from pydantic import ValidationError

from app.models.billing import PaymentProvider
from app.modules.billing.domain.billing.events import (
    FlutterwaveChargeEvent,
    PaymentEvent,
    PaystackChargeEvent,
    ProviderChargeEvent,
    parse_envelope,
)
from app.modules.billing.domain.billing.signatures import DigestFactory, verify_signature
from app.shared.core.config import Settings
from app.shared.core.exceptions import MalformedPayload, UnsupportedEventType

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProviderSpec:
    provider: PaymentProvider
    signature_header: str
    digest: DigestFactory
    secret: Callable[[Settings], Optional[str]]
    allowed_events: FrozenSet[str]
    model: Type[ProviderChargeEvent]

    @property
    def name(self) -> str:
        return self.provider.value

    def verify(self, raw_body: bytes, signature: Optional[str], settings: Settings) -> bool:
        return verify_signature(
            raw_body,
            signature,
            self.secret(settings),
            self.digest,
            provider=self.name,
        )

    def route(self, raw_body: bytes, received_at: datetime) -> PaymentEvent:
        """
        Parse, allow-list and adapt a verified webhook body.

        Parse and shape errors surface as MalformedPayload without the parser's
        message; unknown event types as UnsupportedEventType.
        """
        try:
            envelope = parse_envelope(raw_body)
        except ValueError:
            logger.warning("webhook_payload_unparseable", provider=self.name)
            raise MalformedPayload()

        event_type = envelope.get("event")
        if not isinstance(event_type, str) or event_type not in self.allowed_events:
            logger.info(
                "webhook_event_type_unsupported",
                provider=self.name,
                event_type=str(event_type)[:64],
            )
            raise UnsupportedEventType()

        try:
            variant = self.model.model_validate(envelope)
        except ValidationError as exc:
            logger.warning(
                "webhook_payload_invalid_shape",
                provider=self.name,
                event_type=event_type,
                error_count=exc.error_count(),
            )
            raise MalformedPayload()

        return variant.to_payment_event(envelope, raw_body, received_at)


PROVIDERS = {
    PaymentProvider.PAYSTACK: ProviderSpec(
        provider=PaymentProvider.PAYSTACK,
        signature_header="x-paystack-signature",
        digest=hashlib.sha512,
        secret=lambda settings: settings.paystack_webhook_secret,
        allowed_events=frozenset({"charge.success"}),
        model=PaystackChargeEvent,
    ),
    PaymentProvider.FLUTTERWAVE: ProviderSpec(
        provider=PaymentProvider.FLUTTERWAVE,
        signature_header="verif-hash",
        digest=hashlib.sha256,
        secret=lambda settings: settings.flutterwave_webhook_secret,
        allowed_events=frozenset({"charge.completed"}),
        model=FlutterwaveChargeEvent,
    ),
}


def get_provider_spec(provider: PaymentProvider) -> ProviderSpec:
    return PROVIDERS[provider]
