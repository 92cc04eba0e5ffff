"""
Provider webhook envelopes and the common `PaymentEvent` they are adapted into.

Each provider event family is a tagged pydantic variant (the `event` literal is
the tag). Variants are permissive about extra fields, strict about the shape of
the fields the billing flow reads.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any, Literal, Mapping

from pydantic import AfterValidator, AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field

from app.models.billing import PaymentProvider

SUCCESS_STATUSES = frozenset({"success", "successful"})
FAILURE_STATUSES = frozenset({"failed"})

_CENTS = Decimal("0.01")

# Leaves room for the "{event_type}:" prefix inside the 255-char event id column.
MAX_IDENTIFIER_LENGTH = 200


def normalize_status(raw: str | None) -> str:
    return (raw or "").strip().lower()


def _coerce_identifier(value: Any) -> str | None:
    if isinstance(value, bool):
        raise ValueError("identifier must be a string or integer")
    if value is None:
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str):
        return value.strip() or None
    raise ValueError("identifier must be a string or integer")


def _bounded(value: str | None) -> str | None:
    if value is not None and len(value) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(f"identifier longer than {MAX_IDENTIFIER_LENGTH} characters")
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _decode_metadata(value: Any) -> dict[str, Any]:
    # Paystack forwards checkout metadata either as an object or as a JSON string.
    if isinstance(value, str):
        try:
            value = json.loads(value) if value.strip() else {}
        except ValueError:
            return {}
    return dict(value) if isinstance(value, Mapping) else {}


ProviderId = Annotated[
    str | None, BeforeValidator(_coerce_identifier), AfterValidator(_bounded)
]
ProviderTime = Annotated[
    datetime | None, BeforeValidator(_blank_to_none), AfterValidator(_as_utc)
]
Metadata = Annotated[dict[str, Any], BeforeValidator(_decode_metadata)]


def _quantize(amount: Decimal) -> Decimal:
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def _body_digest(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


@dataclass(frozen=True)
class PaymentEvent:
    """Provider-neutral view of a billing webhook."""

    provider: PaymentProvider
    event_type: str
    event_id: str
    transaction_id: str
    status: str
    amount: Decimal
    currency: str
    occurred_at: datetime
    raw: dict[str, Any] = field(repr=False, compare=False)
    # Provider-side completion time, None when the payload carries none.
    # Only this clock feeds the subscription ordering guard.
    completed_at: datetime | None = None
    reference: str | None = None
    invoice_id: str | None = None
    org_id: str | None = None
    plan_code: str | None = None
    external_customer_id: str | None = None
    external_sub_id: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None

    @property
    def normalized_status(self) -> str:
        return normalize_status(self.status)

    @property
    def is_success(self) -> bool:
        return self.normalized_status in SUCCESS_STATUSES

    @property
    def is_terminal(self) -> bool:
        status = self.normalized_status
        return status in SUCCESS_STATUSES or status in FAILURE_STATUSES


def _metadata_value(metadata: Mapping[str, Any], key: str, max_length: int) -> str | None:
    try:
        value = _coerce_identifier(metadata.get(key))
    except ValueError:
        return None
    if value is not None and len(value) > max_length:
        return None
    return value


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class PaystackCustomer(_ProviderModel):
    id: ProviderId = None
    customer_code: ProviderId = None
    email: str | None = None


class PaystackChargeData(_ProviderModel):
    id: ProviderId = None
    reference: ProviderId = None
    transaction_reference: ProviderId = None
    status: str | None = Field(default=None, max_length=32)
    amount: Decimal | None = Field(default=None, ge=0, lt=Decimal("1e12"))
    currency: str | None = Field(default=None, max_length=8)
    invoice: ProviderId = None
    subscription: ProviderId = None
    subscription_code: ProviderId = None
    paid_at: ProviderTime = None
    created_at: ProviderTime = Field(
        default=None, validation_alias=AliasChoices("createdAt", "created_at")
    )
    next_payment_date: ProviderTime = None
    customer: PaystackCustomer | None = None
    metadata: Metadata = Field(default_factory=dict)


class PaystackChargeEvent(_ProviderModel):
    event: Literal["charge.success"]
    data: PaystackChargeData

    def to_payment_event(self, raw: dict[str, Any], raw_body: bytes, received_at: datetime) -> PaymentEvent:
        data = self.data
        transaction_id = (
            data.id or data.reference or data.transaction_reference or _body_digest(raw_body)
        )
        customer = data.customer or PaystackCustomer()
        # Paystack amounts are in kobo/cents.
        amount = _quantize((data.amount or Decimal(0)) / 100)
        return PaymentEvent(
            provider=PaymentProvider.PAYSTACK,
            event_type=self.event,
            event_id=f"{self.event}:{transaction_id}",
            transaction_id=transaction_id,
            status=data.status or "",
            amount=amount,
            currency=(data.currency or "NGN").upper(),
            occurred_at=data.paid_at or data.created_at or received_at,
            completed_at=data.paid_at,
            raw=raw,
            reference=data.reference or data.id,
            invoice_id=data.invoice,
            org_id=_metadata_value(data.metadata, "orgId", 64),
            plan_code=_metadata_value(data.metadata, "planCode", 128),
            external_customer_id=customer.customer_code or customer.id,
            external_sub_id=data.subscription or data.subscription_code,
            period_start=data.paid_at or data.created_at,
            period_end=data.next_payment_date,
        )


class FlutterwaveCustomer(_ProviderModel):
    id: ProviderId = None
    email: str | None = None


class FlutterwaveChargeData(_ProviderModel):
    id: ProviderId = None
    tx_ref: ProviderId = None
    flw_ref: ProviderId = None
    status: str | None = Field(default=None, max_length=32)
    amount: Decimal | None = Field(default=None, ge=0, lt=Decimal("1e10"))
    currency: str | None = Field(default=None, max_length=8)
    plan: ProviderId = None
    payment_plan: ProviderId = None
    created_at: ProviderTime = None
    next_due_date: ProviderTime = None
    customer: FlutterwaveCustomer | None = None
    meta: Metadata = Field(default_factory=dict)


class FlutterwaveChargeEvent(_ProviderModel):
    event: Literal["charge.completed"]
    data: FlutterwaveChargeData

    def to_payment_event(self, raw: dict[str, Any], raw_body: bytes, received_at: datetime) -> PaymentEvent:
        data = self.data
        transaction_id = data.id or data.tx_ref or _body_digest(raw_body)
        customer = data.customer or FlutterwaveCustomer()
        return PaymentEvent(
            provider=PaymentProvider.FLUTTERWAVE,
            event_type=self.event,
            event_id=f"{self.event}:{transaction_id}",
            transaction_id=transaction_id,
            status=data.status or "",
            # Flutterwave amounts are already in major units.
            amount=_quantize(data.amount or Decimal(0)),
            currency=(data.currency or "USD").upper(),
            # created_at is when the charge was initiated, so it does not order
            # completed charges against each other.
            occurred_at=data.created_at or received_at,
            raw=raw,
            reference=data.tx_ref or data.id,
            invoice_id=data.id,
            org_id=_metadata_value(data.meta, "orgId", 64),
            plan_code=_metadata_value(data.meta, "planCode", 128),
            external_customer_id=customer.id,
            external_sub_id=data.plan or data.payment_plan,
            period_start=data.created_at,
            period_end=data.next_due_date,
        )


ProviderChargeEvent = PaystackChargeEvent | FlutterwaveChargeEvent


def parse_envelope(raw_body: bytes) -> dict[str, Any]:
    """Decode the JSON body. Raises ValueError when it is not a JSON object."""
    envelope = json.loads(raw_body)
    if not isinstance(envelope, dict):
        raise ValueError("webhook payload must be a JSON object")
    return envelope
