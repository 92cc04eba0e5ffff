"""
Webhook ingestion pipeline.

verify signature -> replay guard -> transient registry -> route -> durable
idempotency -> tenant -> subscription -> entitlement -> ledger -> commit ->
detached payment alert.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.billing import PaymentProvider
from app.modules.billing.domain.billing.entitlement_policy import apply_entitlement
from app.modules.billing.domain.billing.events import PaymentEvent
from app.modules.billing.domain.billing.payment_ledger import record_payment
from app.modules.billing.domain.billing.providers import ProviderSpec, get_provider_spec
from app.modules.billing.domain.billing.replay_guard import ReplayGuard
from app.modules.billing.domain.billing.replay_registry import ReplayRegistry
from app.modules.billing.domain.billing.subscription_state import apply_subscription_event
from app.modules.billing.domain.billing.tenant_resolver import (
    TenantRef,
    lock_organization,
    resolve_tenant,
)
from app.modules.billing.domain.billing.webhook_events import record_webhook_event
from app.shared.core.config import Settings
from app.shared.core.exceptions import (
    AuthenticationFailure,
    BillingWebhookException,
    MalformedPayload,
    OrganizationNotFound,
)
from app.shared.core.notifications import NotificationDispatcher
from app.shared.core.ops_metrics import WEBHOOK_EVENTS_TOTAL, WEBHOOK_PROCESSING_SECONDS

logger = structlog.get_logger()


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    IDEMPOTENT = "idempotent"
    ACKNOWLEDGED = "acknowledged"


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    event: Optional[PaymentEvent] = None
    tenant: Optional[TenantRef] = None
    applied: bool = False

    @property
    def idempotent(self) -> bool:
        return self.outcome is WebhookOutcome.IDEMPOTENT

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": "success", "received": True}
        if self.idempotent:
            body["idempotent"] = True
        return body


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookProcessor:
    """
    Processes one provider webhook delivery.

    Everything up to and including the commit runs before the response; the
    payment alert is detached. Any unexpected failure after the signature and
    replay checks rolls back, forgets the header id and surfaces as a generic
    invalid-payload rejection.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        replay_registry: ReplayRegistry,
        notifier: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_maker = session_maker
        self.replay_registry = replay_registry
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self.replay_guard = ReplayGuard(settings.WEBHOOK_ALLOWED_SKEW_SECONDS, clock)

    async def process(
        self,
        provider: PaymentProvider,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookResult:
        spec = get_provider_spec(provider)
        started = time.perf_counter()
        try:
            result = await self._process(spec, raw_body, headers)
        except BillingWebhookException as exc:
            WEBHOOK_EVENTS_TOTAL.labels(provider=spec.name, outcome="rejected").inc()
            logger.info(
                "webhook_rejected",
                provider=spec.name,
                code=exc.code,
                status_code=exc.status_code,
            )
            raise
        finally:
            WEBHOOK_PROCESSING_SECONDS.labels(provider=spec.name).observe(
                time.perf_counter() - started
            )

        WEBHOOK_EVENTS_TOTAL.labels(provider=spec.name, outcome=result.outcome.value).inc()
        return result

    async def _process(
        self,
        spec: ProviderSpec,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookResult:
        if not spec.verify(raw_body, headers.get(spec.signature_header), self.settings):
            raise AuthenticationFailure()

        replay = self.replay_guard.check(headers)
        structlog.contextvars.bind_contextvars(
            provider=spec.name, header_event_id=replay.event_id
        )

        header_key = f"{spec.name}:{replay.event_id}"
        if not await self.replay_registry.claim(header_key):
            logger.info("webhook_duplicate_delivery", tier="header")
            return WebhookResult(WebhookOutcome.IDEMPOTENT)

        try:
            event = spec.route(raw_body, received_at=replay.event_timestamp)
            provider_key = f"{spec.name}#{event.event_id}"
            if await self.replay_registry.contains(provider_key):
                logger.info(
                    "webhook_duplicate_delivery", tier="provider", event_id=event.event_id
                )
                return WebhookResult(WebhookOutcome.IDEMPOTENT, event=event)

            result = await asyncio.wait_for(
                self._apply(event),
                timeout=self.settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
            )
        except BillingWebhookException:
            await self.replay_registry.release(header_key)
            raise
        except Exception as exc:
            await self.replay_registry.release(header_key)
            logger.warning(
                "webhook_processing_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            raise MalformedPayload() from exc

        # Every outcome of _apply is backed by a committed webhook_events row.
        await self.replay_registry.claim(provider_key)
        if result.outcome is WebhookOutcome.PROCESSED:
            self._emit_payment_alert(result)
        return result

    async def _apply(self, event: PaymentEvent) -> WebhookResult:
        provider = event.provider.value
        async with self.session_maker() as db:
            try:
                if not await record_webhook_event(db, provider, event.event_id):
                    await db.rollback()
                    return WebhookResult(WebhookOutcome.IDEMPOTENT, event=event)

                tenant = await resolve_tenant(db, event)
                organization = await lock_organization(db, tenant.org_id)
                if organization is None:
                    if not self.settings.WEBHOOK_ACK_UNKNOWN_ORG:
                        raise OrganizationNotFound(details={"org_id": tenant.org_id})
                    await db.commit()
                    logger.warning(
                        "webhook_org_missing_acknowledged",
                        org_id=tenant.org_id,
                        event_id=event.event_id,
                    )
                    return WebhookResult(
                        WebhookOutcome.ACKNOWLEDGED, event=event, tenant=tenant
                    )

                now = self.clock()
                transition = await apply_subscription_event(db, tenant, event, now=now)
                if transition.applied:
                    await apply_entitlement(
                        db=db,
                        org_id=tenant.org_id,
                        status=transition.status,
                        source=f"webhook:{provider}",
                        grace_period_days=self.settings.BILLING_GRACE_PERIOD_DAYS,
                        now=now,
                    )
                await record_payment(db, tenant, event)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

        logger.info(
            "webhook_processed",
            event_id=event.event_id,
            org_id=tenant.org_id,
            tenant_source=tenant.source,
            status=transition.status.value,
            applied=transition.applied,
        )
        return WebhookResult(
            WebhookOutcome.PROCESSED,
            event=event,
            tenant=tenant,
            applied=transition.applied,
        )

    def _emit_payment_alert(self, result: WebhookResult) -> None:
        event, tenant = result.event, result.tenant
        if event is None or tenant is None or not event.is_terminal:
            return

        if event.is_success:
            title, priority = "Payment received", "medium"
            message = (
                f"Payment of {event.amount} {event.currency} for plan "
                f"{tenant.plan_code} was successful."
            )
        else:
            title, priority = "Payment failed", "high"
            message = (
                f"Payment of {event.amount} {event.currency} for plan "
                f"{tenant.plan_code} failed. Please update your payment method."
            )

        self.notifier.emit_payment_alert(
            tenant.org_id,
            title,
            message,
            priority,
            data={
                "provider": event.provider.value,
                "reference": event.reference,
                "amount": str(event.amount),
                "currency": event.currency,
                "status": event.status,
                "plan_code": tenant.plan_code,
            },
        )
