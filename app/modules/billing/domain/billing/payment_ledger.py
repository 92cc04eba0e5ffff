"""Append-only payment ledger writer."""

from __future__ import annotations

from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import SubscriptionPayment
from app.modules.billing.domain.billing.events import PaymentEvent
from app.modules.billing.domain.billing.tenant_resolver import TenantRef
from app.shared.core.ops_metrics import LEDGER_CONFLICTS_TOTAL

logger = structlog.get_logger()


async def record_payment(
    db: AsyncSession, tenant: TenantRef, event: PaymentEvent
) -> Optional[SubscriptionPayment]:
    """
    Append a ledger row for a terminal payment outcome.

    Returns None for non-terminal statuses and for charges already in the ledger.
    A duplicate `(provider, reference)` or `(provider, external_invoice_id)` only
    rolls back the savepoint; the webhook is still acknowledged.
    """
    if not event.is_terminal:
        logger.debug(
            "payment_ledger_skipped_non_terminal",
            org_id=tenant.org_id,
            status=event.status,
        )
        return None

    payment = SubscriptionPayment(
        org_id=tenant.org_id,
        provider=event.provider.value,
        plan_code=tenant.plan_code,
        external_sub_id=event.external_sub_id,
        external_invoice_id=event.invoice_id,
        reference=event.reference,
        amount=event.amount,
        currency=event.currency,
        status=event.status,
        event_type=event.event_type,
        occurred_at=event.occurred_at,
        raw=event.raw,
    )
    try:
        async with db.begin_nested():
            db.add(payment)
            await db.flush()
    except IntegrityError as exc:
        LEDGER_CONFLICTS_TOTAL.labels(provider=event.provider.value).inc()
        logger.warning(
            "payment_ledger_conflict",
            org_id=tenant.org_id,
            provider=event.provider.value,
            reference=event.reference,
            invoice_id=event.invoice_id,
            error=str(exc.orig),
        )
        return None

    logger.info(
        "payment_ledger_recorded",
        org_id=tenant.org_id,
        provider=event.provider.value,
        reference=event.reference,
        amount=str(event.amount),
        currency=event.currency,
        status=event.status,
    )
    return payment
