"""Subscription state machine: provider payment status to subscription status, upserted per org."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Subscription, SubscriptionStatus
from app.modules.billing.domain.billing.events import (
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    PaymentEvent,
    normalize_status,
)
from app.modules.billing.domain.billing.tenant_resolver import TenantRef

logger = structlog.get_logger()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes for timezone-aware columns; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def derive_subscription_status(raw_status: Optional[str]) -> SubscriptionStatus:
    status = normalize_status(raw_status)
    if status in SUCCESS_STATUSES:
        return SubscriptionStatus.ACTIVE
    if status in FAILURE_STATUSES:
        return SubscriptionStatus.CANCELLED
    return SubscriptionStatus.PAST_DUE


@dataclass(frozen=True)
class SubscriptionTransition:
    subscription: Subscription
    status: SubscriptionStatus
    previous_status: Optional[SubscriptionStatus]
    applied: bool
    created: bool


async def apply_subscription_event(
    db: AsyncSession,
    tenant: TenantRef,
    event: PaymentEvent,
    now: Optional[datetime] = None,
) -> SubscriptionTransition:
    """
    Upsert the organization's subscription from an accepted event.

    External ids and period boundaries are only overwritten when the event
    carries them. An event whose provider completion time is older than the
    stored `last_event_at` is not applied, so a late redelivery cannot regress a
    newer status. Events without a completion time are applied unordered and
    leave `last_event_at` as it is.
    """
    now = now or datetime.now(timezone.utc)
    status = derive_subscription_status(event.status)

    result = await db.execute(
        select(Subscription).where(Subscription.org_id == tenant.org_id).with_for_update()
    )
    subscription = result.scalar_one_or_none()

    if subscription is None:
        subscription = Subscription(
            org_id=tenant.org_id,
            provider=event.provider.value,
            plan_code=tenant.plan_code,
            status=status.value,
            external_customer_id=event.external_customer_id,
            external_sub_id=event.external_sub_id,
            started_at=event.period_start,
            current_period_end=event.period_end,
            last_event_raw=event.raw,
            last_event_at=event.completed_at,
            created_at=now,
            updated_at=now,
        )
        db.add(subscription)
        await db.flush()
        logger.info(
            "subscription_created",
            org_id=tenant.org_id,
            provider=event.provider.value,
            status=status.value,
        )
        return SubscriptionTransition(
            subscription, status, previous_status=None, applied=True, created=True
        )

    previous_status = SubscriptionStatus(subscription.status)
    last_event_at = as_utc(subscription.last_event_at)
    completed_at = event.completed_at
    if last_event_at is not None and completed_at is not None and completed_at < last_event_at:
        logger.warning(
            "subscription_event_out_of_order",
            org_id=tenant.org_id,
            event_id=event.event_id,
            event_at=completed_at.isoformat(),
            last_event_at=last_event_at.isoformat(),
            current_status=previous_status.value,
            skipped_status=status.value,
        )
        return SubscriptionTransition(
            subscription,
            previous_status,
            previous_status=previous_status,
            applied=False,
            created=False,
        )

    subscription.provider = event.provider.value
    subscription.plan_code = tenant.plan_code
    subscription.status = status.value
    if event.external_customer_id:
        subscription.external_customer_id = event.external_customer_id
    if event.external_sub_id:
        subscription.external_sub_id = event.external_sub_id
    if event.period_start is not None:
        subscription.started_at = event.period_start
    if event.period_end is not None:
        subscription.current_period_end = event.period_end
    subscription.last_event_raw = event.raw
    if completed_at is not None:
        subscription.last_event_at = completed_at
    subscription.updated_at = now
    await db.flush()

    logger.info(
        "subscription_updated",
        org_id=tenant.org_id,
        provider=event.provider.value,
        previous_status=previous_status.value,
        status=status.value,
    )
    return SubscriptionTransition(
        subscription, status, previous_status=previous_status, applied=True, created=False
    )
