"""Attributes a payment event to an organization and plan."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Subscription
from app.models.tenant import Organization
from app.modules.billing.domain.billing.events import PaymentEvent
from app.shared.core.exceptions import UnresolvableTenant

logger = structlog.get_logger()


@dataclass(frozen=True)
class TenantRef:
    org_id: str
    plan_code: str
    source: str


async def _find_subscription(
    db: AsyncSession, provider: str, column: Any, value: str
) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.provider == provider, column == value)
        .order_by(Subscription.updated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_tenant(db: AsyncSession, event: PaymentEvent) -> TenantRef:
    """
    Resolve `(org_id, plan_code)` for an event.

    Checkout metadata wins when it carries both values. Renewal events from the
    provider's own billing cycle usually don't, so the existing subscription is
    looked up by external subscription id, then by external customer id.
    """
    if event.org_id and event.plan_code:
        return TenantRef(event.org_id, event.plan_code, source="metadata")

    provider = event.provider.value
    candidates = (
        ("external_sub_id", Subscription.external_sub_id, event.external_sub_id),
        (
            "external_customer_id",
            Subscription.external_customer_id,
            event.external_customer_id,
        ),
    )
    for source, column, value in candidates:
        if not value:
            continue
        matched = await _find_subscription(db, provider, column, value)
        if matched is not None:
            logger.info(
                "webhook_tenant_resolved_by_fallback",
                provider=provider,
                source=source,
                org_id=matched.org_id,
            )
            return TenantRef(matched.org_id, matched.plan_code, source=source)

    logger.warning(
        "webhook_tenant_unresolvable",
        provider=provider,
        event_id=event.event_id,
        has_sub_id=bool(event.external_sub_id),
        has_customer_id=bool(event.external_customer_id),
    )
    raise UnresolvableTenant()


async def lock_organization(db: AsyncSession, org_id: str) -> Optional[Organization]:
    """
    Load the organization row with `FOR UPDATE`.

    Events for the same org serialize on this lock for the rest of the
    transaction. SQLite ignores the clause; its writers are already serialized.
    """
    result = await db.execute(
        select(Organization).where(Organization.id == org_id).with_for_update()
    )
    return result.scalar_one_or_none()
