"""Centralized organization entitlement policy driven by subscription status."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import SubscriptionStatus
from app.models.tenant import Organization

logger = structlog.get_logger()

DEFAULT_GRACE_PERIOD_DAYS = 3


def normalize_subscription_status(status: str | SubscriptionStatus) -> SubscriptionStatus:
    """Normalize incoming status values to the canonical enum."""
    if isinstance(status, SubscriptionStatus):
        return status

    candidate = str(status).strip().upper()
    try:
        return SubscriptionStatus(candidate)
    except ValueError as exc:
        raise ValueError(f"Unsupported subscription status value: {status!r}") from exc


def entitlement_changes(
    status: SubscriptionStatus,
    *,
    now: datetime,
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
) -> Dict[str, Any]:
    """
    Organization column changes for a subscription status.

    ACTIVE restores full access. PAST_DUE starts a grace window and leaves
    `is_active` alone. CANCELLED revokes access and keeps any grace marker.
    """
    if status is SubscriptionStatus.ACTIVE:
        return {"is_active": True, "locked_until": None}
    if status is SubscriptionStatus.PAST_DUE:
        return {"locked_until": now + timedelta(days=grace_period_days)}
    return {"is_active": False}


async def apply_entitlement(
    *,
    db: AsyncSession,
    org_id: str,
    status: str | SubscriptionStatus,
    source: str,
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Apply the entitlement for a new subscription status in one validated policy path."""
    normalized = normalize_subscription_status(status)
    changes = entitlement_changes(
        normalized,
        now=now or datetime.now(timezone.utc),
        grace_period_days=grace_period_days,
    )
    result = await db.execute(
        update(Organization)
        .where(Organization.id == org_id)
        .values(**changes)
        .execution_options(synchronize_session="fetch")
    )

    rowcount = getattr(result, "rowcount", None)
    if isinstance(rowcount, int) and rowcount != 1:
        raise RuntimeError(
            "Entitlement update failed due to missing or duplicated organization row "
            f"(org_id={org_id}, updated_rows={rowcount})"
        )

    logger.info(
        "billing_entitlement_applied",
        org_id=org_id,
        status=normalized.value,
        source=source,
        locked_until=(
            changes["locked_until"].isoformat()
            if changes.get("locked_until") is not None
            else None
        ),
    )
    return changes
