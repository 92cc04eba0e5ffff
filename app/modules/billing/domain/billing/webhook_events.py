"""Durable idempotency tier backed by the `webhook_events` unique constraint."""

from __future__ import annotations

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import WebhookEvent

logger = structlog.get_logger()


async def record_webhook_event(db: AsyncSession, provider: str, event_id: str) -> bool:
    """
    Insert the durable record for a provider event inside the caller's transaction.

    Returns False when the `(provider, event_id)` pair already exists. The insert
    runs in a savepoint so the duplicate signal leaves the outer transaction
    usable; other database errors propagate.
    """
    try:
        async with db.begin_nested():
            db.add(WebhookEvent(provider=provider, event_id=event_id))
            await db.flush()
    except IntegrityError:
        logger.info("webhook_event_already_processed", provider=provider, event_id=event_id)
        return False
    return True

