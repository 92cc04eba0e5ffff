from __future__ import annotations

import pytest
from sqlalchemy import func, select

from app.models.billing import WebhookEvent
from app.modules.billing.domain.billing.webhook_events import record_webhook_event


@pytest.mark.asyncio
async def test_record_webhook_event_is_unique_per_provider(db) -> None:
    assert await record_webhook_event(db, "PAYSTACK", "charge.success:1") is True
    assert await record_webhook_event(db, "PAYSTACK", "charge.success:1") is False
    # Same id from another provider is a different event.
    assert await record_webhook_event(db, "FLW", "charge.success:1") is True
    await db.commit()

    count = await db.scalar(select(func.count()).select_from(WebhookEvent))
    assert count == 2


@pytest.mark.asyncio
async def test_duplicate_leaves_outer_transaction_usable(db) -> None:
    await record_webhook_event(db, "PAYSTACK", "charge.success:1")
    await db.commit()

    assert await record_webhook_event(db, "PAYSTACK", "charge.success:1") is False
    assert await record_webhook_event(db, "PAYSTACK", "charge.success:2") is True
    await db.commit()

    rows = (await db.execute(select(WebhookEvent.event_id).order_by(WebhookEvent.event_id))).scalars().all()
    assert rows == ["charge.success:1", "charge.success:2"]


@pytest.mark.asyncio
async def test_rollback_discards_the_claim(db) -> None:
    assert await record_webhook_event(db, "FLW", "charge.completed:7") is True
    await db.rollback()

    assert await record_webhook_event(db, "FLW", "charge.completed:7") is True
