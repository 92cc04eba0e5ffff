from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

import pytest

from app.models.billing import PaymentProvider
from app.modules.billing.domain.billing.events import PaymentEvent

OCCURRED_AT = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_event() -> Callable[..., PaymentEvent]:
    """Factory for PaymentEvent instances with Paystack defaults."""

    def _make(**overrides: Any) -> PaymentEvent:
        transaction_id = str(overrides.pop("transaction_id", "1001"))
        fields: dict[str, Any] = {
            "provider": PaymentProvider.PAYSTACK,
            "event_type": "charge.success",
            "event_id": f"charge.success:{transaction_id}",
            "transaction_id": transaction_id,
            "status": "success",
            "amount": Decimal("5000.00"),
            "currency": "NGN",
            "occurred_at": OCCURRED_AT,
            "completed_at": OCCURRED_AT,
            "raw": {"event": "charge.success", "data": {"id": transaction_id}},
            "reference": f"ref-{transaction_id}",
            "org_id": "org-1",
            "plan_code": "pro",
            "external_customer_id": "CUS_abc",
        }
        fields.update(overrides)
        return PaymentEvent(**fields)

    return _make
