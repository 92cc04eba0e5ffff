"""Billing webhook ingestion and subscription reconciliation."""

from app.modules.billing.domain.billing.events import PaymentEvent
from app.modules.billing.domain.billing.payment_client import (
    PaymentClient,
    generate_reference,
)
from app.modules.billing.domain.billing.replay_registry import (
    InMemoryReplayRegistry,
    ReplayRegistry,
    UpstashReplayRegistry,
)
from app.modules.billing.domain.billing.webhook_processor import (
    WebhookOutcome,
    WebhookProcessor,
    WebhookResult,
)


__all__ = [
    "PaymentEvent",
    "PaymentClient",
    "generate_reference",
    "ReplayRegistry",
    "InMemoryReplayRegistry",
    "UpstashReplayRegistry",
    "WebhookOutcome",
    "WebhookProcessor",
    "WebhookResult",
]
