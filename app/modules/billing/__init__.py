from app.modules.billing.api.v1.webhooks import router
from app.modules.billing.domain.billing.webhook_processor import (
    WebhookProcessor,
    WebhookResult,
)

__all__ = [
    "router",
    "WebhookProcessor",
    "WebhookResult",
]
