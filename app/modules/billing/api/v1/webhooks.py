"""
Billing Webhook Endpoints - Paystack and Flutterwave

Provides:
- POST /webhooks/paystack (aliases /api/payment/paystack-webhook, /api/webhook/paystack)
- POST /webhooks/flutterwave (aliases /api/payment/flutterwave-webhook, /api/webhook/flutterwave)
- GET /webhooks/ping, /api/payment/ping - unauthenticated liveness

Bodies are read raw: signatures are computed over the exact received bytes.
"""

from typing import Annotated, Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request

from app.models.billing import PaymentProvider
from app.modules.billing.domain.billing.webhook_processor import WebhookProcessor

logger = structlog.get_logger()
router = APIRouter(tags=["Billing Webhooks"])


def get_webhook_processor(request: Request) -> WebhookProcessor:
    """Processor built at startup and stored on `app.state`."""
    processor: WebhookProcessor = request.app.state.webhook_processor
    return processor


Processor = Annotated[WebhookProcessor, Depends(get_webhook_processor)]


async def _ingest(
    provider: PaymentProvider, request: Request, processor: WebhookProcessor
) -> Dict[str, Any]:
    raw_body = await request.body()
    result = await processor.process(provider, raw_body, request.headers)
    return result.to_response()


@router.post("/webhooks/paystack")
@router.post("/api/payment/paystack-webhook")
@router.post("/api/webhook/paystack")
async def paystack_webhook(request: Request, processor: Processor) -> Dict[str, Any]:
    """Handle Paystack `charge.success` events."""
    return await _ingest(PaymentProvider.PAYSTACK, request, processor)


@router.post("/webhooks/flutterwave")
@router.post("/api/payment/flutterwave-webhook")
@router.post("/api/webhook/flutterwave")
async def flutterwave_webhook(request: Request, processor: Processor) -> Dict[str, Any]:
    """Handle Flutterwave `charge.completed` events."""
    return await _ingest(PaymentProvider.FLUTTERWAVE, request, processor)


@router.get("/webhooks/ping")
@router.get("/api/payment/ping")
async def webhook_ping() -> Dict[str, bool]:
    return {"ok": True}
