"""
Unified Error Governance

Centrally handles exception classification, structured logging and metrics
so every rejected webhook produces the same response envelope.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from app.shared.core.config import get_settings
from app.shared.core.exceptions import BillingWebhookException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()

# Webhook rejections carry fixed, generic messages and are safe to return verbatim.
SAFE_CODES = {
    "invalid_signature",
    "replay_rejected",
    "missing_event_id",
    "invalid_payload",
    "unsupported_event_type",
    "unresolvable_tenant",
    "not_found",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())

    settings = get_settings()
    is_prod = settings.ENVIRONMENT.lower() in ("production", "staging")

    if isinstance(exc, BillingWebhookException):
        app_exc = exc
        if is_prod and app_exc.code not in SAFE_CODES:
            app_exc.message = "An error occurred while processing your request"
    else:
        # Always sanitize unhandled exceptions to avoid leaking secrets via message bodies.
        app_exc = BillingWebhookException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=app_exc.status_code,
    ).inc()

    log = logger.warning if app_exc.status_code < 500 else logger.error
    log(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    response_details: Optional[Dict[str, Any]] = app_exc.details
    if is_prod and app_exc.code not in SAFE_CODES:
        response_details = None

    response_payload = {
        "error": {
            "message": app_exc.message,
            "code": app_exc.code,
            "id": error_id,
            "details": response_details if response_details else None,
        }
    }

    return JSONResponse(
        status_code=app_exc.status_code,
        content=response_payload,
    )
