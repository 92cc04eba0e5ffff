from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.modules.billing.domain.billing.replay_registry import build_replay_registry
from app.modules.billing.domain.billing.webhook_processor import WebhookProcessor
from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import Settings, get_settings, reload_settings_from_environment
from app.shared.core.exceptions import BillingWebhookException
from app.shared.core.http import close_http_client, init_http_client
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware
from app.shared.core.notifications import (
    HttpNotificationSink,
    LogNotificationSink,
    NotificationDispatcher,
    NotificationSink,
)
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.db.session import get_engine, get_session_maker

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


def configure_billing_runtime(app: FastAPI, settings_obj: Settings) -> None:
    """Build the webhook pipeline collaborators once and attach them to `app.state`."""
    sink: NotificationSink
    if settings_obj.NOTIFICATION_WEBHOOK_URL:
        sink = HttpNotificationSink(settings_obj.NOTIFICATION_WEBHOOK_URL)
    else:
        sink = LogNotificationSink()

    session_maker = get_session_maker()
    notifications = NotificationDispatcher(
        session_maker,
        sink,
        timeout_seconds=settings_obj.NOTIFICATION_TIMEOUT_SECONDS,
    )
    replay_registry = build_replay_registry(settings_obj)

    app.state.replay_registry = replay_registry
    app.state.notifications = notifications
    app.state.webhook_processor = WebhookProcessor(
        session_maker=session_maker,
        replay_registry=replay_registry,
        notifier=notifications,
        settings=settings_obj,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    # Shared HTTP pool for the payment client and the HTTP notification sink.
    await init_http_client()
    configure_billing_runtime(app, settings)

    yield

    logger.info("app_shutting_down")
    await app.state.notifications.drain()
    await close_http_client()

    await get_engine().dispose()
    logger.info("db_engine_disposed")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)

__all__ = ["app", "lifespan", "configure_billing_runtime"]


@app.exception_handler(BillingWebhookException)
async def billing_exception_handler(
    request: Request, exc: BillingWebhookException
) -> JSONResponse:
    """Handle webhook rejections and other application exceptions."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Handle FastAPI HTTP exceptions (unknown routes, wrong methods) in the same envelope."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "http_error",
                "id": None,
                "details": None,
            }
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with sanitized responses."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


register_lifecycle_routes(
    app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

# Exposes /metrics from the default prometheus_client registry.
Instrumentator().instrument(app).expose(app, include_in_schema=False)

app.add_middleware(RequestIDMiddleware)

register_api_routers(app)
