from typing import Any

from fastapi import FastAPI


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Register lifecycle and health endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        """Root endpoint for basic reachability."""
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "ok"}


def register_api_routers(app: FastAPI) -> None:
    """Register API route modules in one place to keep app entrypoint focused."""
    from app.modules.billing.api.v1.webhooks import router as webhooks_router

    # Provider dashboards are configured with absolute paths, so no prefix.
    routes: list[tuple[Any, str | None]] = [
        (webhooks_router, None),
    ]

    for router, prefix in routes:
        if prefix is None:
            app.include_router(router)
        else:
            app.include_router(router, prefix=prefix)
