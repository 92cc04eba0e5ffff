"""
Notification Dispatcher - best-effort payment alerts

Alerts are delivered from detached tasks so a slow or failing sink never
delays or fails the webhook acknowledgement. Delivery channels are pluggable
sinks; the domain only knows `emit_payment_alert`.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Set

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.tenant import User
from app.shared.core.http import get_http_client
from app.shared.core.ops_metrics import NOTIFICATION_FAILURES_TOTAL

logger = structlog.get_logger()

PAYMENT_ALERT = "payment_alert"


class NotificationSink(Protocol):
    async def send(self, notification: Dict[str, Any]) -> None: ...


class LogNotificationSink:
    """Writes notifications to the structured log. Default when no channel is configured."""

    async def send(self, notification: Dict[str, Any]) -> None:
        logger.info(
            "notification_sent",
            type=notification.get("type"),
            org_id=notification.get("org_id"),
            user_id=notification.get("user_id"),
            title=notification.get("title"),
            priority=notification.get("priority"),
        )


class HttpNotificationSink:
    """POSTs each notification as JSON to an internal delivery service."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client

    async def send(self, notification: Dict[str, Any]) -> None:
        client = self._client or get_http_client()
        response = await client.post(self.url, json=notification)
        response.raise_for_status()


class NotificationDispatcher:
    """
    Fans a payment alert out to an organization's administrators.

    `emit_payment_alert` schedules the work and returns immediately. Failures
    and timeouts are logged and counted, never raised. `drain` awaits in-flight
    deliveries (shutdown, tests).
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        sink: NotificationSink,
        timeout_seconds: float = 5.0,
    ):
        self.session_maker = session_maker
        self.sink = sink
        self.timeout_seconds = timeout_seconds
        self._tasks: Set["asyncio.Task[None]"] = set()

    def emit_payment_alert(
        self,
        org_id: str,
        title: str,
        message: str,
        priority: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> "asyncio.Task[None]":
        task = asyncio.create_task(
            self._deliver(org_id, title, message, priority, data or {})
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(
        self,
        org_id: str,
        title: str,
        message: str,
        priority: str,
        data: Dict[str, Any],
    ) -> None:
        try:
            delivered = await asyncio.wait_for(
                self._send_to_admins(org_id, title, message, priority, data),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            NOTIFICATION_FAILURES_TOTAL.inc()
            logger.warning(
                "payment_alert_timeout",
                org_id=org_id,
                timeout_seconds=self.timeout_seconds,
            )
            return
        except Exception as exc:
            NOTIFICATION_FAILURES_TOTAL.inc()
            logger.warning("payment_alert_failed", org_id=org_id, error=str(exc))
            return

        logger.info(
            "payment_alert_dispatched",
            org_id=org_id,
            priority=priority,
            recipients=delivered,
        )

    async def _send_to_admins(
        self,
        org_id: str,
        title: str,
        message: str,
        priority: str,
        data: Dict[str, Any],
    ) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                select(User.id).where(User.org_id == org_id, User.is_admin.is_(True))
            )
            admin_ids = list(result.scalars().all())

        created_at = datetime.now(timezone.utc).isoformat()
        for user_id in admin_ids:
            await self.sink.send(
                {
                    "type": PAYMENT_ALERT,
                    "org_id": org_id,
                    "user_id": user_id,
                    "title": title,
                    "message": message,
                    "priority": priority,
                    "data": data,
                    "created_at": created_at,
                }
            )
        return len(admin_ids)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
