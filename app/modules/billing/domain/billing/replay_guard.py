"""Replay and clock-skew protection for webhook deliveries."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Mapping, Optional

import structlog

from app.shared.core.exceptions import MissingEventId, ReplayRejected

logger = structlog.get_logger()

EVENT_TIMESTAMP_HEADER = "x-event-timestamp"
EVENT_ID_HEADER = "x-event-id"

# Epoch values at or above this are treated as milliseconds (year ~5138 in seconds).
_EPOCH_MILLIS_THRESHOLD = 100_000_000_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_event_timestamp(raw: str) -> datetime:
    """
    Parse an event timestamp header.

    Accepts Unix epoch seconds or milliseconds, ISO-8601 and RFC 2822 dates.
    Naive dates are taken as UTC. Raises ValueError when unparseable.
    """
    value = raw.strip()
    if not value:
        raise ValueError("empty timestamp")

    try:
        number: Optional[float] = float(value)
    except ValueError:
        number = None

    if number is not None:
        if not math.isfinite(number) or number <= 0:
            raise ValueError(f"invalid epoch timestamp: {value!r}")
        seconds = number / 1000 if number >= _EPOCH_MILLIS_THRESHOLD else number
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"epoch timestamp out of range: {value!r}") from exc

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, IndexError) as exc:
            raise ValueError(f"unparseable timestamp: {value!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ReplayCheck:
    event_id: str
    event_timestamp: datetime


class ReplayGuard:
    """Requires a fresh event timestamp and a caller-supplied event id."""

    def __init__(
        self,
        allowed_skew_seconds: int,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.allowed_skew = timedelta(seconds=allowed_skew_seconds)
        self.clock = clock

    def check(self, headers: Mapping[str, str]) -> ReplayCheck:
        raw_timestamp = headers.get(EVENT_TIMESTAMP_HEADER)
        if not raw_timestamp:
            raise ReplayRejected("Missing event timestamp")

        try:
            event_timestamp = parse_event_timestamp(raw_timestamp)
        except ValueError:
            logger.warning("webhook_timestamp_unparseable", raw=raw_timestamp[:64])
            raise ReplayRejected("Invalid event timestamp")

        skew = abs(self.clock() - event_timestamp)
        if skew > self.allowed_skew:
            logger.warning(
                "webhook_timestamp_outside_window",
                skew_seconds=round(skew.total_seconds(), 1),
                allowed_seconds=self.allowed_skew.total_seconds(),
            )
            raise ReplayRejected("Stale or future timestamp")

        event_id = (headers.get(EVENT_ID_HEADER) or "").strip()
        if not event_id:
            raise MissingEventId()

        return ReplayCheck(event_id=event_id, event_timestamp=event_timestamp)
