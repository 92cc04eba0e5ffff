from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class PaymentProvider(str, Enum):
    """Payment processors that deliver billing webhooks."""

    PAYSTACK = "PAYSTACK"
    FLUTTERWAVE = "FLW"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"


class Subscription(Base):
    """
    Current subscription for an organization (one row per org, upserted by org_id).

    `last_event_at` is the provider event time of the last accepted transition and
    guards against an older delivery regressing a newer status.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    org_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    plan_code: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    external_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True
    )
    external_sub_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )

    last_event_raw: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql")
    )
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class SubscriptionPayment(Base):
    """
    Append-only payment ledger.
    A provider-side charge produces at most one row, however often it is delivered.
    """

    __tablename__ = "subscription_payments"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "reference",
            name="subscription_payments_provider_reference_unique",
        ),
        UniqueConstraint(
            "provider",
            "external_invoice_id",
            name="subscription_payments_provider_invoice_unique",
        ),
        Index("subscription_payments_org_idx", "org_id"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    plan_code: Mapped[str] = mapped_column(String(128), nullable=False)
    external_sub_id: Mapped[Optional[str]] = mapped_column(String(255))
    external_invoice_id: Mapped[Optional[str]] = mapped_column(String(255))
    reference: Mapped[Optional[str]] = mapped_column(String(255))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(String(64))
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    raw: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql")
    )


class WebhookEvent(Base):
    """Durable idempotency record: one row per distinct provider event."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "provider", "event_id", name="webhook_events_provider_event_unique"
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
