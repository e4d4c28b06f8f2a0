"""
Webhook delivery models.

WebhookEvent and Endpoint are owned by the ingestion API and endpoint
configuration service; the dispatcher only reads them. DeliveryAttempt is
the dispatcher's append-only delivery ledger.

SECURITY: Tenant-scoped queries MUST run after set_tenant_context().
Row-level security on delivery_attempts is keyed on tenant_id.
"""
import enum
from datetime import datetime
from typing import Any
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.models.base import Base, TimestampMixin, new_id


class DeliveryStatus(str, enum.Enum):
    """Delivery attempt status enum."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = (DeliveryStatus.DELIVERED, DeliveryStatus.ABANDONED)


class Endpoint(Base, TimestampMixin):
    """Tenant-configured destination URL (read-only here)."""
    __tablename__ = "endpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<Endpoint(id={self.id}, tenant_id={self.tenant_id}, enabled={self.enabled})>"


class WebhookEvent(Base):
    """
    Ingested webhook event destined for exactly one endpoint.

    Immutable once created. The dispatcher locks these rows while it owns
    them but never updates them.
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    endpoint_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[Any] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<WebhookEvent(id={self.id}, tenant_id={self.tenant_id}, type={self.event_type})>"


class DeliveryAttempt(Base, TimestampMixin):
    """
    One processed delivery attempt for an event.

    A row is appended per attempt; attempt_count is the attempt number and
    the row with the highest attempt_count is the event's current state.
    At most one row per event may be delivered.
    """
    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint("event_id", "attempt_count", name="uq_delivery_attempts_event_attempt"),
        Index(
            "uq_delivery_attempts_delivered_event",
            "event_id",
            unique=True,
            postgresql_where=text("status = 'delivered'"),
            sqlite_where=text("status = 'delivered'"),
        ),
        Index("ix_delivery_attempts_next_attempt_at", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhook_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    endpoint_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, native_enum=False,
                values_callable=lambda e: [member.value for member in e]),
        nullable=False,
        default=DeliveryStatus.PENDING
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_excerpt: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)

    def __repr__(self):
        return (
            f"<DeliveryAttempt(event_id={self.event_id}, attempt={self.attempt_count}, "
            f"status={self.status})>"
        )
