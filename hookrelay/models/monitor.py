"""
Monitor models.

Monitor is configured by tenants through the external CRUD service and is
read-only here. MonitorCheck is the append-only check log written by the
monitor engine; rows are never updated.
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.models.base import Base, TimestampMixin, new_id, utcnow


class CheckStatus(str, enum.Enum):
    """Monitor check status enum."""
    SUCCESS = "success"
    FAILED = "failed"


class Monitor(Base, TimestampMixin):
    """Tenant-configured URL probed on a schedule."""
    __tablename__ = "monitors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<Monitor(id={self.id}, name={self.name}, enabled={self.enabled})>"


class MonitorCheck(Base):
    """One timestamped probe result."""
    __tablename__ = "monitor_checks"
    __table_args__ = (
        Index("ix_monitor_checks_monitor_checked_at", "monitor_id", "checked_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    monitor_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("monitors.id", ondelete="CASCADE"),
        nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[CheckStatus] = mapped_column(
        SQLEnum(CheckStatus, native_enum=False,
                values_callable=lambda e: [member.value for member in e]),
        nullable=False
    )
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[float] = mapped_column(Float, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )

    def __repr__(self):
        return f"<MonitorCheck(monitor_id={self.monitor_id}, status={self.status})>"
