"""
Monitor health derivation.

Health is never stored. A monitor is down when its N most recent checks
all failed. Read-path collaborators call this lazily; the monitor engine
only writes check rows.

SECURITY: All queries MUST include tenant_id filter and run after
set_tenant_context().
"""
import enum
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.config import settings
from hookrelay.database import set_tenant_context
from hookrelay.models.monitor import CheckStatus, MonitorCheck

DEFAULT_UNHEALTHY_THRESHOLD = 3


class MonitorHealth(str, enum.Enum):
    """Derived monitor health."""
    UP = "up"
    DOWN = "down"
    UNKNOWN = "unknown"


def derive_health(
    recent_statuses: Iterable[CheckStatus],
    threshold: int = DEFAULT_UNHEALTHY_THRESHOLD,
) -> MonitorHealth:
    """
    Derive health from check statuses, newest first.

    Fewer than threshold checks that all failed still counts as up:
    a monitor is only down after threshold consecutive failures.
    """
    statuses = list(recent_statuses)[:threshold]
    if not statuses:
        return MonitorHealth.UNKNOWN
    if len(statuses) == threshold and all(s == CheckStatus.FAILED for s in statuses):
        return MonitorHealth.DOWN
    return MonitorHealth.UP


class MonitorHealthService:
    """Tenant-scoped read of recent checks for a monitor."""

    def __init__(self, db: AsyncSession, threshold: int | None = None):
        self.db = db
        self.threshold = threshold or settings.MONITOR_UNHEALTHY_THRESHOLD

    async def recent_checks(self, tenant_id: str, monitor_id: str, limit: int) -> list[MonitorCheck]:
        """
        Get the most recent checks for a monitor within a tenant.

        Args:
            tenant_id: Tenant UUID
            monitor_id: Monitor UUID
            limit: Maximum number of checks to return

        Returns:
            Checks, newest first
        """
        await set_tenant_context(self.db, tenant_id)
        stmt = (
            select(MonitorCheck)
            .where(
                MonitorCheck.tenant_id == tenant_id,
                MonitorCheck.monitor_id == monitor_id,
            )
            .order_by(MonitorCheck.checked_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_health(self, tenant_id: str, monitor_id: str) -> MonitorHealth:
        """Current derived health of a monitor."""
        checks = await self.recent_checks(tenant_id, monitor_id, self.threshold)
        return derive_health((c.status for c in checks), self.threshold)
