"""
Monitor Check Engine

Probes every enabled, due monitor once per cycle and appends the result
to the monitor_checks log. A failed probe is just another row: it is not
retried within the cycle and never escalated.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import httpx
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.database import set_tenant_context
from hookrelay.models.base import ensure_utc, utcnow
from hookrelay.models.monitor import CheckStatus, Monitor, MonitorCheck
from hookrelay.services.metrics import MetricsEmitter

logger = structlog.get_logger()

DEFAULT_INTERVAL_SECONDS = 30.0
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_CONCURRENCY = 20
DEFAULT_DEADLINE_FACTOR = 2.0
ERROR_EXCERPT_LENGTH = 500


@dataclass
class ProbeResult:
    """Outcome of one GET against a monitor URL."""
    monitor: Monitor
    status: CheckStatus
    duration_ms: float
    checked_at: datetime
    status_code: int | None = None
    error: str | None = None


@dataclass
class MonitorCycleResult:
    """Summary of one monitor cycle."""
    enabled: int = 0
    due: int = 0
    unreached: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    @property
    def checked(self) -> int:
        return sum(self.outcomes.values())


class MonitorCheckLog:
    """Reads monitor configuration and appends to monitor_checks."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def enabled_monitors(self) -> list[tuple[Monitor, datetime | None]]:
        """
        All enabled monitors with the time of their latest check.

        Spans tenants in a single query.
        """
        last_check = (
            select(
                MonitorCheck.monitor_id,
                func.max(MonitorCheck.checked_at).label("last_checked_at"),
            )
            .group_by(MonitorCheck.monitor_id)
            .subquery()
        )
        stmt = (
            select(Monitor, last_check.c.last_checked_at)
            .outerjoin(last_check, last_check.c.monitor_id == Monitor.id)
            .where(Monitor.enabled.is_(True))
            .order_by(Monitor.id)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [(monitor, ensure_utc(last)) for monitor, last in result.all()]

    async def append(self, results: list[ProbeResult]) -> list[MonitorCheck]:
        """Append one check row per probe result in a single transaction."""
        checks = []
        async with self._session_factory() as db:
            async with db.begin():
                for probe in results:
                    await set_tenant_context(db, probe.monitor.tenant_id)
                    check = MonitorCheck(
                        monitor_id=probe.monitor.id,
                        tenant_id=probe.monitor.tenant_id,
                        status=probe.status,
                        status_code=probe.status_code,
                        duration_ms=probe.duration_ms,
                        error=probe.error,
                        checked_at=probe.checked_at,
                    )
                    db.add(check)
                    await db.flush()
                    checks.append(check)
        return checks


class MonitorEngine:
    """Bounded-concurrency prober with a per-cycle soft deadline."""

    def __init__(
        self,
        check_log: MonitorCheckLog,
        http_client: httpx.AsyncClient,
        metrics: MetricsEmitter,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        concurrency: int = DEFAULT_CONCURRENCY,
        deadline_factor: float = DEFAULT_DEADLINE_FACTOR,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.check_log = check_log
        self.http_client = http_client
        self.metrics = metrics
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.concurrency = concurrency
        self.deadline_seconds = interval_seconds * deadline_factor
        self.clock = clock

    def is_due(self, monitor: Monitor, last_checked_at: datetime | None, now: datetime) -> bool:
        """
        Whether a monitor's own interval has elapsed.

        Half a loop interval of slack keeps a monitor whose interval matches
        the loop from drifting into every other cycle.
        """
        if last_checked_at is None:
            return True
        elapsed = (now - last_checked_at).total_seconds()
        return elapsed >= monitor.interval_seconds - self.interval_seconds / 2

    async def run_cycle(self) -> MonitorCycleResult:
        """Probe all due monitors once and append their results."""
        result = MonitorCycleResult()
        now = self.clock()

        monitors = await self.check_log.enabled_monitors()
        result.enabled = len(monitors)
        due = [monitor for monitor, last in monitors if self.is_due(monitor, last, now)]
        result.due = len(due)
        if not due:
            return result

        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [asyncio.create_task(self._probe(monitor, semaphore)) for monitor in due]
        done, pending = await asyncio.wait(tasks, timeout=self.deadline_seconds)

        if pending:
            # Unreached monitors are simply probed again next cycle
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            result.unreached = len(pending)
            logger.warning(
                "monitor_cycle_deadline_exceeded",
                deadline_seconds=self.deadline_seconds,
                unreached=result.unreached,
            )

        probes = [task.result() for task in tasks if task in done]
        await self.check_log.append(probes)

        for probe in probes:
            status = probe.status.value
            result.outcomes[status] = result.outcomes.get(status, 0) + 1
            self.metrics.track_monitor_check(probe.monitor.id, status, probe.duration_ms / 1000)

        logger.info(
            "monitor_cycle_completed",
            enabled=result.enabled,
            due=result.due,
            unreached=result.unreached,
            outcomes=result.outcomes,
        )
        return result

    async def _probe(self, monitor: Monitor, semaphore: asyncio.Semaphore) -> ProbeResult:
        async with semaphore:
            checked_at = self.clock()
            start = time.perf_counter()
            try:
                response = await self.http_client.get(monitor.url, timeout=self.timeout_seconds)
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                error = str(e) or type(e).__name__
                logger.info("monitor_probe_failed", monitor_id=monitor.id, error=error)
                return ProbeResult(
                    monitor=monitor,
                    status=CheckStatus.FAILED,
                    duration_ms=round(duration_ms, 2),
                    checked_at=checked_at,
                    error=error[:ERROR_EXCERPT_LENGTH],
                )

            duration_ms = (time.perf_counter() - start) * 1000
            ok = 200 <= response.status_code < 300
            return ProbeResult(
                monitor=monitor,
                status=CheckStatus.SUCCESS if ok else CheckStatus.FAILED,
                duration_ms=round(duration_ms, 2),
                checked_at=checked_at,
                status_code=response.status_code,
            )
