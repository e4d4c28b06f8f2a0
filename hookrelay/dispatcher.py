"""
Dispatcher

Process-level orchestrator for the delivery and monitor loops. Each loop
is its own asyncio task on its own fixed-interval timer, so a slow cycle
in one never delays the other.

stop() is best-effort: it refuses new cycles and new deliveries at once,
then waits up to the grace period. Work still running after that is left
to finish or die with the process; its events stay unclaimed and are
picked up again on the next start.
"""
import asyncio
import enum
from typing import Awaitable, Callable, Protocol

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.config import Settings
from hookrelay.logging_config import get_logger
from hookrelay.sentry_config import capture_exception
from hookrelay.services.delivery_engine import DeliveryEngine
from hookrelay.services.delivery_ledger import DeliveryLedger
from hookrelay.services.metrics import MetricsEmitter
from hookrelay.services.monitor_engine import MonitorCheckLog, MonitorEngine
from hookrelay.services.retry_policy import RetryPolicy

logger = structlog.get_logger()

DELIVERY_LOOP = "delivery"
MONITOR_LOOP = "monitor"


class DispatcherState(str, enum.Enum):
    """Dispatcher lifecycle state."""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class DispatcherStateError(RuntimeError):
    """Raised on a lifecycle transition that is not legal from the current state."""


class DeliveryCycle(Protocol):
    async def run_cycle(self, stop_event: asyncio.Event | None = None): ...


class MonitorCycle(Protocol):
    async def run_cycle(self): ...


class Dispatcher:
    """Owns the two scheduled loops and shutdown coordination."""

    def __init__(
        self,
        delivery_engine: DeliveryCycle,
        monitor_engine: MonitorCycle,
        delivery_interval: float = 5.0,
        monitor_interval: float = 30.0,
        shutdown_grace: float = 5.0,
        readiness_check: Callable[[], Awaitable[None]] | None = None,
        metrics: MetricsEmitter | None = None,
    ):
        self.delivery_engine = delivery_engine
        self.monitor_engine = monitor_engine
        self.delivery_interval = delivery_interval
        self.monitor_interval = monitor_interval
        self.shutdown_grace = shutdown_grace
        self.readiness_check = readiness_check
        self.metrics = metrics
        self._state = DispatcherState.STOPPED
        self._stop_event = asyncio.Event()
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def state(self) -> DispatcherState:
        return self._state

    async def start(self) -> None:
        """
        Launch both loops and return immediately.

        Raises:
            DispatcherStateError: If the dispatcher is not stopped
            Exception: Whatever the readiness check raises; startup
                failures are fatal and leave the dispatcher stopped
        """
        if self._state is not DispatcherState.STOPPED:
            raise DispatcherStateError(f"cannot start a dispatcher that is {self._state.value}")

        if self.readiness_check is not None:
            await self.readiness_check()

        # Each start gets its own event; loops left running by an elapsed
        # grace period keep the one they were started with and still exit.
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._tasks = {
            DELIVERY_LOOP: asyncio.create_task(
                self._run_loop(
                    DELIVERY_LOOP,
                    self.delivery_interval,
                    lambda: self.delivery_engine.run_cycle(stop_event=stop_event),
                    stop_event,
                ),
                name="hookrelay-delivery-loop",
            ),
            MONITOR_LOOP: asyncio.create_task(
                self._run_loop(
                    MONITOR_LOOP,
                    self.monitor_interval,
                    self.monitor_engine.run_cycle,
                    stop_event,
                ),
                name="hookrelay-monitor-loop",
            ),
        }
        self._state = DispatcherState.RUNNING
        logger.info(
            "dispatcher_started",
            delivery_interval=self.delivery_interval,
            monitor_interval=self.monitor_interval,
        )

    async def stop(self) -> None:
        """
        Stop scheduling and wait up to the grace period for in-flight cycles.

        A no-op unless the dispatcher is running.
        """
        if self._state is not DispatcherState.RUNNING:
            return

        self._state = DispatcherState.STOPPING
        self._stop_event.set()
        logger.info("dispatcher_stopping", grace_seconds=self.shutdown_grace)

        _, pending = await asyncio.wait(self._tasks.values(), timeout=self.shutdown_grace)
        if pending:
            logger.warning(
                "dispatcher_stop_grace_elapsed",
                grace_seconds=self.shutdown_grace,
                loops=sorted(name for name, task in self._tasks.items() if task in pending),
            )

        self._state = DispatcherState.STOPPED
        logger.info("dispatcher_stopped")

    async def _run_loop(
        self,
        name: str,
        interval: float,
        cycle: Callable[[], Awaitable],
        stop_event: asyncio.Event,
    ) -> None:
        loop = asyncio.get_running_loop()
        log = get_logger(loop=name)

        while not stop_event.is_set():
            started = loop.time()
            try:
                await cycle()
            except Exception:
                # Engine-wide failure: log it and tick again on schedule
                log.exception("dispatcher_cycle_failed")
                capture_exception()
                if self.metrics is not None:
                    self.metrics.track_cycle_failure(name)

            delay = max(0.0, interval - (loop.time() - started))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        log.info("dispatcher_loop_exited")


def create_dispatcher(
    config: Settings,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    delivery_client: httpx.AsyncClient,
    probe_client: httpx.AsyncClient,
    metrics: MetricsEmitter,
) -> Dispatcher:
    """Wire the engines and dispatcher from settings."""
    ledger = DeliveryLedger(session_factory, max_attempts=config.MAX_DELIVERY_ATTEMPTS)
    delivery_engine = DeliveryEngine(
        ledger=ledger,
        http_client=delivery_client,
        metrics=metrics,
        retry_policy=RetryPolicy(
            max_attempts=config.MAX_DELIVERY_ATTEMPTS,
            jitter_seconds=config.RETRY_JITTER_SECONDS,
        ),
        batch_size=config.DELIVERY_BATCH_SIZE,
        concurrency=config.DELIVERY_CONCURRENCY,
        timeout_seconds=config.DELIVERY_TIMEOUT_SECONDS,
        excerpt_length=config.RESPONSE_EXCERPT_LENGTH,
    )
    monitor_engine = MonitorEngine(
        check_log=MonitorCheckLog(session_factory),
        http_client=probe_client,
        metrics=metrics,
        interval_seconds=config.MONITOR_INTERVAL_SECONDS,
        timeout_seconds=config.MONITOR_TIMEOUT_SECONDS,
        concurrency=config.MONITOR_CONCURRENCY,
        deadline_factor=config.MONITOR_DEADLINE_FACTOR,
    )
    return Dispatcher(
        delivery_engine=delivery_engine,
        monitor_engine=monitor_engine,
        delivery_interval=config.DELIVERY_INTERVAL_SECONDS,
        monitor_interval=config.MONITOR_INTERVAL_SECONDS,
        shutdown_grace=config.SHUTDOWN_GRACE_SECONDS,
        readiness_check=ledger.ping,
        metrics=metrics,
    )
