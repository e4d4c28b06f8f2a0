"""
Prometheus metrics for the dispatcher.

Delivery metrics are labelled by tenant, never by endpoint. Per-endpoint
series exist only for endpoints admitted by a sampling predicate. Every
metric has a hard ceiling on distinct label sets; past it the entity label
collapses to AGGREGATE_LABEL.
"""
import random
import threading
from datetime import date, datetime, timezone
from typing import Callable

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from hookrelay.config import settings

logger = structlog.get_logger()

AGGREGATE_LABEL = "__other__"
DEFAULT_MAX_LABEL_SETS = 10_000

DURATION_BUCKETS = [0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_ABANDONED = "abandoned"


class LabelBudget:
    """
    Tracks distinct label sets for one metric.

    A few slots are kept back so aggregate series can always be created
    without the total ever passing the limit.
    """

    def __init__(self, metric_name: str, limit: int, reserved: int = 8):
        self.metric_name = metric_name
        self.limit = limit
        self._entity_limit = max(limit - reserved, 0)
        self._entity_sets: set[tuple] = set()
        self._aggregate_sets: set[tuple] = set()
        self._overflow_logged = False
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entity_sets) + len(self._aggregate_sets)

    def resolve(self, entity: str, *rest: str) -> str:
        """Return the entity label to use, degrading to the aggregate when full."""
        key = (entity, *rest)
        with self._lock:
            if key in self._entity_sets:
                return entity
            if len(self._entity_sets) < self._entity_limit:
                self._entity_sets.add(key)
                return entity
            self._aggregate_sets.add((AGGREGATE_LABEL, *rest))
            if not self._overflow_logged:
                self._overflow_logged = True
                logger.warning(
                    "metric_label_budget_exceeded",
                    metric=self.metric_name,
                    limit=self.limit,
                )
        return AGGREGATE_LABEL


class VolumeSampler:
    """
    Default per-endpoint sampling predicate.

    Endpoints at or below the daily volume threshold are always sampled;
    busier endpoints are sampled at high_volume_rate. Counters reset at
    the UTC day boundary.
    """

    def __init__(
        self,
        daily_threshold: int = 1000,
        high_volume_rate: float = 0.01,
        rng: random.Random | None = None,
        today: Callable[[], date] | None = None,
    ):
        self.daily_threshold = daily_threshold
        self.high_volume_rate = high_volume_rate
        self._rng = rng or random.Random()
        self._today = today or (lambda: datetime.now(timezone.utc).date())
        self._day = self._today()
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def __call__(self, endpoint_id: str) -> bool:
        with self._lock:
            day = self._today()
            if day != self._day:
                self._day = day
                self._counts.clear()
            count = self._counts.get(endpoint_id, 0) + 1
            self._counts[endpoint_id] = count
        if count <= self.daily_threshold:
            return True
        return self._rng.random() < self.high_volume_rate


class MetricsEmitter:
    """Registers and updates every metric the dispatcher publishes."""

    def __init__(
        self,
        registry: CollectorRegistry = REGISTRY,
        max_label_sets: int = DEFAULT_MAX_LABEL_SETS,
        endpoint_sampler: Callable[[str], bool] | None = None,
    ):
        self.endpoint_sampler = endpoint_sampler or VolumeSampler()

        # ============================================
        # Delivery Metrics (tenant level)
        # ============================================

        self.delivery_attempts = Counter(
            'delivery_attempts_total',
            'Webhook delivery attempts by tenant and outcome',
            ['tenant_id', 'outcome'],
            registry=registry
        )
        self.delivery_duration = Histogram(
            'delivery_duration_seconds',
            'Webhook delivery duration in seconds',
            ['tenant_id', 'outcome'],
            buckets=DURATION_BUCKETS,
            registry=registry
        )

        # ============================================
        # Delivery Metrics (sampled endpoints)
        # ============================================

        self.endpoint_delivery_attempts = Counter(
            'endpoint_delivery_attempts_total',
            'Webhook delivery attempts for sampled endpoints',
            ['endpoint_id', 'outcome'],
            registry=registry
        )
        self.endpoint_delivery_duration = Histogram(
            'endpoint_delivery_duration_seconds',
            'Webhook delivery duration for sampled endpoints',
            ['endpoint_id', 'outcome'],
            buckets=DURATION_BUCKETS,
            registry=registry
        )

        # ============================================
        # Cycle Metrics
        # ============================================

        self.delivery_empty_cycles = Counter(
            'delivery_empty_cycles_total',
            'Delivery cycles that claimed no events',
            registry=registry
        )
        self.cycle_failures = Counter(
            'dispatcher_cycle_failures_total',
            'Dispatcher cycles aborted by an engine-wide error',
            ['loop'],
            registry=registry
        )

        # ============================================
        # Monitor Metrics
        # ============================================

        self.monitor_check_duration = Histogram(
            'monitor_check_duration_seconds',
            'Monitor probe duration in seconds',
            ['monitor_id', 'status'],
            buckets=DURATION_BUCKETS,
            registry=registry
        )

        self._budgets = {
            name: LabelBudget(name, max_label_sets)
            for name in (
                'delivery_attempts_total',
                'delivery_duration_seconds',
                'endpoint_delivery_attempts_total',
                'endpoint_delivery_duration_seconds',
                'monitor_check_duration_seconds',
            )
        }

    def label_sets(self, metric_name: str) -> int:
        """Distinct label sets recorded so far for a metric."""
        return len(self._budgets[metric_name])

    def _entity(self, metric_name: str, entity: str, *rest: str) -> str:
        return self._budgets[metric_name].resolve(entity, *rest)

    def track_delivery(self, tenant_id: str, endpoint_id: str, outcome: str, duration_seconds: float):
        """
        Record one delivery attempt.

        Always one tenant-level observation and counter increment; the
        endpoint-level pair only when the sampler admits the endpoint.
        """
        tenant = self._entity('delivery_attempts_total', tenant_id, outcome)
        self.delivery_attempts.labels(tenant_id=tenant, outcome=outcome).inc()

        tenant = self._entity('delivery_duration_seconds', tenant_id, outcome)
        self.delivery_duration.labels(tenant_id=tenant, outcome=outcome).observe(duration_seconds)

        if not self.endpoint_sampler(endpoint_id):
            return

        endpoint = self._entity('endpoint_delivery_attempts_total', endpoint_id, outcome)
        self.endpoint_delivery_attempts.labels(endpoint_id=endpoint, outcome=outcome).inc()

        endpoint = self._entity('endpoint_delivery_duration_seconds', endpoint_id, outcome)
        self.endpoint_delivery_duration.labels(
            endpoint_id=endpoint, outcome=outcome
        ).observe(duration_seconds)

    def track_empty_delivery_cycle(self):
        """Zero-batch marker."""
        self.delivery_empty_cycles.inc()

    def track_monitor_check(self, monitor_id: str, status: str, duration_seconds: float):
        """Record one monitor probe."""
        monitor = self._entity('monitor_check_duration_seconds', monitor_id, status)
        self.monitor_check_duration.labels(monitor_id=monitor, status=status).observe(duration_seconds)

    def track_cycle_failure(self, loop: str):
        self.cycle_failures.labels(loop=loop).inc()


# Process-wide emitter on the default registry
_default_emitter = None


def get_metrics_emitter() -> MetricsEmitter:
    """Get or create the emitter whose metrics /metrics exposes."""
    global _default_emitter
    if _default_emitter is None:
        _default_emitter = MetricsEmitter(
            max_label_sets=settings.METRICS_MAX_LABEL_SETS,
            endpoint_sampler=VolumeSampler(
                daily_threshold=settings.METRICS_ENDPOINT_DAILY_VOLUME_THRESHOLD,
                high_volume_rate=settings.METRICS_HIGH_VOLUME_SAMPLE_RATE,
            ),
        )
    return _default_emitter
