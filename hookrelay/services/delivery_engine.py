"""
Event Delivery Engine

Moves webhook events from ingested to delivered or abandoned. Delivery is
at-least-once: every body carries event_id so receivers can deduplicate.
"""
import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx
import structlog

from hookrelay.models.base import utcnow
from hookrelay.models.webhook import DeliveryStatus
from hookrelay.services.delivery_ledger import AttemptResult, ClaimedEvent, DeliveryLedger
from hookrelay.services.metrics import (
    OUTCOME_ABANDONED,
    OUTCOME_FAILED,
    OUTCOME_SUCCESS,
    MetricsEmitter,
)
from hookrelay.services.retry_policy import FailureKind, RetryDecision, RetryPolicy

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 10
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_EXCERPT_LENGTH = 500

OUTCOME_BY_STATUS = {
    DeliveryStatus.DELIVERED: OUTCOME_SUCCESS,
    DeliveryStatus.FAILED: OUTCOME_FAILED,
    DeliveryStatus.ABANDONED: OUTCOME_ABANDONED,
}


def classify_status_code(status_code: int) -> FailureKind:
    """2xx delivered, 4xx permanent, anything else worth retrying."""
    if 200 <= status_code < 300:
        return FailureKind.NONE
    if 400 <= status_code < 500:
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT


def build_delivery_body(event_id: str, payload: Any) -> dict:
    """Event payload plus event_id; non-object payloads are wrapped."""
    if isinstance(payload, dict):
        return {**payload, "event_id": event_id}
    return {"event_id": event_id, "data": payload}


def excerpt(text: str | None, limit: int = DEFAULT_EXCERPT_LENGTH) -> str | None:
    if not text:
        return None
    return text[:limit]


@dataclass
class DeliveryCycleResult:
    """Summary of one delivery cycle."""
    claimed: int = 0
    skipped: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return sum(self.outcomes.values())


class DeliveryEngine:
    """
    Claims a batch per cycle, delivers it, and records each outcome.

    Safe to run as multiple replicas: the ledger's claim guarantees no
    two engines own the same event at once.
    """

    def __init__(
        self,
        ledger: DeliveryLedger,
        http_client: httpx.AsyncClient,
        metrics: MetricsEmitter,
        retry_policy: RetryPolicy | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        excerpt_length: int = DEFAULT_EXCERPT_LENGTH,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.http_client = http_client
        self.metrics = metrics
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=ledger.max_attempts)
        self.batch_size = batch_size
        self.concurrency = concurrency or batch_size
        self.timeout_seconds = timeout_seconds
        self.excerpt_length = excerpt_length
        self.clock = clock

    async def run_cycle(self, stop_event: asyncio.Event | None = None) -> DeliveryCycleResult:
        """
        Run one claim + deliver + record cycle.

        Deliveries not yet started when stop_event is set are skipped and
        stay unclaimed. Claim failures propagate to the caller.
        """
        stop_event = stop_event or asyncio.Event()
        result = DeliveryCycleResult()
        recorded: list[tuple[ClaimedEvent, AttemptResult, RetryDecision]] = []

        async with self.ledger.claim(self.batch_size, self.clock()) as batch:
            result.claimed = len(batch.events)
            if not batch.events:
                self.metrics.track_empty_delivery_cycle()
                logger.debug("delivery_cycle_empty")
                return result

            semaphore = asyncio.Semaphore(self.concurrency)
            attempts = await asyncio.gather(
                *(self._attempt(claimed, semaphore, stop_event) for claimed in batch.events)
            )

            for claimed, attempt in zip(batch.events, attempts):
                if attempt is None:
                    result.skipped += 1
                    continue
                now = self.clock()
                decision = self.retry_policy.decide(claimed.attempt_number, attempt.failure, now)
                await batch.record(claimed, attempt, decision, now)
                recorded.append((claimed, attempt, decision))

        # Metrics only after the outcomes are durable
        for claimed, attempt, decision in recorded:
            outcome = OUTCOME_BY_STATUS[decision.status]
            result.outcomes[outcome] = result.outcomes.get(outcome, 0) + 1
            self.metrics.track_delivery(
                tenant_id=claimed.event.tenant_id,
                endpoint_id=claimed.event.endpoint_id,
                outcome=outcome,
                duration_seconds=(attempt.duration_ms or 0.0) / 1000,
            )
            logger.info(
                "delivery_attempt_recorded",
                event_id=claimed.event.id,
                tenant_id=claimed.event.tenant_id,
                endpoint_id=claimed.event.endpoint_id,
                attempt=claimed.attempt_number,
                status=decision.status.value,
                status_code=attempt.status_code,
                next_attempt_at=decision.next_attempt_at.isoformat() if decision.next_attempt_at else None,
            )

        logger.info(
            "delivery_cycle_completed",
            claimed=result.claimed,
            skipped=result.skipped,
            outcomes=result.outcomes,
        )
        return result

    async def _attempt(
        self,
        claimed: ClaimedEvent,
        semaphore: asyncio.Semaphore,
        stop_event: asyncio.Event,
    ) -> AttemptResult | None:
        async with semaphore:
            if stop_event.is_set():
                return None
            try:
                return await self._deliver(claimed)
            except Exception as e:
                # Per-event failures never abort the batch
                logger.exception("delivery_attempt_error", event_id=claimed.event.id)
                return AttemptResult(
                    failure=FailureKind.TRANSIENT,
                    response_excerpt=excerpt(f"{type(e).__name__}: {e}", self.excerpt_length),
                )

    async def _deliver(self, claimed: ClaimedEvent) -> AttemptResult:
        event = claimed.event
        endpoint = claimed.endpoint

        if endpoint is None:
            return AttemptResult(failure=FailureKind.PERMANENT, response_excerpt="endpoint not found")
        if not endpoint.enabled:
            return AttemptResult(failure=FailureKind.PERMANENT, response_excerpt="endpoint disabled")

        body = json.dumps(build_delivery_body(event.id, event.payload), default=str)
        headers = {
            "Content-Type": "application/json",
            "X-Event-Id": event.id,
            "X-Event-Type": event.event_type,
        }

        start = time.perf_counter()
        try:
            response = await self.http_client.post(
                endpoint.url,
                content=body,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "delivery_request_failed",
                event_id=event.id,
                endpoint_id=endpoint.id,
                error=str(e) or type(e).__name__,
            )
            return AttemptResult(
                failure=FailureKind.TRANSIENT,
                response_excerpt=excerpt(str(e) or type(e).__name__, self.excerpt_length),
                duration_ms=round(duration_ms, 2),
            )

        duration_ms = (time.perf_counter() - start) * 1000
        return AttemptResult(
            failure=classify_status_code(response.status_code),
            status_code=response.status_code,
            response_excerpt=excerpt(response.text, self.excerpt_length),
            duration_ms=round(duration_ms, 2),
        )
