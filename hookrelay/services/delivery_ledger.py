"""
Delivery ledger.

Claims eligible webhook events and records one DeliveryAttempt row per
processed attempt. The claim is a row lock on webhook_events taken with
SKIP LOCKED, held for the whole cycle and released when the attempt rows
commit, so concurrent dispatcher replicas never own the same event.

SECURITY: The claim query spans tenants (administrative). Every write
sets the tenant context first so row-level security applies.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy import Select, and_, func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.database import set_tenant_context
from hookrelay.models.webhook import (
    TERMINAL_STATUSES,
    DeliveryAttempt,
    DeliveryStatus,
    Endpoint,
    WebhookEvent,
)
from hookrelay.services.retry_policy import DEFAULT_MAX_ATTEMPTS, FailureKind, RetryDecision


@dataclass(frozen=True)
class AttemptResult:
    """What happened when an event was sent (or refused without sending)."""
    failure: FailureKind
    status_code: int | None = None
    response_excerpt: str | None = None
    duration_ms: float | None = None


@dataclass
class ClaimedEvent:
    """An event owned by this claimant for one delivery attempt."""
    event: WebhookEvent
    endpoint: Endpoint | None
    previous_attempts: int = 0

    @property
    def attempt_number(self) -> int:
        return self.previous_attempts + 1


class ClaimedBatch:
    """Events locked by one claim, plus the transaction that will record them."""

    def __init__(self, db: AsyncSession, events: list[ClaimedEvent]):
        self._db = db
        self.events = events

    async def record(
        self,
        claimed: ClaimedEvent,
        result: AttemptResult,
        decision: RetryDecision,
        now: datetime,
    ) -> DeliveryAttempt:
        """
        Append the attempt row for a claimed event.

        The row is inserted under the event's tenant context and commits
        together with the release of the claim.
        """
        event = claimed.event
        await set_tenant_context(self._db, event.tenant_id)
        attempt = DeliveryAttempt(
            event_id=event.id,
            endpoint_id=event.endpoint_id,
            tenant_id=event.tenant_id,
            status=decision.status,
            attempt_count=claimed.attempt_number,
            status_code=result.status_code,
            response_excerpt=result.response_excerpt,
            duration_ms=result.duration_ms,
            next_attempt_at=decision.next_attempt_at,
            delivered_at=now if decision.status == DeliveryStatus.DELIVERED else None,
        )
        self._db.add(attempt)
        # Insert now, while this event's tenant context is the current one
        await self._db.flush()
        return attempt


class DeliveryLedger:
    """Event store adapter owning all writes to delivery_attempts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._session_factory = session_factory
        self.max_attempts = max_attempts

    async def ping(self) -> None:
        """Fail fast when the event store is unreachable."""
        async with self._session_factory() as db:
            await db.execute(text("SELECT 1"))

    def _eligibility(self, now: datetime) -> tuple:
        finished = (
            select(DeliveryAttempt.id)
            .where(
                DeliveryAttempt.event_id == WebhookEvent.id,
                or_(
                    DeliveryAttempt.status.in_(TERMINAL_STATUSES),
                    DeliveryAttempt.attempt_count >= self.max_attempts,
                ),
            )
            .exists()
        )
        backing_off = (
            select(DeliveryAttempt.id)
            .where(
                DeliveryAttempt.event_id == WebhookEvent.id,
                DeliveryAttempt.status == DeliveryStatus.FAILED,
                DeliveryAttempt.next_attempt_at > now,
            )
            .exists()
        )
        return ~finished, ~backing_off

    def claim_statement(self, batch_size: int, now: datetime) -> Select:
        """Oldest-first eligible events, locked with skip-on-contention."""
        return (
            select(WebhookEvent, Endpoint)
            .outerjoin(
                Endpoint,
                and_(
                    Endpoint.id == WebhookEvent.endpoint_id,
                    Endpoint.tenant_id == WebhookEvent.tenant_id,
                ),
            )
            .where(*self._eligibility(now))
            .order_by(WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
            .limit(batch_size)
            .with_for_update(of=WebhookEvent, skip_locked=True)
        )

    @asynccontextmanager
    async def claim(self, batch_size: int, now: datetime) -> AsyncIterator[ClaimedBatch]:
        """
        Claim up to batch_size events for the duration of the block.

        Records made through the yielded batch commit when the block exits
        and roll back, releasing every claim, if it raises.

        Args:
            batch_size: Maximum number of events to claim
            now: Reference time for retry eligibility
        """
        async with self._session_factory() as db:
            async with db.begin():
                rows = (await db.execute(self.claim_statement(batch_size, now))).all()
                claimed = await self._still_eligible(db, rows, now)
                yield ClaimedBatch(db, claimed)

    async def _still_eligible(self, db: AsyncSession, rows, now: datetime) -> list[ClaimedEvent]:
        if not rows:
            return []
        ids = [event.id for event, _ in rows]

        # A replica may have committed an outcome after our snapshot was taken
        # but before we got the lock; a fresh statement sees it.
        recheck = select(WebhookEvent.id).where(WebhookEvent.id.in_(ids), *self._eligibility(now))
        eligible = set((await db.execute(recheck)).scalars().all())

        counts_stmt = (
            select(DeliveryAttempt.event_id, func.max(DeliveryAttempt.attempt_count))
            .where(DeliveryAttempt.event_id.in_(ids))
            .group_by(DeliveryAttempt.event_id)
        )
        counts = dict((await db.execute(counts_stmt)).all())

        return [
            ClaimedEvent(event=event, endpoint=endpoint, previous_attempts=counts.get(event.id, 0))
            for event, endpoint in rows
            if event.id in eligible
        ]

    async def attempts_for(self, tenant_id: str, event_id: str) -> list[DeliveryAttempt]:
        """Delivery history for one event, oldest attempt first."""
        async with self._session_factory() as db:
            async with db.begin():
                await set_tenant_context(db, tenant_id)
                stmt = (
                    select(DeliveryAttempt)
                    .where(
                        DeliveryAttempt.tenant_id == tenant_id,
                        DeliveryAttempt.event_id == event_id,
                    )
                    .order_by(DeliveryAttempt.attempt_count.asc())
                )
                result = await db.execute(stmt)
                return list(result.scalars().all())
