"""Tests for the delivery ledger claim query and attempt recording."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from conftest import T0, TENANT_A, TENANT_B
from hookrelay.database import set_tenant_context
from hookrelay.models.webhook import DeliveryAttempt, DeliveryStatus
from hookrelay.services.delivery_ledger import AttemptResult, DeliveryLedger
from hookrelay.services.retry_policy import FailureKind, RetryDecision


@pytest.fixture
def ledger(session_factory) -> DeliveryLedger:
    return DeliveryLedger(session_factory, max_attempts=5)


async def claimed_ids(ledger: DeliveryLedger, batch_size: int = 10, now=T0) -> list[str]:
    async with ledger.claim(batch_size, now) as batch:
        return [claimed.event.id for claimed in batch.events]


class TestClaimStatement:
    def test_postgres_claim_locks_events_and_skips_contended_rows(self, ledger) -> None:
        sql = str(ledger.claim_statement(10, T0).compile(dialect=postgresql.dialect()))

        assert "FOR UPDATE OF webhook_events SKIP LOCKED" in sql
        assert "ORDER BY webhook_events.created_at ASC" in sql
        assert "LIMIT" in sql


class TestClaim:
    async def test_claims_oldest_first_up_to_batch_size(self, ledger, make_endpoint, make_event) -> None:
        endpoint = await make_endpoint()
        newest = await make_event(endpoint.id, created_at=T0 - timedelta(minutes=1))
        oldest = await make_event(endpoint.id, created_at=T0 - timedelta(minutes=3))
        middle = await make_event(endpoint.id, created_at=T0 - timedelta(minutes=2))

        assert await claimed_ids(ledger, batch_size=2) == [oldest.id, middle.id]
        assert newest.id in await claimed_ids(ledger, batch_size=3)

    async def test_claim_resolves_endpoint_within_tenant_only(
        self, ledger, make_endpoint, make_event
    ) -> None:
        foreign = await make_endpoint(tenant_id=TENANT_A)
        await make_event(foreign.id, tenant_id=TENANT_B)

        async with ledger.claim(10, T0) as batch:
            assert len(batch.events) == 1
            assert batch.events[0].endpoint is None

    async def test_delivered_event_is_never_claimed_again(
        self, ledger, make_endpoint, make_event, add_attempt
    ) -> None:
        endpoint = await make_endpoint()
        event = await make_event(endpoint.id)
        await add_attempt(event, status=DeliveryStatus.DELIVERED, attempt_count=1, delivered_at=T0)

        assert await claimed_ids(ledger) == []
        assert await claimed_ids(ledger, now=T0 + timedelta(days=30)) == []

    async def test_abandoned_event_is_never_claimed_again(
        self, ledger, make_endpoint, make_event, add_attempt
    ) -> None:
        endpoint = await make_endpoint()
        event = await make_event(endpoint.id)
        await add_attempt(event, status=DeliveryStatus.ABANDONED, attempt_count=1, status_code=404)

        assert await claimed_ids(ledger, now=T0 + timedelta(days=1)) == []

    async def test_failed_event_waits_for_next_attempt_at(
        self, ledger, make_endpoint, make_event, add_attempt
    ) -> None:
        endpoint = await make_endpoint()
        event = await make_event(endpoint.id)
        await add_attempt(
            event,
            status=DeliveryStatus.FAILED,
            attempt_count=1,
            status_code=500,
            next_attempt_at=T0 + timedelta(seconds=2),
        )

        assert await claimed_ids(ledger, now=T0) == []

        async with ledger.claim(10, T0 + timedelta(seconds=3)) as batch:
            assert [c.event.id for c in batch.events] == [event.id]
            assert batch.events[0].previous_attempts == 1
            assert batch.events[0].attempt_number == 2

    async def test_exhausted_event_is_not_claimed(
        self, ledger, make_endpoint, make_event, add_attempt
    ) -> None:
        endpoint = await make_endpoint()
        event = await make_event(endpoint.id)
        await add_attempt(
            event,
            status=DeliveryStatus.FAILED,
            attempt_count=5,
            next_attempt_at=T0 - timedelta(seconds=1),
        )

        assert await claimed_ids(ledger) == []

    async def test_records_commit_with_the_claim(
        self, ledger, session_factory, make_endpoint, make_event
    ) -> None:
        endpoint = await make_endpoint()
        event = await make_event(endpoint.id)

        async with ledger.claim(10, T0) as batch:
            await batch.record(
                batch.events[0],
                AttemptResult(failure=FailureKind.NONE, status_code=204, duration_ms=12.5),
                RetryDecision(status=DeliveryStatus.DELIVERED),
                T0,
            )

        history = await ledger.attempts_for(TENANT_A, event.id)
        assert len(history) == 1
        assert history[0].status == DeliveryStatus.DELIVERED
        assert history[0].attempt_count == 1
        assert history[0].status_code == 204
        assert history[0].delivered_at is not None

    async def test_error_inside_claim_rolls_back_and_releases(
        self, ledger, session_factory, make_endpoint, make_event
    ) -> None:
        endpoint = await make_endpoint()
        event = await make_event(endpoint.id)

        with pytest.raises(RuntimeError):
            async with ledger.claim(10, T0) as batch:
                await batch.record(
                    batch.events[0],
                    AttemptResult(failure=FailureKind.NONE, status_code=200),
                    RetryDecision(status=DeliveryStatus.DELIVERED),
                    T0,
                )
                raise RuntimeError("boom")

        async with session_factory() as db:
            rows = (await db.execute(select(DeliveryAttempt))).scalars().all()
        assert rows == []
        assert await claimed_ids(ledger) == [event.id]

    async def test_each_attempt_is_inserted_under_its_own_tenant(
        self, ledger, make_endpoint, make_event, write_order
    ) -> None:
        endpoint_a = await make_endpoint(tenant_id=TENANT_A)
        endpoint_b = await make_endpoint(tenant_id=TENANT_B)
        await make_event(endpoint_a.id, tenant_id=TENANT_A, created_at=T0 - timedelta(minutes=2))
        await make_event(endpoint_b.id, tenant_id=TENANT_B, created_at=T0 - timedelta(minutes=1))
        write_order.clear()

        async with ledger.claim(10, T0) as batch:
            for claimed in batch.events:
                await batch.record(
                    claimed,
                    AttemptResult(failure=FailureKind.NONE, status_code=200),
                    RetryDecision(status=DeliveryStatus.DELIVERED),
                    T0,
                )

        assert write_order == [
            ("tenant", TENANT_A),
            ("insert", TENANT_A),
            ("tenant", TENANT_B),
            ("insert", TENANT_B),
        ]

    async def test_outcome_committed_before_lock_drops_event(
        self, ledger, session_factory, make_endpoint, make_event
    ) -> None:
        endpoint = await make_endpoint()
        raced = await make_event(endpoint.id, created_at=T0 - timedelta(minutes=2))
        kept = await make_event(endpoint.id, created_at=T0 - timedelta(minutes=1))

        async with session_factory() as db:
            async with db.begin():
                rows = (await db.execute(ledger.claim_statement(10, T0))).all()
                assert [e.id for e, _ in rows] == [raced.id, kept.id]

                # Another replica finished this event after the claim snapshot
                db.add(DeliveryAttempt(
                    event_id=raced.id,
                    endpoint_id=endpoint.id,
                    tenant_id=TENANT_A,
                    status=DeliveryStatus.DELIVERED,
                    attempt_count=1,
                    delivered_at=T0,
                ))
                await db.flush()

                claimed = await ledger._still_eligible(db, rows, T0)

        assert [c.event.id for c in claimed] == [kept.id]

    async def test_history_is_tenant_scoped(
        self, ledger, make_endpoint, make_event, add_attempt
    ) -> None:
        endpoint = await make_endpoint()
        event = await make_event(endpoint.id)
        await add_attempt(event, status=DeliveryStatus.ABANDONED, attempt_count=1)

        assert await ledger.attempts_for(TENANT_B, event.id) == []
        assert len(await ledger.attempts_for(TENANT_A, event.id)) == 1

    async def test_ping(self, ledger) -> None:
        await ledger.ping()


class TestTenantContext:
    async def test_sets_transaction_local_tenant_on_postgres(self) -> None:
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "postgresql"
        db.execute = AsyncMock()

        await set_tenant_context(db, TENANT_A)

        db.execute.assert_awaited_once()
        statement, params = db.execute.await_args.args
        assert "set_config" in str(statement)
        assert params == {"name": "app.current_tenant", "tenant_id": TENANT_A}

    async def test_noop_on_other_dialects(self, session_factory) -> None:
        async with session_factory() as db:
            await set_tenant_context(db, TENANT_A)
