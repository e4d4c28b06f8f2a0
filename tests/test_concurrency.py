"""
Two delivery engines racing over the same events.

SQLite cannot express SKIP LOCKED, so the ledger here is an in-memory
stand-in with the same contract: claimed events are invisible to other
claimants until their attempt rows commit.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import httpx

from conftest import T0, TENANT_A, Clock, mock_client
from hookrelay.models.webhook import TERMINAL_STATUSES, DeliveryStatus, Endpoint, WebhookEvent
from hookrelay.services.delivery_engine import DeliveryEngine
from hookrelay.services.delivery_ledger import ClaimedEvent


class InMemoryBatch:
    def __init__(self, events: list[ClaimedEvent]):
        self.events = events
        self.rows: list[tuple[str, int, DeliveryStatus]] = []

    async def record(self, claimed, result, decision, now):
        self.rows.append((claimed.event.id, claimed.attempt_number, decision.status))


class InMemoryLedger:
    max_attempts = 5

    def __init__(self, events: list[WebhookEvent], endpoint: Endpoint):
        self.events = events
        self.endpoint = endpoint
        self.rows: list[tuple[str, int, DeliveryStatus]] = []
        self.locked: set[str] = set()
        self.overlaps = 0
        self._lock = asyncio.Lock()

    def _finished(self, event_id: str) -> bool:
        return any(eid == event_id and status in TERMINAL_STATUSES for eid, _, status in self.rows)

    @asynccontextmanager
    async def claim(self, batch_size, now):
        async with self._lock:
            eligible = [
                e for e in self.events
                if e.id not in self.locked and not self._finished(e.id)
            ]
            eligible.sort(key=lambda e: (e.created_at, e.id))
            ids = {e.id for e in eligible[:batch_size]}
            if ids & self.locked:
                self.overlaps += 1
            self.locked |= ids
        batch = InMemoryBatch([
            ClaimedEvent(event=e, endpoint=self.endpoint) for e in eligible[:batch_size]
        ])
        try:
            yield batch
            self.rows.extend(batch.rows)
        finally:
            self.locked -= ids


async def test_two_engines_never_deliver_the_same_event(metrics) -> None:
    endpoint = Endpoint(id="ep-1", tenant_id=TENANT_A, url="https://hooks.example.com/in", enabled=True)
    events = [
        WebhookEvent(
            id=f"evt-{i:02d}",
            tenant_id=TENANT_A,
            endpoint_id=endpoint.id,
            event_type="order.created",
            payload={"n": i},
            created_at=T0 - timedelta(seconds=100 - i),
        )
        for i in range(20)
    ]
    ledger = InMemoryLedger(events, endpoint)
    received: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        received.append(request.headers["X-Event-Id"])
        # Yield so the other engine gets to claim while this batch is in flight
        await asyncio.sleep(0)
        return httpx.Response(200)

    clock = Clock()
    async with mock_client(handler) as client_a, mock_client(handler) as client_b:
        engines = [
            DeliveryEngine(ledger, client_a, metrics, batch_size=4, clock=clock),
            DeliveryEngine(ledger, client_b, metrics, batch_size=4, clock=clock),
        ]
        for _ in range(10):
            results = await asyncio.gather(*(engine.run_cycle() for engine in engines))
            if not any(r.claimed for r in results):
                break

    assert ledger.overlaps == 0
    assert sorted(received) == sorted(e.id for e in events)
    delivered = [eid for eid, _, status in ledger.rows if status == DeliveryStatus.DELIVERED]
    assert sorted(delivered) == sorted(e.id for e in events)
    assert all(attempt == 1 for _, attempt, _ in ledger.rows)
