"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from prometheus_client import CollectorRegistry
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hookrelay.models.base import Base, new_id
from hookrelay.models.monitor import Monitor
from hookrelay.models.webhook import DeliveryAttempt, Endpoint, WebhookEvent
from hookrelay.services.metrics import MetricsEmitter

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


class Clock:
    """Mutable clock injected into engines."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
async def db_engine():
    """In-memory SQLite engine with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsEmitter:
    return MetricsEmitter(registry=registry, endpoint_sampler=lambda endpoint_id: True)


@pytest.fixture
def make_endpoint(session_factory):
    async def _make(
        tenant_id: str = TENANT_A,
        url: str = "https://hooks.example.com/receive",
        enabled: bool = True,
    ) -> Endpoint:
        async with session_factory() as db:
            endpoint = Endpoint(id=new_id(), tenant_id=tenant_id, url=url, enabled=enabled)
            db.add(endpoint)
            await db.commit()
            return endpoint

    return _make


@pytest.fixture
def make_event(session_factory):
    async def _make(
        endpoint_id: str,
        tenant_id: str = TENANT_A,
        created_at: datetime = T0 - timedelta(minutes=5),
        payload: Any = None,
        event_type: str = "order.created",
    ) -> WebhookEvent:
        async with session_factory() as db:
            event = WebhookEvent(
                id=new_id(),
                tenant_id=tenant_id,
                endpoint_id=endpoint_id,
                event_type=event_type,
                payload={"order_id": 42} if payload is None else payload,
                created_at=created_at,
            )
            db.add(event)
            await db.commit()
            return event

    return _make


@pytest.fixture
def add_attempt(session_factory):
    async def _add(event: WebhookEvent, **fields) -> DeliveryAttempt:
        async with session_factory() as db:
            attempt = DeliveryAttempt(
                event_id=event.id,
                endpoint_id=event.endpoint_id,
                tenant_id=event.tenant_id,
                **fields,
            )
            db.add(attempt)
            await db.commit()
            return attempt

    return _add


@pytest.fixture
def make_monitor(session_factory):
    async def _make(
        tenant_id: str = TENANT_A,
        url: str = "https://status.example.com/health",
        interval_seconds: int = 30,
        enabled: bool = True,
        name: str = "api",
    ) -> Monitor:
        async with session_factory() as db:
            monitor = Monitor(
                id=new_id(),
                tenant_id=tenant_id,
                project_id="project-1",
                name=name,
                url=url,
                interval_seconds=interval_seconds,
                enabled=enabled,
            )
            db.add(monitor)
            await db.commit()
            return monitor

    return _make


def mock_client(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by handler."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def write_order(db_engine, monkeypatch):
    """
    Sequence of tenant context switches and INSERTs, in execution order.

    Entries are ("tenant", tenant_id) and ("insert", tenant_id).
    """
    log: list[tuple[str, str | None]] = []

    async def record_tenant(db, tenant_id: str) -> None:
        log.append(("tenant", tenant_id))

    def record_insert(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("INSERT INTO"):
            tenant = next((t for t in (TENANT_A, TENANT_B) if t in parameters), None)
            log.append(("insert", tenant))

    monkeypatch.setattr("hookrelay.services.delivery_ledger.set_tenant_context", record_tenant)
    monkeypatch.setattr("hookrelay.services.monitor_engine.set_tenant_context", record_tenant)
    event.listen(db_engine.sync_engine, "before_cursor_execute", record_insert)
    yield log
    event.remove(db_engine.sync_engine, "before_cursor_execute", record_insert)
