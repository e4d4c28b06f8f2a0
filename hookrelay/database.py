"""
Database engine and session management.

The dispatcher owns its own connection pool. It is sized independently
from the ingestion API's pool so the two can never exhaust each other.
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from hookrelay.config import Settings, settings

TENANT_SETTING = "app.current_tenant"


def create_dispatcher_engine(config: Settings = settings) -> AsyncEngine:
    """Create the async engine used by both dispatcher loops."""
    return create_async_engine(
        config.DATABASE_URL,
        echo=config.DEBUG,
        pool_size=config.DISPATCHER_DB_POOL_SIZE,
        max_overflow=config.DISPATCHER_DB_MAX_OVERFLOW,
        pool_pre_ping=True,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False)


engine = create_dispatcher_engine()
AsyncSessionLocal = create_session_factory(engine)


async def set_tenant_context(db: AsyncSession, tenant_id: str) -> None:
    """
    Scope the current transaction to a single tenant.

    Row-level security policies on PostgreSQL read ``app.current_tenant``.
    The setting is transaction-local, so it never leaks to the next user of
    the pooled connection. Other dialects have no RLS and are left alone.

    Args:
        db: Session with an open transaction
        tenant_id: Tenant whose rows the following statements may touch
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    await db.execute(
        text("SELECT set_config(:name, :tenant_id, true)"),
        {"name": TENANT_SETTING, "tenant_id": tenant_id},
    )
