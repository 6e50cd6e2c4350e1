"""Shared fixtures: a file-backed SQLite ledger and a memory counter store."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from creditgate.infra.counters import MemoryCounterStore
from creditgate.infra.db import Account, Base, CreditLedger, IdempotencyCache
from creditgate.infra.db_engine import make_session_factory


class FakeClock:
    """Monotonic-style clock the tests move by hand."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryCounterStore:
    return MemoryCounterStore(clock=clock)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncEngine:
    """SQLite engine whose transactions take the write lock up front.

    ``BEGIN IMMEDIATE`` serialises concurrent transactions the way row
    locks do on PostgreSQL, so race tests exercise the real constraints.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", poolclass=NullPool
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _autocommit_driver(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def ledger(session_factory) -> CreditLedger:
    return CreditLedger(session_factory)


@pytest.fixture
def idempotency(session_factory) -> IdempotencyCache:
    return IdempotencyCache(session_factory)


@pytest.fixture
def add_account(session_factory):
    async def _add(
        user_id: str = "user-1",
        email: str = "a@example.com",
        credits: int = 0,
        subscription_status: str | None = None,
    ) -> None:
        async with session_factory() as session, session.begin():
            session.add(
                Account(
                    id=user_id,
                    email=email,
                    credits_balance=credits,
                    subscription_status=subscription_status,
                )
            )

    return _add
