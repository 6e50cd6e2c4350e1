"""Async SQLAlchemy engine and session factory -- **leaf module**.

``build_db`` is a lifespan dependency: it creates the engine and the
session factory, attaches them to ``app.state`` and disposes the engine
on shutdown.  The ledger and idempotency cache take the factory, never a
request-scoped session, because each money operation owns its own
transaction.

Kept outside the ``db`` package so ``telemetry`` can
``Depends(build_db)`` without importing the repositories.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as SQLAlchemyTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from creditgate.configs.config import AppConfig, ConfigurationError, get_app_config
from creditgate.infra.counters.base import BackendUnavailable
from creditgate.infra.lifespan import get_app


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def translate_db_errors(op: str) -> AsyncIterator[None]:
    """Re-raise connectivity failures as ``BackendUnavailable``.

    Constraint violations and other data errors pass through untouched.
    """
    try:
        yield
    except (OperationalError, InterfaceError, SQLAlchemyTimeoutError) as exc:
        raise BackendUnavailable(f"Database {op} failed: {exc}", backend="sql") from exc


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_db(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[None, None]:
    """Create engine + session factory, attach to ``app.state``."""
    tp = config.third_party
    if not tp.postgres_uri:
        raise ConfigurationError(
            "third_party.postgres_uri is required: the ledger has no in-memory mode"
        )
    engine = create_async_engine(
        tp.postgres_uri,
        pool_pre_ping=True,
        pool_size=tp.postgres_pool_size,
        max_overflow=tp.postgres_max_overflow,
    )
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    yield
    await engine.dispose()
