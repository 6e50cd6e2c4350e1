"""Lifespan and per-request dependencies for the ledger stores."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, FastAPI, Request

from creditgate.infra.db_engine import build_db
from creditgate.infra.lifespan import get_app

from .idempotency import IdempotencyCache
from .ledger import CreditLedger

logger = logging.getLogger(__name__)


async def build_ledger(
    app: Annotated[FastAPI, Depends(get_app)],
    _db: Annotated[None, Depends(build_db)],
) -> AsyncGenerator[None, None]:
    """Attach ``CreditLedger`` and ``IdempotencyCache`` to ``app.state``."""
    factory = app.state.session_factory
    app.state.credit_ledger = CreditLedger(factory)
    app.state.idempotency_cache = IdempotencyCache(factory)
    logger.info("Credit ledger and idempotency cache ready (SQL backend)")
    yield


def get_credit_ledger(request: Request) -> CreditLedger:
    return request.app.state.credit_ledger


def get_idempotency_cache(request: Request) -> IdempotencyCache:
    return request.app.state.idempotency_cache
