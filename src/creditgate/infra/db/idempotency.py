"""Durable webhook event claims.

Only a SQL implementation exists.  An in-process variant would make
"exactly once" hold per replica instead of globally, so there is none.

State per event key::

    unseen -> processing -> completed
                   |
                   +-> failed -> processing (next delivery)

A ``processing`` row whose ``expires_at`` has passed is treated like
``failed``: its worker is assumed dead and the next delivery takes over.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditgate.core.metrics import IDEMPOTENCY_CLAIMS_TOTAL
from creditgate.infra.db_engine import translate_db_errors

from .models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    IdempotencyRecord,
)

logger = logging.getLogger(__name__)

IdempotencyStatus = Literal["unseen", "processing", "completed", "failed"]

_MAX_ERROR_LEN = 2000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    status: IdempotencyStatus
    attempts: int = 0


class IdempotencyCache:
    """Compare-and-set claims on ``idempotency_records``.

    ``claim`` first tries to take over a failed or expired row with a
    conditional ``UPDATE``, then falls back to ``INSERT``.  The primary
    key decides the race between concurrent inserts; the row lock
    decides it between concurrent takeovers.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def claim(self, event_key: str, ttl: timedelta) -> ClaimResult:
        """Try to become the single processor of *event_key*."""
        now = self._clock()
        expires_at = now + ttl
        try:
            async with translate_db_errors("claim"):
                async with self._session_factory() as session, session.begin():
                    result = await session.execute(
                        update(IdempotencyRecord)
                        .where(
                            IdempotencyRecord.event_key == event_key,
                            or_(
                                IdempotencyRecord.status == STATUS_FAILED,
                                and_(
                                    IdempotencyRecord.status == STATUS_PROCESSING,
                                    IdempotencyRecord.expires_at <= now,
                                ),
                            ),
                        )
                        .values(
                            status=STATUS_PROCESSING,
                            attempts=IdempotencyRecord.attempts + 1,
                            last_error=None,
                            updated_at=now,
                            expires_at=expires_at,
                        )
                        .returning(IdempotencyRecord.attempts)
                        .execution_options(synchronize_session=False)
                    )
                    attempts = result.scalar_one_or_none()
                    if attempts is not None:
                        IDEMPOTENCY_CLAIMS_TOTAL.labels(result="reclaimed").inc()
                        logger.info(
                            "Reclaimed %s for retry (attempt %d)", event_key, attempts
                        )
                        return ClaimResult(True, STATUS_PROCESSING, attempts)

                    session.add(
                        IdempotencyRecord(
                            event_key=event_key,
                            status=STATUS_PROCESSING,
                            attempts=1,
                            created_at=now,
                            updated_at=now,
                            expires_at=expires_at,
                        )
                    )
                    await session.flush()
        except IntegrityError:
            status = await self.status(event_key)
            IDEMPOTENCY_CLAIMS_TOTAL.labels(result="held").inc()
            logger.info("Event %s already claimed (status=%s)", event_key, status)
            return ClaimResult(False, status)

        IDEMPOTENCY_CLAIMS_TOTAL.labels(result="claimed").inc()
        return ClaimResult(True, STATUS_PROCESSING, 1)

    async def mark_completed(self, event_key: str) -> None:
        """Terminal: later deliveries of *event_key* are no-ops."""
        updated = await self._finish(
            event_key, status=STATUS_COMPLETED, expires_at=None, last_error=None
        )
        if not updated:
            logger.warning(
                "mark_completed(%s) found no processing claim; it may have expired",
                event_key,
            )

    async def mark_failed(self, event_key: str, error: str = "") -> None:
        """Release the claim so the next delivery retries from scratch."""
        updated = await self._finish(
            event_key,
            status=STATUS_FAILED,
            expires_at=None,
            last_error=error[:_MAX_ERROR_LEN] or None,
        )
        if not updated:
            logger.warning("mark_failed(%s) found no processing claim", event_key)

    async def status(self, event_key: str) -> IdempotencyStatus:
        async with translate_db_errors("status"):
            async with self._session_factory() as session:
                found = await session.scalar(
                    select(IdempotencyRecord.status).where(
                        IdempotencyRecord.event_key == event_key
                    )
                )
        return found if found is not None else "unseen"  # type: ignore[return-value]

    async def _finish(
        self,
        event_key: str,
        *,
        status: str,
        expires_at: datetime | None,
        last_error: str | None,
    ) -> bool:
        async with translate_db_errors(f"mark_{status}"):
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(IdempotencyRecord)
                    .where(
                        IdempotencyRecord.event_key == event_key,
                        IdempotencyRecord.status == STATUS_PROCESSING,
                    )
                    .values(
                        status=status,
                        expires_at=expires_at,
                        last_error=last_error,
                        updated_at=self._clock(),
                    )
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1
