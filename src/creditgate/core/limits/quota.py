"""Daily usage counters keyed by UTC calendar day."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone

from creditgate.infra.counters.base import CounterStore

_KEY_PREFIX = "quota:"
_TTL = timedelta(hours=25)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaTracker:
    """Counts metered calls per identity per day.

    A pure counter: deciding what count is too many belongs to the
    caller.  Keys look like ``quota:{identity}:{YYYY-MM-DD}`` and expire
    a little after the day ends.
    """

    def __init__(
        self, store: CounterStore, clock: Callable[[], datetime] = _utc_now
    ) -> None:
        self._store = store
        self._clock = clock

    def _today(self) -> str:
        return self._clock().astimezone(timezone.utc).date().isoformat()

    @staticmethod
    def key(identity: str, day: str) -> str:
        return f"{_KEY_PREFIX}{identity}:{day}"

    async def increment_daily_usage(self, identity: str) -> int:
        return await self._store.increment(self.key(identity, self._today()), _TTL)

    async def get_daily_usage(self, identity: str) -> int:
        return await self._store.get(self.key(identity, self._today()))

    async def usage_for_date(self, day: date) -> dict[str, int]:
        """Return ``{identity: count}`` for every identity seen on *day*."""
        suffix = f":{day.isoformat()}"
        entries = await self._store.scan(f"{_KEY_PREFIX}*{suffix}")
        usage: dict[str, int] = {}
        for key, count in entries.items():
            # Identities may contain ':' (IPv6), so strip both ends.
            identity = key[len(_KEY_PREFIX) : -len(suffix)]
            if identity:
                usage[identity] = count
        return usage
