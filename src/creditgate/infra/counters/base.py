"""Counter store contract and backend exceptions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta


class BackendUnavailable(Exception):
    """Raised when a durable store (Redis or the SQL database) cannot be reached."""

    def __init__(self, message: str, *, backend: str = "redis") -> None:
        super().__init__(message)
        self.backend = backend


class CounterStore(ABC):
    """Key-value counters with expiry.

    Used for ``rate:*``, ``quota:*`` and ``lock:*`` keys only.  Nothing
    that affects money goes through this interface.
    """

    @abstractmethod
    async def increment(self, key: str, ttl: timedelta) -> int:
        """Atomically add one to *key* and return the new value.

        The first increment on an absent or expired key starts it at 1
        and sets its expiry to *ttl*; later increments keep the expiry.
        """

    @abstractmethod
    async def get(self, key: str) -> int:
        """Return the value of *key*, or 0 when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: int, ttl: timedelta) -> None:
        """Overwrite *key* with *value* and a fresh expiry."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key*.  Missing keys are ignored."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: timedelta) -> bool:
        """Store *value* only when *key* holds nothing live.

        Returns:
            ``True`` when this call created the key.
        """

    @abstractmethod
    async def delete_if_equal(self, key: str, value: str) -> bool:
        """Delete *key* only while it still holds *value*."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Seconds until *key* expires (0 when absent)."""

    @abstractmethod
    async def scan(self, pattern: str) -> dict[str, int]:
        """Return ``{key: value}`` for live keys matching a glob *pattern*."""

    async def aclose(self) -> None:
        """Release any resources held by the backend."""
