"""Limit outcomes and the exceptions raised when a request is turned away.

None of these are errors: they become 429/413 responses and are logged
at INFO at most.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RateResult:
    """Outcome of one fixed-window check."""

    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    @classmethod
    def unlimited(cls) -> RateResult:
        return cls(allowed=True, limit=0, remaining=0, reset_seconds=0)

    def headers(self) -> dict[str, str]:
        """``X-RateLimit-*`` headers describing this window."""
        if self.limit <= 0:
            return {}
        out = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed:
            out["Retry-After"] = str(max(1, self.reset_seconds))
        return out


class RateLimited(Exception):
    """Raised when a fixed-window budget is exceeded."""

    def __init__(self, message: str, *, scope: str, result: RateResult) -> None:
        super().__init__(message)
        self.scope = scope
        self.result = result


class QuotaExceeded(Exception):
    """Raised when an identity has used its daily allowance."""

    def __init__(self, message: str, *, limit: int, used: int) -> None:
        super().__init__(message)
        self.limit = limit
        self.used = used


class TooManyConcurrent(Exception):
    """Raised when every concurrency slot for an identity is held."""

    def __init__(self, message: str, *, max_slots: int, retry_after: int) -> None:
        super().__init__(message)
        self.max_slots = max_slots
        self.retry_after = retry_after


class PayloadTooLarge(Exception):
    """Raised when a request body exceeds the configured size."""

    def __init__(self, message: str, *, size: int, limit: int) -> None:
        super().__init__(message)
        self.size = size
        self.limit = limit
