"""Caller identity from request headers.

Authentication happens upstream of this service; we only read what it
forwards.  Resolution order for the identity used by limits:

1. ``x-user-id`` -- signed-in users, or anonymous ids prefixed ``anon_``
2. ``x-anon-id`` -- browser-generated id for signed-out visitors
3. the real client IP (see ``get_real_ip``)

Deployment chain: Client -> Cloudflare -> Traefik -> FastAPI, so
``request.client.host`` is the proxy.  The real IP comes from, in order,
``CF-Connecting-IP``, ``X-Real-IP``, the leftmost ``X-Forwarded-For``
entry, and only then the socket peer.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

ANONYMOUS_PREFIX = "anon_"

USER_ID_HEADER = "x-user-id"
ANON_ID_HEADER = "x-anon-id"

_REAL_IP_HEADER_NAMES = [
    "cf-connecting-ip",
    "x-real-ip",
    "x-forwarded-for",
]

_DEFAULT_UNKNOWN_IP = "unknown"


def get_real_ip(request: Request) -> str:
    """Extract the real client IP from the request.

    Usable as a FastAPI dependency::

        real_ip: str = Depends(get_real_ip)
    """
    for header in _REAL_IP_HEADER_NAMES:
        value = request.headers.get(header)
        if value:
            return value.split(",")[0].strip()

    if request.client:
        return request.client.host

    return _DEFAULT_UNKNOWN_IP


@dataclass(frozen=True)
class Identity:
    key: str
    ip: str
    user_id: str | None = None

    @property
    def anonymous(self) -> bool:
        return self.user_id is None or self.user_id.startswith(ANONYMOUS_PREFIX)

    @property
    def account_id(self) -> str | None:
        """The account to bill, or ``None`` for anonymous callers."""
        return None if self.anonymous else self.user_id


def get_identity(request: Request) -> Identity:
    ip = get_real_ip(request)
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip() or None
    if user_id:
        return Identity(key=user_id, ip=ip, user_id=user_id)
    anon_id = (request.headers.get(ANON_ID_HEADER) or "").strip()
    if anon_id:
        if not anon_id.startswith(ANONYMOUS_PREFIX):
            anon_id = f"{ANONYMOUS_PREFIX}{anon_id}"
        return Identity(key=anon_id, ip=ip)
    return Identity(key=ip, ip=ip)
