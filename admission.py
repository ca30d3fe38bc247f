"""Admission control: a per-client fixed-window rate limiter.

The server asks the gate before processing a request. Anything exposing
``admit(key, limit)`` and ``prune()`` can stand in for ``RateLimiter``.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from fastapi import Request

from errors import RateLimited
from logging_config import log_security_event

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

# Requests per minute, per client IP, for each guarded route group.
REGISTER_LIMIT = 10
AUTHORIZE_LIMIT = 20
APPROVE_LIMIT = 20
TOKEN_LIMIT = 20
MCP_LIMIT = 60


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed one-minute windows keyed by an arbitrary string."""

    def __init__(self, window: float = WINDOW_SECONDS, clock: Callable[[], float] = time.time):
        self.window = window
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def admit(self, key: str, limit: int) -> bool:
        now = self._clock()
        current = self._windows.get(key)
        if current is None or now >= current.reset_at:
            self._windows[key] = _Window(count=1, reset_at=now + self.window)
            return True
        if current.count >= limit:
            return False
        current.count += 1
        return True

    def prune(self) -> int:
        now = self._clock()
        stale = [key for key, w in self._windows.items() if now >= w.reset_at]
        for key in stale:
            del self._windows[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


def client_ip(request) -> str:
    """Best-effort client address for a Starlette request or ASGI scope."""
    scope = request.scope if hasattr(request, "scope") else request
    client = scope.get("client")
    return client[0] if client else "unknown"


def check_admission(gate, bucket: str, ip: str, limit: int, method: str = "", path: str = "") -> None:
    """Raise ``RateLimited`` when ``gate`` refuses the request."""
    if gate is None or gate.admit(f"{bucket}:{ip}", limit):
        return
    log_security_event("rate_limit", ip, f"{method} {path} (limit: {limit}/min)".strip())
    raise RateLimited("Rate limited. Try again in a minute.")


def rate_guard(bucket: str, limit: int):
    """FastAPI dependency enforcing ``limit`` requests per minute for ``bucket``."""

    async def guard(request: Request) -> None:
        check_admission(
            getattr(request.app.state, "rate_limiter", None),
            bucket,
            client_ip(request),
            limit,
            request.method,
            request.url.path,
        )

    return guard
