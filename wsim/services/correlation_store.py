"""
Short-lived, single-use correlation records.

Two flows need to remember something between two HTTP requests that
arrive from different actors:

  - Enrollment: the OIDC state, nonce and PKCE verifier created when the
    user starts linking a bank, read back when the bank redirects to the
    callback.
  - Mobile login: the 6-digit email code issued by /auth/login, checked by
    /auth/login/verify.

Both records expire (10 and 5 minutes) and are consumed by take_once(),
whatever its outcome; peek() lets a caller check a record before deciding
to consume it. Engines depend on the CorrelationStore
interface only, so a shared backend can replace the in-memory one when the
API runs as more than one process.

Expiry is enforced on every read; the periodic sweep only bounds memory.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class CorrelationStore(ABC):
    """Keyed store whose entries expire and can be read exactly once."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        ...

    @abstractmethod
    async def peek(self, key: str) -> Any | None:
        """Return the value for `key` without consuming it, or None if absent or expired."""

    @abstractmethod
    async def take_once(self, key: str) -> Any | None:
        """Remove and return the value for `key`, or None if absent or expired."""

    @abstractmethod
    async def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""

    async def start(self) -> None:
        """Start background housekeeping, if the backend needs any."""

    async def stop(self) -> None:
        """Stop background housekeeping."""


class InMemoryCorrelationStore(CorrelationStore):
    """
    Process-local store backed by a dict.

    Entries live only in this process; a deployment with several API
    processes behind a load balancer needs a shared CorrelationStore.
    """

    def __init__(self, name: str, sweep_interval_seconds: float = 60.0):
        self.name = name
        self.sweep_interval_seconds = sweep_interval_seconds
        self._entries: dict[str, tuple[Any, float]] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    async def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = (value, time.monotonic() + ttl_seconds)

    async def peek(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            return None
        return value

    async def take_once(self, key: str) -> Any | None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            return None
        return value

    async def sweep(self) -> int:
        now = time.monotonic()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Swept %d expired %s entries", len(expired), self.name)
        return len(expired)

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            await self.sweep()
