from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from pathlib import Path
from typing import AsyncIterator
from uuid import uuid4

from taskforge.errors import LockTimeoutError

_log = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_MS = 5000


def normalize_key(resource: str | Path) -> str:
    return str(Path(resource).resolve(strict=False))


class LockManager:
    """Advisory per-resource locks for one event loop.

    Waiters park on a shared condition and are woken on every release; whoever
    re-checks first wins, so ordering between waiters is not fair.
    """

    def __init__(self, *, default_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS):
        self.default_timeout_ms = max(0, int(default_timeout_ms))
        self._holders: dict[str, str] = {}
        self._condition: asyncio.Condition | None = None

    def _cond(self) -> asyncio.Condition:
        if self._condition is None:
            self._condition = asyncio.Condition()
        return self._condition

    async def acquire(
        self,
        resource: str | Path,
        *,
        holder: str | None = None,
        timeout_ms: int | None = None,
    ) -> str:
        key = normalize_key(resource)
        token = holder or uuid4().hex
        budget_ms = self.default_timeout_ms if timeout_ms is None else max(0, int(timeout_ms))
        cond = self._cond()
        async with cond:
            if key in self._holders:
                try:
                    await asyncio.wait_for(
                        cond.wait_for(lambda: key not in self._holders),
                        timeout=budget_ms / 1000.0,
                    )
                except asyncio.TimeoutError:
                    _log.warning('lock_timeout resource=%s timeout_ms=%s holder=%s', key, budget_ms, self._holders.get(key))
                    raise LockTimeoutError(
                        f'timed out acquiring lock for {key} after {budget_ms}ms',
                        details={'resource': key, 'timeout_ms': budget_ms},
                    ) from None
            self._holders[key] = token
        return token

    async def release(self, resource: str | Path, holder: str | None = None) -> bool:
        key = normalize_key(resource)
        cond = self._cond()
        async with cond:
            current = self._holders.get(key)
            if current is None:
                return False
            if holder is not None and current != holder:
                _log.warning('lock_release_mismatch resource=%s holder=%s current=%s', key, holder, current)
                return False
            del self._holders[key]
            cond.notify_all()
        return True

    @asynccontextmanager
    async def hold(
        self,
        resource: str | Path,
        *,
        timeout_ms: int | None = None,
    ) -> AsyncIterator[str]:
        token = await self.acquire(resource, timeout_ms=timeout_ms)
        try:
            yield token
        finally:
            await self.release(resource, token)

    def is_locked(self, resource: str | Path) -> bool:
        return normalize_key(resource) in self._holders

    def holder(self, resource: str | Path) -> str | None:
        return self._holders.get(normalize_key(resource))
