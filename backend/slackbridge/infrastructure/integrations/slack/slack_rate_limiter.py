from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable


@dataclass
class _Window:
    # Admitted request timestamps (seconds), oldest first.
    ts: deque[float] = field(default_factory=deque)


class SlidingWindowRateLimiter:
    """
    Per-workspace sliding-window admission control (in-memory, per-process).

    Each key gets an independent trailing window; a saturated key never
    delays another one.
    """

    def __init__(
        self,
        *,
        max_requests: int = 50,
        window_s: float = 60.0,
        poll_interval_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._limit = max(1, int(max_requests or 1))
        self._window_s = max(0.001, float(window_s or 1.0))
        self._poll_interval_s = max(0.01, float(poll_interval_s or 1.0))
        self._clock = clock
        self._sleep = sleep
        self._by_key: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def _prune(self, w: _Window, now: float) -> None:
        cutoff = now - self._window_s
        while w.ts and w.ts[0] <= cutoff:
            w.ts.popleft()

    def try_acquire(self, key: str) -> bool:
        """Admit and record one request for `key` if its window has room."""
        k = str(key or "").strip()
        with self._lock:
            now = self._clock()
            w = self._by_key.get(k)
            if w is None:
                w = self._by_key[k] = _Window()
            self._prune(w, now)
            if len(w.ts) >= self._limit:
                return False
            # A clock that steps backwards must not break ordering.
            w.ts.append(max(now, w.ts[-1]) if w.ts else now)
            return True

    async def acquire(self, key: str) -> None:
        """Wait (coarse polling) until `key` is admitted, then record it."""
        while not self.try_acquire(key):
            await self._sleep(self._poll_interval_s)

    def snapshot(self, key: str) -> int:
        """Number of admitted requests currently inside `key`'s window."""
        k = str(key or "").strip()
        with self._lock:
            w = self._by_key.get(k)
            if not w:
                return 0
            self._prune(w, self._clock())
            return len(w.ts)
