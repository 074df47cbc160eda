# FILE: shadowgate/ratelimit.py
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    permitted: bool
    retry_after: Optional[float] = None


class _WindowBucket:
    """Fixed-window counter for one origin. Guarded by its own lock."""

    __slots__ = ("window_start", "count", "lock", "evicted")

    def __init__(self, now: float) -> None:
        self.window_start = now
        self.count = 0
        self.lock = threading.Lock()
        self.evicted = False


_OVERFLOW_KEY = "<overflow>"


class FixedWindowRateLimiter:
    """
    `limit` requests per `window_s` per key, counted in fixed windows.

    Rollover is lazy: a bucket's window is reset on the next access at or
    after window_start + window_s, so no timer thread is needed. The
    check-and-increment runs under the bucket's lock, so concurrent callers
    for the same key can never be admitted past the limit. The map lock is
    held only to find or create a bucket.

    At most `max_buckets` keys are tracked. Only buckets whose window has
    elapsed are ever evicted; while the map is full of live windows, new
    keys share one overflow bucket with the same limit.
    """

    def __init__(
        self,
        limit: int = 3,
        window_s: float = 15 * 60.0,
        *,
        max_buckets: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if int(limit) < 1:
            raise ValueError("limit must be >= 1")
        if float(window_s) <= 0:
            raise ValueError("window_s must be > 0")
        self.limit = int(limit)
        self.window_s = float(window_s)
        self.max_buckets = max(1, int(max_buckets))
        self._clock = clock
        self._buckets: Dict[Any, _WindowBucket] = {}
        self._overflow = _WindowBucket(float("-inf"))
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        # Called with the map lock held; bucket locks nest inside it.
        for k, b in list(self._buckets.items()):
            with b.lock:
                if now >= b.window_start + self.window_s:
                    b.evicted = True
                    del self._buckets[k]

    def _bucket(self, key: Any, now: float) -> _WindowBucket:
        with self._lock:
            b = self._buckets.get(key)
            if b is None:
                if len(self._buckets) >= self.max_buckets:
                    self._evict(now)
                if len(self._buckets) >= self.max_buckets:
                    _logger.warning("rate limit bucket cap reached; key routed to overflow bucket")
                    return self._overflow
                b = _WindowBucket(now)
                self._buckets[key] = b
            return b

    def allow(self, key: Any) -> RateDecision:
        while True:
            now = self._clock()
            b = self._bucket(key, now)
            with b.lock:
                if b.evicted:
                    # Dropped between lookup and lock; take the live one.
                    continue
                if now >= b.window_start + self.window_s:
                    b.window_start = now
                    b.count = 0
                if b.count < self.limit:
                    b.count += 1
                    return RateDecision(True, None)
                retry_after = max(0.0, b.window_start + self.window_s - now)
                return RateDecision(False, retry_after)

    def reset(self, key: Any = None) -> None:
        with self._lock:
            if key is None:
                drop = list(self._buckets.items())
                self._buckets.clear()
            else:
                b = self._buckets.pop(key, None)
                drop = [(key, b)] if b is not None else []
            for _, b in drop:
                with b.lock:
                    b.evicted = True
            if key is None:
                with self._overflow.lock:
                    self._overflow.window_start = float("-inf")
                    self._overflow.count = 0

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        now = self._clock()
        with self._lock:
            items = list(self._buckets.items())
        items.append((_OVERFLOW_KEY, self._overflow))
        out: Dict[str, Dict[str, float]] = {}
        for k, b in items:
            with b.lock:
                if b.count == 0:
                    continue
                remaining = max(0.0, b.window_start + self.window_s - now)
                out[str(k)] = {"count": float(b.count), "window_remaining_s": remaining}
        return out
