"""
Rate limiting. In-memory sliding window per key (per client IP).
Applied to POST /token to slow down code guessing.
"""
import math
import threading
import time

_WINDOW_SECONDS = 60


class RateLimiter:
    def __init__(self, limit: int, window_seconds: int = _WINDOW_SECONDS):
        self.limit = limit
        self.window_seconds = window_seconds
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def check_and_consume(self, key: str) -> tuple[bool, int | None]:
        """
        Check if the key is under the limit for the sliding window; if so, record this request.
        Returns (allowed, retry_after_seconds); retry_after is >= 1 when not allowed.
        A limit <= 0 disables limiting.
        """
        if self.limit <= 0:
            return True, None
        now = time.monotonic()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            timestamps = [t for t in self._store.get(key, ()) if t > cutoff]
            if len(timestamps) >= self.limit:
                self._store[key] = timestamps
                oldest = min(timestamps)
                retry_after = max(1, math.ceil(self.window_seconds - (now - oldest)))
                return False, retry_after
            timestamps.append(now)
            self._store[key] = timestamps
            return True, None

    def _sweep(self, cutoff: float) -> None:
        """Drop keys with no request inside the window."""
        for key in [k for k, ts in self._store.items() if not ts or ts[-1] <= cutoff]:
            del self._store[key]

    def __len__(self) -> int:
        return len(self._store)
