from __future__ import annotations
import threading
import time
from collections import defaultdict


class CircuitBreaker:
    """Per-platform failure counter: `threshold` failures inside `window` seconds open the circuit."""

    def __init__(self, threshold: int = 3, window: float = 300.0):
        self.threshold = threshold
        self.window = window
        self._failures: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def is_open(self, platform: str) -> bool:
        if self.threshold <= 0:
            return False
        with self._lock:
            return len(self._recent(platform)) >= self.threshold

    def record_failure(self, platform: str) -> None:
        with self._lock:
            self._recent(platform).append(time.monotonic())

    def record_success(self, platform: str) -> None:
        with self._lock:
            self._failures.pop(platform, None)

    def state(self) -> dict[str, dict]:
        with self._lock:
            counts = {p: len(self._recent(p)) for p in list(self._failures)}
        return {p: {"recent_failures": n, "open": 0 < self.threshold <= n} for p, n in counts.items()}

    def _recent(self, platform: str) -> list[float]:
        cutoff = time.monotonic() - self.window
        recent = [t for t in self._failures[platform] if t >= cutoff]
        self._failures[platform] = recent
        return recent
