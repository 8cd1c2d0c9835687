from __future__ import annotations
import threading
import time
from typing import Optional

from .errors import BuildTimeoutError, CancellationError


class CancellationToken:
    """Cooperative cancellation flag with an optional hard deadline."""

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.reason = ""
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout if timeout else None

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        if self.cancelled:
            raise CancellationError(self.reason)
        if self.expired:
            raise BuildTimeoutError(f"Timed out after {self.timeout:g}s")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if cancelled meanwhile."""
        return self._event.wait(seconds)
