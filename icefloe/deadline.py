from __future__ import annotations

import threading
import time
from typing import Optional

from .exceptions import DeadlineExceeded
from .exceptions import OperationCancelled


class Deadline:
    """Cancellation token with an optional wall-clock budget.

    Long-running steps (scan planning, the commit retry loop) call `check()`
    between I/O calls. Another thread may call `cancel()` at any time.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._expires_at = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )
        self._cancelled = threading.Event()

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when there is no time budget."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def check(self, operation: str = "operation") -> None:
        if self._cancelled.is_set():
            raise OperationCancelled(f"{operation} was cancelled")
        if self.expired():
            raise DeadlineExceeded(f"{operation} exceeded its deadline")
