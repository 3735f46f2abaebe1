"""Cancellation context threaded through resolve, download and verify."""
import threading
import time
from typing import Optional

from imgfetch.core.errors import CancelledError


class FetchContext:
    """Cooperative cancellation token with an optional deadline.

    Blocking operations call ``check()`` between units of work (HTTP chunks,
    file reads) and stop with ``CancelledError`` once the context is
    cancelled or its deadline has passed.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._reason = "operation cancelled"
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self, reason: str = "operation cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self._reason = "deadline exceeded"
            return True
        return False

    def check(self) -> None:
        """Raise CancelledError if the context is done."""
        if self.cancelled:
            raise CancelledError(self._reason)

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None if there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())