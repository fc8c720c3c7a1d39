"""Caller-controlled cancellation of workflow runs."""

import threading
from typing import Optional

from .exceptions import ExecutionCancelledError


class CancellationToken:
    """Cancellation signal checked by a run at each of its suspension points."""

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Execution cancelled by user") -> None:
        """Request cancellation. Idempotent; the first reason wins."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Raise ExecutionCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise ExecutionCancelledError(self._reason or "Execution cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for up to ``seconds``, waking immediately on cancellation.

        Raises:
            ExecutionCancelledError: If the token is cancelled before or during the sleep
        """
        self.raise_if_cancelled()
        if seconds > 0 and self._event.wait(seconds):
            self.raise_if_cancelled()
