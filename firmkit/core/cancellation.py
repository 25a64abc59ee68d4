"""
Cooperative cancellation for long-running installs.

A CancellationToken is checked at every suspension point (between download
chunks, during retry backoff, while polling external commands). Cancelling a
token also cancels every token derived from it with ``child()``.
"""

import threading
from typing import Optional

from firmkit.core.exceptions import OperationCancelled


class CancellationToken:
    """Thread-safe cancellation flag with optional parent."""

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._parent = parent
        self._reason = ""

    def cancel(self, reason: str = "operation cancelled") -> None:
        """Signal cancellation to everyone holding this token or a child of it."""
        self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled

    @property
    def reason(self) -> str:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return ""

    def raise_if_cancelled(self) -> None:
        """
        Raise OperationCancelled if this token (or a parent) was cancelled.

        Raises:
            OperationCancelled: If cancelled
        """
        if self.is_cancelled:
            raise OperationCancelled(self.reason or "operation cancelled")

    def sleep(self, seconds: float) -> None:
        """
        Sleep for ``seconds`` unless cancelled first.

        Polls in short slices so that a parent's cancellation is noticed too.

        Raises:
            OperationCancelled: If cancelled while sleeping
        """
        remaining = seconds
        while remaining > 0:
            self.raise_if_cancelled()
            step = min(remaining, 0.1)
            if self._event.wait(step):
                break
            remaining -= step
        self.raise_if_cancelled()

    def child(self) -> "CancellationToken":
        """Create a token that is cancelled whenever this one is."""
        return CancellationToken(parent=self)


def ensure_token(token: Optional[CancellationToken]) -> CancellationToken:
    """Return ``token`` or a fresh, never-cancelled token."""
    return token if token is not None else CancellationToken()


__all__ = ["CancellationToken", "ensure_token"]
