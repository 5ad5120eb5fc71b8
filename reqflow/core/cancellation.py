"""
Cooperative cancellation for I/O-bound operations.

A token is handed to every operation that talks to a vendor, the render
server or the persistence port. The operation checks it before and after
each I/O call and raises ``Cancelled`` once it has fired.
"""

import threading

from reqflow.core.exceptions import Cancelled


class CancellationToken:
    """Thread-safe, one-shot cancellation flag."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns the flag."""
        return self._event.wait(timeout)

    def __repr__(self):
        return f"<CancellationToken cancelled={self.cancelled}>"


def check(token: CancellationToken | None) -> None:
    """Raise ``Cancelled`` if ``token`` is set; ``None`` means never cancelled."""
    if token is not None:
        token.raise_if_cancelled()
