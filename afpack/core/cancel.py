"""Cooperative cancellation for long-running copy and compression passes."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Callable, Optional

from afpack.errors import OperationCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Flag checked between files; never interrupts a file mid-write."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(f"Operation cancelled ({self.reason})")


def install_signal_handlers(token: CancellationToken) -> Callable[[], None]:
    """Turn SIGINT/SIGTERM into a cancellation request.

    Returns a function restoring the previous handlers. Only callable from the
    main thread.
    """
    previous: dict[int, object] = {}

    def _handler(signum, _frame) -> None:
        name = signal.Signals(signum).name
        logger.warning("Received %s - stopping at the next checkpoint", name)
        token.cancel(name)

    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, _handler)

    def _restore() -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    return _restore
