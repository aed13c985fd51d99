from __future__ import annotations

from contextlib import contextmanager
import logging
import signal
import threading
from typing import Iterator

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def termination_signal_scope(cancel_event: threading.Event, description: str) -> Iterator[threading.Event]:
    """Set ``cancel_event`` when SIGINT or SIGTERM arrives while the scope is active.

    Handlers can only be installed from the main thread; elsewhere the event is
    still yielded so callers can cancel it themselves.
    """
    if threading.current_thread() is not threading.main_thread():
        yield cancel_event
        return

    def _handle(signum: int, _frame: object) -> None:
        logger.warning(f"received signal {signal.Signals(signum).name}, cancelling {description}")
        cancel_event.set()

    previous_handlers = {signum: signal.signal(signum, _handle) for signum in TERMINATION_SIGNALS}
    try:
        yield cancel_event
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
