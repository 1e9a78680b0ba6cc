"""Turn SIGINT and SIGTERM into a shutdown event."""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from typing import Iterator

__all__ = ["handle_signals"]

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def handle_signals(event: threading.Event | None = None) -> Iterator[threading.Event]:
    """Yield an event that is set when SIGINT or SIGTERM arrives.

    Leaving the block restores the previous handlers and sets the event.
    Must be used from the main thread.
    """
    done = event if event is not None else threading.Event()

    def _on_signal(signum, frame) -> None:
        done.set()

    previous = {sig: signal.signal(sig, _on_signal) for sig in _SIGNALS}
    try:
        yield done
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        done.set()