"""Stop-aware waiting shared by the rate limiter and retry backoff."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable


class AnalysisInterrupted(RuntimeError):
    """Raised when a stop was requested while a worker was waiting."""


def sleep_with_stop(
    seconds: float,
    stop_event: threading.Event | None = None,
    *,
    sleep: Callable[[float], None] | None = None,
) -> None:
    """Sleep ``seconds`` unless ``stop_event`` fires first, then raise ``AnalysisInterrupted``.

    A custom ``sleep`` (used by tests) bypasses event waiting but the stop flag
    is still checked before and after it.
    """

    if stop_event is not None and stop_event.is_set():
        raise AnalysisInterrupted("Stop requested before wait.")
    if seconds <= 0:
        return
    if sleep is not None:
        sleep(seconds)
    elif stop_event is not None:
        if stop_event.wait(seconds):
            raise AnalysisInterrupted("Stop requested during wait.")
        return
    else:
        time.sleep(seconds)
    if stop_event is not None and stop_event.is_set():
        raise AnalysisInterrupted("Stop requested during wait.")
