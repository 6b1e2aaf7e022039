"""Progress observers for the separation core.

The processor holds its observer through a weak reference, so the caller
owns the observer's lifetime.  ``on_processing_finish`` and
``on_processing_error`` are optional; the processor skips them when an
observer does not define them.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class ProgressObserver(Protocol):
    def on_processing_start(self) -> None:
        ...

    def on_progress_update(self, progress: float) -> None:
        ...


class CallbackObserver:
    """Adapts start/progress/completion callbacks to the observer interface.

    ``on_completion`` receives ``(success, error_message)`` and is called from
    ``on_processing_finish`` or ``on_processing_error``.
    """

    def __init__(
        self,
        on_start: Optional[Callable[[], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        on_completion: Optional[Callable[[bool, Optional[str]], None]] = None,
    ) -> None:
        self._on_start = on_start
        self._on_progress = on_progress
        self._on_completion = on_completion

    def on_processing_start(self) -> None:
        if self._on_start:
            self._on_start()

    def on_progress_update(self, progress: float) -> None:
        if self._on_progress:
            self._on_progress(progress)

    def on_processing_finish(self) -> None:
        if self._on_completion:
            self._on_completion(True, None)

    def on_processing_error(self, message: str) -> None:
        if self._on_completion:
            self._on_completion(False, message)


class LoggingObserver:
    """Logs lifecycle events with elapsed and estimated remaining time."""

    def __init__(self, label: str = "separation", log: Optional[logging.Logger] = None) -> None:
        self.label = label
        self.log = log or logger
        self._started: Optional[float] = None

    def on_processing_start(self) -> None:
        self._started = time.perf_counter()
        self.log.info("[%s] started", self.label)

    def on_progress_update(self, progress: float) -> None:
        elapsed = self.elapsed()
        eta = estimate_remaining(elapsed, progress)
        if eta is None:
            self.log.info("[%s] %5.1f%%", self.label, progress * 100.0)
        else:
            self.log.info("[%s] %5.1f%% (elapsed %.1fs, remaining ~%.0fs)", self.label, progress * 100.0, elapsed, eta)

    def on_processing_finish(self) -> None:
        self.log.info("[%s] finished in %.1fs", self.label, self.elapsed())

    def on_processing_error(self, message: str) -> None:
        self.log.error("[%s] failed: %s", self.label, message)

    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return time.perf_counter() - self._started


def estimate_remaining(elapsed: float, progress: float, min_progress: float = 0.05) -> Optional[float]:
    """Linear ETA with a 10% safety margin; ``None`` until ``min_progress`` is reached."""
    if progress <= min_progress or progress >= 1.0:
        return None
    total = elapsed / progress
    remaining = total - elapsed
    if remaining <= 0:
        return None
    return remaining * 1.1
