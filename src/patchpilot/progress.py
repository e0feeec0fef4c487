"""Linear, human-readable progress log keyed by job id."""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

LOGGER = logging.getLogger("patchpilot.progress")

ProgressSink = Callable[[str, str], None]


class ProgressLog:
    """Collect progress lines for one job and forward them to an optional sink."""

    def __init__(self, job_id: str, sink: Optional[ProgressSink] = None) -> None:
        self.job_id = job_id
        self._sink = sink
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def __call__(self, message: str) -> None:
        self.emit(message)

    def emit(self, message: str) -> None:
        with self._lock:
            self._lines.append(message)
        LOGGER.info("[%s] %s", self.job_id, message)
        if self._sink is not None:
            self._sink(self.job_id, message)

    @property
    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)


__all__ = ["ProgressLog", "ProgressSink"]
