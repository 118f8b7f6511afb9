"""Observer hooks for whatever renders the session (console, GUI, tests)."""

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]
RefreshCallback = Callable[[], None]


class SessionEvents:
    """Two channels: user-visible log lines, and "the session changed"."""

    def __init__(self) -> None:
        self._log: list[LogCallback] = []
        self._refresh: list[RefreshCallback] = []

    def on_log(self, callback: LogCallback) -> None:
        self._log.append(callback)

    def on_refresh(self, callback: RefreshCallback) -> None:
        self._refresh.append(callback)

    def log(self, line: str) -> None:
        for cb in self._log:
            try:
                cb(line)
            except Exception:
                logger.exception("log subscriber failed")

    def refresh(self) -> None:
        for cb in self._refresh:
            try:
                cb()
            except Exception:
                logger.exception("refresh subscriber failed")
