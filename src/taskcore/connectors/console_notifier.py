# src/taskcore/connectors/console_notifier.py

from __future__ import annotations

import logging
import sys
from typing import TextIO

from .console_connector import _ts_local

logger = logging.getLogger(__name__)


class ConsoleNotifier:
    """Default Notifier: prints the summary to the terminal and logs it."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    async def notify(self, title: str, body: str) -> None:
        logger.info("Notification: %s", title)
        out = self._stream or sys.stdout
        out.write(f"[{_ts_local()}] [NOTIFY] {title}\n")
        if body:
            out.write(body + "\n")
        out.flush()
