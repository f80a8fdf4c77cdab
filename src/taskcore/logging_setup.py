# src/taskcore/logging_setup.py

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from pathlib import Path

# Console floors per logger prefix; the file handler still gets everything.
# The hourly sweep and the Matrix notifier run in the background and would
# otherwise interleave debug lines with the REPL prompt.
CONSOLE_FLOORS: Mapping[str, int] = {
    "taskcore.tasks.sweep": logging.INFO,
    "taskcore.connectors.matrix_notifier": logging.WARNING,
}


class _ConsoleNoiseFilter(logging.Filter):
    """
    Console filter for the interactive REPL:
    - taskcore loggers pass, except background ones below their floor (CONSOLE_FLOORS)
    - third-party loggers (nio, aiohttp) and captured 'py.warnings' only at ERROR+
    """

    def __init__(self, floors: Mapping[str, int] = CONSOLE_FLOORS) -> None:
        super().__init__()
        self._floors = dict(floors)

    def _floor_for(self, name: str) -> int | None:
        for prefix, level in self._floors.items():
            if name == prefix or name.startswith(prefix + "."):
                return level
        return None

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name

        if name == "taskcore" or name.startswith("taskcore."):
            floor = self._floor_for(name)
            return floor is None or record.levelno >= floor

        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = ".local/taskcore",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path:
    """
    Console handler (stderr, filtered) plus a full `taskcore.log` under log_dir.

    Call once at startup, before the first log line. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "taskcore.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(threadName)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    return log_file
