# src/taskcore/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then starts:
- the overdue scheduler in a background thread (optional),
- the console REPL in the main thread (optional).
"""

from __future__ import annotations

import asyncio
import logging
import signal
import threading

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..core.state import AppState
from ..errors import TaskCoreError
from ..logging_setup import setup_logging
from ..tasks.sweep import load_average_gate, start_scheduler_in_background

logger = logging.getLogger(__name__)


def _shutdown(state: AppState) -> None:
    """Best-effort shutdown."""
    state.close_session()

    runner = state.scheduler
    state.scheduler = None

    close = getattr(state.notifier, "close", None)
    if close is not None:
        try:
            if runner is not None and runner.thread.is_alive():
                runner.run(close(), timeout=10.0)
            else:
                asyncio.run(close())
        except Exception:
            logger.debug("Notifier close failed.", exc_info=True)

    if runner is not None:
        runner.stop()
        runner.join(timeout=10.0)

    # TaskCoreDB uses short-lived sqlite connections per call; no explicit close required.


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logging.getLogger("nio").setLevel(max(console_level, logging.INFO))
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    logger.info("Starting %s...", settings.app_name)

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)

    try:
        n = state.attachments.reconcile_orphans()
        if n:
            logger.info("Startup: removed %d orphan attachment file(s).", n)
    except TaskCoreError:
        logger.exception("Startup attachment reconciliation failed.")

    if settings.sweep_enabled:
        state.scheduler = start_scheduler_in_background(
            state.sweep,
            interval_seconds=settings.sweep_interval_seconds,
            can_run=load_average_gate(settings.sweep_max_load),
            housekeeping=[state.attachments.reconcile_orphans],
        )

    stop_main = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop_main.set()

    try:
        signal.signal(signal.SIGTERM, _handle_signal)
        if not settings.console_enabled:
            signal.signal(signal.SIGINT, _handle_signal)
    except (ValueError, OSError, AttributeError):
        logger.debug("Signal handlers not installed.", exc_info=True)

    try:
        if settings.console_enabled:
            run_console_loop(state)
            stop_main.set()
        else:
            logger.info("Console disabled. Running the overdue scheduler only. Press Ctrl+C to stop.")
            stop_main.wait()
    finally:
        _shutdown(state)
        logger.info("Bye.")


if __name__ == "__main__":
    main()
