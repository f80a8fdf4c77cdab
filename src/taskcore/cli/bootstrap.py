# src/taskcore/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (storage, notifier, sweep).
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..connectors.console_notifier import ConsoleNotifier
from ..core.ports import Notifier
from ..core.state import AppState
from ..data.gateway import TaskCoreDB
from ..tasks.attachments import AttachmentManager, LocalBlobStorage
from ..tasks.repository import TaskRepository
from ..tasks.sweep import OverdueSweep

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.files_dir.mkdir(parents=True, exist_ok=True)
    if settings.matrix_enabled:
        settings.matrix_store_path.mkdir(parents=True, exist_ok=True)


def _build_notifier(settings) -> Notifier:
    if settings.matrix_enabled:
        from ..connectors.matrix_notifier import MatrixNotifier

        logger.info("Overdue notifications go to Matrix room %s", settings.matrix_room_id)
        return MatrixNotifier.from_settings(settings)
    return ConsoleNotifier()


def create_initial_state(*, settings=None, notifier: Notifier | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    db = TaskCoreDB(settings.db_path)
    repository = TaskRepository(db, tz=settings.due_timezone())
    attachments = AttachmentManager(db, LocalBlobStorage(settings.files_dir))
    if notifier is None:
        notifier = _build_notifier(settings)

    return AppState(
        settings=settings,
        db=db,
        repository=repository,
        attachments=attachments,
        notifier=notifier,
        sweep=OverdueSweep(repository, db, notifier),
    )
