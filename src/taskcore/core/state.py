# src/taskcore/core/state.py

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from ..data.gateway import TaskCoreDB
from ..tasks.attachments import AttachmentManager
from ..tasks.repository import TaskRepository
from ..tasks.session import TaskSession
from ..tasks.sweep import OverdueSweep, SchedulerBackgroundRunner
from .ports import Notifier


@dataclass
class AppState:
    # Settings are stored on state for easy access from commands/connectors.
    settings: Any

    db: TaskCoreDB
    repository: TaskRepository
    attachments: AttachmentManager
    notifier: Notifier
    sweep: OverdueSweep

    # The task screen currently open in the console (one at a time).
    session: TaskSession | None = None

    # Set by cli.main once the background scheduler is up.
    scheduler: SchedulerBackgroundRunner | None = None

    # Serializes console commands against each other.
    lock: threading.Lock = field(default_factory=threading.Lock)

    def open_session(self) -> TaskSession:
        if self.session is not None:
            self.session.close()

        def _on_deleted() -> None:
            self.session = None

        self.session = TaskSession(
            self.repository,
            self.attachments,
            self.db,
            current_user=getattr(self.settings, "current_user", ""),
            on_deleted=_on_deleted,
        )
        return self.session

    def close_session(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None
