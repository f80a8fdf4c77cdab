# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from taskcore.cli.bootstrap import create_initial_state
from taskcore.core.state import AppState
from taskcore.data.gateway import TaskCoreDB
from taskcore.data.models import TaskDraft
from taskcore.tasks.attachments import AttachmentManager, LocalBlobStorage
from taskcore.tasks.dates import parse_due_date
from taskcore.tasks.repository import TaskRepository

from .fakes import FakeClock, FakeNotifier

UTC = ZoneInfo("UTC")
DAY_MS = 86_400_000

# Fixed "now" for the whole suite: 2024-06-15 12:00 UTC.
NOW_MS = parse_due_date("2024-06-15", UTC) + DAY_MS // 2


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(NOW_MS)


@pytest.fixture()
def db(tmp_path: Path) -> TaskCoreDB:
    return TaskCoreDB(tmp_path / "taskcore.sqlite3")


@pytest.fixture()
def repo(db: TaskCoreDB, clock: FakeClock) -> TaskRepository:
    return TaskRepository(db, tz=UTC, clock=clock)


@pytest.fixture()
def blobs(tmp_path: Path) -> LocalBlobStorage:
    return LocalBlobStorage(tmp_path / "files")


@pytest.fixture()
def attachments(db: TaskCoreDB, blobs: LocalBlobStorage, clock: FakeClock) -> AttachmentManager:
    return AttachmentManager(db, blobs, clock=clock)


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def make_task(repo: TaskRepository):
    """Create a task through the repository; due is a YYYY-MM-DD string."""

    def _make(title: str = "Task", *, due: str = "2024-06-20", status: str = "OPEN", assignee: str = ""):
        return repo.create(TaskDraft(title=title, due_date=due, status=status, assignee=assignee))

    return _make


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the bootstrap and AppState.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    data_dir = tmp_path / "data"
    return SimpleNamespace(
        app_name="taskcore-test",
        current_user="alice",
        data_dir=data_dir,
        db_path=data_dir / "taskcore.sqlite3",
        files_dir=data_dir / "task_files",
        matrix_store_path=data_dir / "matrix_store",
        matrix_enabled=False,
        due_timezone=lambda: UTC,
    )


@pytest.fixture()
def state(settings: SimpleNamespace, notifier: FakeNotifier) -> AppState:
    """AppState wired with real SQLite/filesystem storage and a fake notifier."""
    return create_initial_state(settings=settings, notifier=notifier)
