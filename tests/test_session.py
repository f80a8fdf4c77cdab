# tests/test_session.py

from __future__ import annotations

import asyncio
import threading
from zoneinfo import ZoneInfo

import pytest

from taskcore.data.models import TaskDraft
from taskcore.tasks.attachments import ATTACH_BEFORE_CREATE, BlobSource
from taskcore.tasks.repository import TASK_NOT_FOUND, TaskRepository
from taskcore.tasks.session import SessionMode, TaskSession


@pytest.fixture()
def session(repo, attachments, db) -> TaskSession:
    return TaskSession(repo, attachments, db, current_user="alice")


def _fill(session: TaskSession, title: str = "Plan sprint", due: str = "2024-06-20") -> None:
    session.set_title(title)
    session.set_description("details")
    session.set_due_date(due)


def _block(monkeypatch, obj, name: str) -> threading.Event:
    """Make obj.name wait on the returned event before running."""
    gate = threading.Event()
    original = getattr(obj, name)

    def blocked(*args, **kwargs):
        gate.wait(5.0)
        return original(*args, **kwargs)

    monkeypatch.setattr(obj, name, blocked)
    return gate


@pytest.mark.asyncio
async def test_new_session_starts_in_create_with_defaults(session: TaskSession, db) -> None:
    db.add_user(email="bob@example.com", login="bob", created_at=1)

    await session.load()

    s = session.state
    assert s.mode is SessionMode.CREATE
    assert s.task_id is None
    assert s.assignee == "alice"
    assert s.assignee_options == ("bob",)
    assert s.status == "OPEN"
    assert len(s.due_date) == 10


@pytest.mark.asyncio
async def test_default_assignee_is_first_user_without_current_user(repo, attachments, db) -> None:
    db.add_user(email="a@example.com", login="ann", created_at=1)
    db.add_user(email="z@example.com", login="zed", created_at=2)
    session = TaskSession(repo, attachments, db)

    await session.load()

    assert session.state.assignee == "zed"


@pytest.mark.asyncio
async def test_create_moves_to_view(session: TaskSession, repo) -> None:
    await session.load()
    _fill(session)

    assert await session.create() is True

    s = session.state
    assert s.mode is SessionMode.VIEW
    assert s.task_id is not None
    assert s.version == 1
    assert s.files == ()
    assert not s.is_loading
    assert repo.get(s.task_id).title == "Plan sprint"


@pytest.mark.asyncio
async def test_create_requires_title(session: TaskSession, db) -> None:
    await session.load()
    _fill(session, title="   ")

    assert session.state.can_save is False
    assert await session.create() is False
    assert db.count_tasks() == 0


@pytest.mark.asyncio
async def test_invalid_date_keeps_draft_and_reports_field(session: TaskSession, db) -> None:
    await session.load()
    _fill(session, due="20.06.2024")

    assert await session.create() is False

    s = session.state
    assert s.mode is SessionMode.CREATE
    assert s.title == "Plan sprint"
    assert s.due_date == "20.06.2024"
    assert s.error == "Invalid date format. Use YYYY-MM-DD"
    assert "due_date" in s.field_errors
    assert db.count_tasks() == 0


@pytest.mark.asyncio
async def test_view_edit_save_cycle(session: TaskSession, repo, make_task) -> None:
    task = make_task("Original", due="2024-06-20")
    await session.load(task.id)
    assert session.state.mode is SessionMode.VIEW

    # Read-only in VIEW.
    session.set_title("ignored")
    assert session.state.title == "Original"

    assert session.to_edit() is True
    assert session.state.mode is SessionMode.EDIT
    session.set_title("Changed")
    session.set_status("done")

    assert await session.save() is True

    s = session.state
    assert s.mode is SessionMode.VIEW
    assert s.version == 2
    stored = repo.get(task.id)
    assert stored.title == "Changed"
    assert stored.status.value == "DONE"
    assert stored.created_at == task.created_at


@pytest.mark.asyncio
async def test_to_edit_requires_loaded_task(session: TaskSession) -> None:
    await session.load()
    assert session.to_edit() is False
    assert session.state.mode is SessionMode.CREATE


@pytest.mark.asyncio
async def test_open_missing_or_bad_id(session: TaskSession) -> None:
    await session.load(4242)
    assert session.state.error == TASK_NOT_FOUND

    await session.load("abc")
    assert session.state.error == "Invalid task id"


@pytest.mark.asyncio
async def test_save_after_delete_elsewhere_reports_not_found(session: TaskSession, repo, make_task) -> None:
    task = make_task("Doomed")
    await session.load(task.id)
    session.to_edit()
    session.set_title("Edited")

    repo.delete(task.id)

    assert await session.save() is False
    s = session.state
    assert s.mode is SessionMode.EDIT
    assert s.title == "Edited"
    assert s.error == TASK_NOT_FOUND
    assert not s.is_loading


@pytest.mark.asyncio
async def test_delete_removes_task_and_files_and_ends_session(repo, attachments, db, blobs, make_task) -> None:
    ended: list[bool] = []
    session = TaskSession(repo, attachments, db, on_deleted=lambda: ended.append(True))
    task = make_task()
    attachments.attach(task.id, BlobSource(name="a.txt", data=b"a"))
    await session.load(task.id)
    assert len(session.state.files) == 1

    assert await session.delete() is True

    assert ended == [True]
    assert session.closed
    assert db.get_task(task.id) is None
    assert db.list_files(task.id) == []
    assert list(blobs.iter_paths()) == []


@pytest.mark.asyncio
async def test_attach_in_create_mode_is_rejected(session: TaskSession, blobs) -> None:
    await session.load()
    _fill(session)

    assert await session.attach_file(BlobSource(name="a.txt", data=b"a")) is None

    assert session.state.error == ATTACH_BEFORE_CREATE
    assert session.state.mode is SessionMode.CREATE
    assert list(blobs.iter_paths()) == []


@pytest.mark.asyncio
async def test_attach_and_remove_refresh_files(session: TaskSession, make_task) -> None:
    task = make_task()
    await session.load(task.id)

    created = await session.attach_file(BlobSource(name="a.txt", data=b"a"))
    assert created is not None
    assert [f.id for f in session.state.files] == [created.id]

    assert await session.remove_file(created.id) is True
    assert session.state.files == ()


@pytest.mark.asyncio
async def test_create_is_single_flight(session: TaskSession, repo, db, monkeypatch) -> None:
    await session.load()
    _fill(session)
    gate = _block(monkeypatch, repo, "create")

    first = asyncio.create_task(session.create())
    await asyncio.sleep(0)
    assert session.state.is_loading

    assert await session.create() is False

    gate.set()
    assert await first is True
    assert db.count_tasks() == 1


@pytest.mark.asyncio
async def test_closed_session_discards_late_results(session: TaskSession, repo, make_task, monkeypatch) -> None:
    task = make_task()
    await session.load()
    gate = _block(monkeypatch, repo, "get")

    pending = asyncio.create_task(session.load(task.id))
    await asyncio.sleep(0)
    session.close()
    gate.set()
    await pending

    assert session.state.task_id is None
    assert session.state.mode is SessionMode.CREATE
    assert await session.create() is False


@pytest.mark.asyncio
async def test_reload_picks_up_external_changes(session: TaskSession, repo, make_task) -> None:
    task = make_task("Before")
    await session.load(task.id)
    repo.update(task.id, TaskDraft(title="After", due_date="2024-06-20"))

    await session.reload()

    assert session.state.title == "After"
    assert session.state.version == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("zone", ["UTC", "America/Los_Angeles", "Asia/Kolkata", "Pacific/Kiritimati"])
async def test_due_date_survives_create_and_view(zone: str, db, attachments) -> None:
    repo = TaskRepository(db, tz=ZoneInfo(zone))
    session = TaskSession(repo, attachments, db)
    await session.load()
    _fill(session, due="2025-03-10")
    assert await session.create() is True

    viewer = TaskSession(repo, attachments, db)
    await viewer.load(session.state.task_id)

    assert viewer.state.mode is SessionMode.VIEW
    assert viewer.state.due_date == "2025-03-10"


@pytest.mark.asyncio
async def test_unrepresentable_due_date_fails_cleanly(db, attachments) -> None:
    repo = TaskRepository(db, tz=ZoneInfo("Asia/Tokyo"))
    session = TaskSession(repo, attachments, db)
    await session.load()
    _fill(session, due="0001-01-01")

    assert await session.create() is False

    s = session.state
    assert not s.is_loading
    assert s.mode is SessionMode.CREATE
    assert "due_date" in s.field_errors
    assert db.count_tasks() == 0
