# tasks/session.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from ..data.gateway import TaskCoreDB
from ..data.models import Task, TaskDraft, TaskFile, TaskStatus
from ..errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    PreconditionError,
    TaskCoreError,
    ValidationError,
)
from .attachments import ATTACH_BEFORE_CREATE, AttachmentManager, BlobSource
from .dates import default_due_date, format_due_date
from .repository import TASK_NOT_FOUND, TaskRepository

logger = logging.getLogger(__name__)


class SessionMode(StrEnum):
    CREATE = "CREATE"
    VIEW = "VIEW"
    EDIT = "EDIT"


@dataclass(slots=True, frozen=True)
class TaskSessionState:
    mode: SessionMode = SessionMode.CREATE

    task_id: int | None = None
    title: str = ""
    description: str = ""
    assignee: str = ""
    due_date: str = ""
    status: str = TaskStatus.OPEN.value
    version: int | None = None

    assignee_options: tuple[str, ...] = ()

    files: tuple[TaskFile, ...] = ()
    is_files_loading: bool = False

    is_loading: bool = False
    error: str | None = None
    field_errors: Mapping[str, str] = field(default_factory=dict)

    @property
    def can_save(self) -> bool:
        return bool(self.title.strip())

    def draft(self) -> TaskDraft:
        return TaskDraft(
            title=self.title,
            description=self.description,
            assignee=self.assignee,
            due_date=self.due_date,
            status=self.status,
        )


def error_message(exc: TaskCoreError, action: str) -> str:
    """Map a domain error to what the user sees next to the form."""
    if isinstance(exc, NotFoundError):
        return TASK_NOT_FOUND
    if isinstance(exc, (ValidationError, ConflictError, PreconditionError)):
        return exc.user_message
    return f"Failed to {action}"


class TaskSession:
    """
    Per-task controller behind a task screen.

    Modes:
    - CREATE: no task id yet; create() inserts and moves to VIEW with the new id
    - VIEW:   loaded task; to_edit() moves to EDIT
    - EDIT:   save() writes and moves back to VIEW

    Field setters only change the in-memory draft. create/save/delete are
    single-flight (is_loading). Errors land in `state.error` and keep the draft.
    A successful delete ends the session through `on_deleted`.

    After close(), results of storage calls still in flight are discarded.
    """

    def __init__(
        self,
        repository: TaskRepository,
        attachments: AttachmentManager,
        db: TaskCoreDB,
        *,
        current_user: str = "",
        on_deleted: Callable[[], None] | None = None,
    ) -> None:
        self._repo = repository
        self._attachments = attachments
        self._db = db
        self._current_user = (current_user or "").strip()
        self._on_deleted = on_deleted

        self._users_loaded = False
        self._closed = False
        self._state = TaskSessionState(
            assignee=self._current_user,
            due_date=default_due_date(repository.tz),
        )

    @property
    def state(self) -> TaskSessionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def _update(self, **changes: Any) -> None:
        if self._closed:
            return
        self._state = replace(self._state, **changes)

    def _fail(self, exc: TaskCoreError, action: str, **changes: Any) -> None:
        fields = exc.fields if isinstance(exc, ValidationError) else {}
        self._update(error=error_message(exc, action), field_errors=dict(fields), **changes)

    def _apply_task(self, task: Task, **changes: Any) -> None:
        self._update(
            task_id=task.id,
            title=task.title,
            description=task.description,
            assignee=task.assignee,
            due_date=format_due_date(task.due_at, self._repo.tz),
            status=task.status.value,
            version=task.version,
            error=None,
            field_errors={},
            **changes,
        )

    # ---- loading ----

    async def load(self, task_id: int | str | None = None) -> None:
        """Enter CREATE (no id) or VIEW (id given, loaded immediately)."""
        await self._load_assignees_if_needed()

        if task_id is None:
            self._update(mode=SessionMode.CREATE, task_id=None, files=(), error=None)
            return

        try:
            tid = int(str(task_id).strip())
        except ValueError:
            self._update(error="Invalid task id", files=())
            return

        self._update(is_loading=True, error=None)
        try:
            task = await asyncio.to_thread(self._repo.get, tid)
        except NotFoundError as e:
            self._fail(e, "load task", is_loading=False, mode=SessionMode.VIEW, task_id=tid, files=())
            return
        except TaskCoreError as e:
            logger.warning("Task load failed id=%s: %s", tid, e)
            self._fail(e, "load task", is_loading=False, files=())
            return

        self._apply_task(task, is_loading=False, mode=SessionMode.VIEW)
        await self._load_files(task.id)

    async def reload(self) -> None:
        await self.load(self._state.task_id)

    async def _load_assignees_if_needed(self) -> None:
        if self._users_loaded:
            return
        self._users_loaded = True

        try:
            users = await asyncio.to_thread(self._db.list_users)
        except TaskCoreError:
            logger.warning("Failed to load users for assignee options", exc_info=True)
            self._update(error="Failed to load users")
            return

        options = tuple(u.login for u in users)
        assignee = self._state.assignee or (options[0] if options else "")
        self._update(assignee_options=options, assignee=assignee)

    async def _load_files(self, task_id: int) -> None:
        self._update(is_files_loading=True)
        try:
            files = await asyncio.to_thread(self._attachments.list, task_id)
        except TaskCoreError:
            logger.warning("Failed to load files for task %s", task_id, exc_info=True)
            self._update(is_files_loading=False, error="Failed to load files")
            return
        self._update(files=tuple(files), is_files_loading=False)

    # ---- transitions ----

    def to_edit(self) -> bool:
        if self._closed or self._state.mode != SessionMode.VIEW or self._state.task_id is None:
            return False
        self._update(mode=SessionMode.EDIT, error=None, field_errors={})
        return True

    def _edit(self, **changes: Any) -> None:
        if self._state.mode == SessionMode.VIEW:
            return
        self._update(error=None, field_errors={}, **changes)

    def set_title(self, v: str) -> None:
        self._edit(title=v)

    def set_description(self, v: str) -> None:
        self._edit(description=v)

    def set_assignee(self, v: str) -> None:
        self._edit(assignee=v)

    def set_due_date(self, v: str) -> None:
        self._edit(due_date=v)

    def set_status(self, v: str) -> None:
        self._edit(status=v)

    async def create(self) -> bool:
        s = self._state
        if self._closed or s.mode != SessionMode.CREATE or not s.can_save or s.is_loading:
            return False

        self._update(is_loading=True, error=None, field_errors={})
        try:
            task = await asyncio.to_thread(self._repo.create, s.draft())
        except TaskCoreError as e:
            self._fail(e, "create task", is_loading=False)
            return False

        if self._closed:
            return False

        self._apply_task(task, is_loading=False, mode=SessionMode.VIEW)
        await self._load_files(task.id)
        return True

    async def save(self) -> bool:
        s = self._state
        if self._closed or s.mode != SessionMode.EDIT or not s.can_save or s.is_loading:
            return False

        if s.task_id is None:
            self._update(error="Cannot save: task has no id")
            return False

        self._update(is_loading=True, error=None, field_errors={})
        try:
            task = await asyncio.to_thread(self._repo.update, s.task_id, s.draft())
        except TaskCoreError as e:
            self._fail(e, "save task", is_loading=False)
            return False

        self._apply_task(task, is_loading=False, mode=SessionMode.VIEW)
        return True

    async def delete(self) -> bool:
        s = self._state
        if self._closed or s.is_loading:
            return False
        if s.task_id is None:
            self._update(error="Cannot delete: task has no id")
            return False

        task_id = s.task_id
        self._update(is_loading=True, error=None)
        try:
            await asyncio.to_thread(self._attachments.remove_all, task_id)
            deleted = await asyncio.to_thread(self._repo.delete, task_id)
        except TaskCoreError as e:
            self._fail(e, "delete task", is_loading=False)
            return False

        if not deleted:
            self._update(is_loading=False, error=TASK_NOT_FOUND)
            return False

        self._update(is_loading=False, files=())
        if not self._closed:
            self._closed = True
            if self._on_deleted is not None:
                self._on_deleted()
        return True

    # ---- attachments ----

    async def attach_file(self, source: BlobSource) -> TaskFile | None:
        s = self._state
        if self._closed:
            return None
        if s.task_id is None:
            self._update(error=ATTACH_BEFORE_CREATE)
            return None
        if s.is_loading or s.is_files_loading:
            return None

        task_id = s.task_id
        self._update(is_files_loading=True, error=None)
        try:
            created = await asyncio.to_thread(self._attachments.attach, task_id, source)
        except (PreconditionError, PersistenceError) as e:
            self._fail(e, "add file", is_files_loading=False)
            return None

        await self._load_files(task_id)
        return created

    async def remove_file(self, file_id: int) -> bool:
        s = self._state
        if self._closed or s.task_id is None or s.is_files_loading:
            return False

        task_id = s.task_id
        self._update(is_files_loading=True, error=None)
        try:
            removed = await asyncio.to_thread(self._attachments.remove, file_id)
        except TaskCoreError as e:
            self._fail(e, "delete file", is_files_loading=False)
            return False

        await self._load_files(task_id)
        return removed
