# tasks/repository.py

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import tzinfo

from ..data.gateway import TaskCoreDB
from ..data.models import Task, TaskDraft, TaskStatus
from ..errors import ConflictError, NotFoundError, ValidationError
from .dates import DATE_FORMAT_HINT, now_ms, parse_due_date

logger = logging.getLogger(__name__)

TASK_NOT_FOUND = "Task not found (it may have been deleted)"


@dataclass(slots=True, frozen=True)
class ValidDraft:
    title: str
    description: str
    assignee: str
    due_at: int
    status: TaskStatus


def parse_status(token: str) -> TaskStatus:
    raw = (token or "").strip().upper()
    try:
        return TaskStatus(raw)
    except ValueError:
        raise ValueError(f"Invalid status: {token}") from None


class TaskRepository:
    """
    Owns the task save/update protocol.

    Both writers go through here: the user-driven session (create/update/delete)
    and the overdue sweep (find_overdue_unnotified/mark_notified).

    update() is read-merge-write over the full row with a compare-and-swap on
    `version`, so a concurrent sweep mark is never silently reverted: the losing
    writer gets ConflictError instead.
    """

    def __init__(
        self,
        db: TaskCoreDB,
        *,
        tz: tzinfo | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._db = db
        self._tz = tz
        self._clock = clock

    @property
    def tz(self) -> tzinfo | None:
        return self._tz

    def validate(self, draft: TaskDraft) -> ValidDraft:
        """Check every field, raising one ValidationError that lists all bad ones."""
        errors: dict[str, str] = {}

        title = (draft.title or "").strip()
        if not title:
            errors["title"] = "Title is required"

        due_at = 0
        try:
            due_at = parse_due_date(draft.due_date, self._tz)
        except ValueError:
            errors["due_date"] = f"Invalid date format. Use {DATE_FORMAT_HINT}"

        status = TaskStatus.OPEN
        try:
            status = parse_status(draft.status)
        except ValueError as e:
            errors["status"] = str(e)

        if errors:
            raise ValidationError(errors)

        return ValidDraft(
            title=title,
            description=(draft.description or "").strip(),
            assignee=(draft.assignee or "").strip(),
            due_at=due_at,
            status=status,
        )

    def create(self, draft: TaskDraft) -> Task:
        valid = self.validate(draft)
        now = self._clock()
        task_id = self._db.insert_task(
            title=valid.title,
            description=valid.description,
            assignee=valid.assignee,
            due_at=valid.due_at,
            status=valid.status,
            created_at=now,
            updated_at=now,
        )
        logger.info("Task created id=%s status=%s", task_id, valid.status.value)
        return Task(
            id=task_id,
            title=valid.title,
            description=valid.description,
            assignee=valid.assignee,
            due_at=valid.due_at,
            status=valid.status,
            created_at=now,
            updated_at=now,
            overdue_notified_at=None,
            version=1,
        )

    def get(self, task_id: int) -> Task:
        task = self._db.get_task(task_id)
        if task is None:
            raise NotFoundError(TASK_NOT_FOUND)
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        assignee: str | None = None,
    ) -> list[Task]:
        return self._db.list_tasks(status=status, assignee=assignee)

    def update(
        self,
        task_id: int,
        draft: TaskDraft,
        *,
        expected_version: int | None = None,
    ) -> Task:
        valid = self.validate(draft)

        # Re-read right before merging: created_at and the sweep's mark come from here.
        current = self._db.get_task(task_id)
        if current is None:
            raise NotFoundError(TASK_NOT_FOUND)
        if expected_version is not None and current.version != expected_version:
            raise ConflictError()

        now = self._clock()
        notified_at = current.overdue_notified_at
        if notified_at is not None and valid.due_at != current.due_at and valid.due_at >= now:
            # Moved out of the overdue window: allow a fresh notification later.
            notified_at = None

        merged = replace(
            current,
            title=valid.title,
            description=valid.description,
            assignee=valid.assignee,
            due_at=valid.due_at,
            status=valid.status,
            updated_at=now,
            overdue_notified_at=notified_at,
        )

        rows = self._db.update_task(merged, expected_version=current.version)
        if rows == 0:
            if self._db.get_task(task_id) is None:
                raise NotFoundError(TASK_NOT_FOUND)
            logger.info("Task update conflict id=%s version=%s", task_id, current.version)
            raise ConflictError()

        merged.version = current.version + 1
        logger.info("Task updated id=%s version=%s", task_id, merged.version)
        return merged

    def delete(self, task_id: int) -> bool:
        """
        Delete the row; task_files rows go with it via the FK cascade.

        Blobs are not touched here: AttachmentManager.remove_all removes them first.
        """
        deleted = self._db.delete_task(task_id)
        if deleted:
            logger.info("Task deleted id=%s", task_id)
        return deleted

    def find_overdue_unnotified(self, as_of: int) -> list[Task]:
        return self._db.find_overdue_unnotified(as_of=as_of)

    def mark_notified(self, ids: Iterable[int], at: int, *, batch_id: int | None = None) -> int:
        """
        Stamp overdue_notified_at for exactly `ids`.

        With `batch_id` the stamp and the batch commit happen in one transaction.
        """
        if batch_id is not None:
            return self._db.commit_batch(batch_id, task_ids=ids, at=at)
        return self._db.mark_overdue_notified(ids, at=at)
