# data/models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Values are the symbolic names, which is also how they are stored.
    """

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.OPEN
        try:
            return cls(raw)
        except ValueError:
            return cls.OPEN


@dataclass(slots=True)
class Task:
    id: int
    title: str
    description: str
    assignee: str

    due_at: int  # epoch ms, local midnight of the due date
    status: TaskStatus

    created_at: int
    updated_at: int
    overdue_notified_at: int | None = None

    version: int = 1


@dataclass(slots=True)
class TaskFile:
    id: int
    task_id: int
    file_name: str
    file_path: str
    mime_type: str
    created_at: int


@dataclass(slots=True)
class User:
    id: int
    email: str
    login: str
    password_hash: str
    salt: str
    created_at: int


@dataclass(slots=True)
class TaskDraft:
    """Unpersisted field values as typed by the user (dates and status as text)."""

    title: str = ""
    description: str = ""
    assignee: str = ""
    due_date: str = ""
    status: str = TaskStatus.OPEN.value


@dataclass(slots=True, frozen=True)
class NotificationBatch:
    """
    Durable record of one overdue notification.

    staged -> delivered -> committed. A batch that is delivered but not committed
    after a crash is committed on the next sweep without delivering it again.
    """

    id: int
    task_ids: tuple[int, ...]
    title: str
    body: str
    staged_at: int
    delivered_at: int | None = None
    committed_at: int | None = None
