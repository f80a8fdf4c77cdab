# src/taskcore/errors.py

"""
Error taxonomy shared by the repository, attachments, sweep and session layers.

Every error carries a `user_message` that outer layers (session, console) can show
as-is. The repository raises; the session and the sweep loop catch and convert.
"""

from __future__ import annotations


class TaskCoreError(Exception):
    """Base class for all taskcore domain errors."""

    user_message = "Operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class ValidationError(TaskCoreError):
    """
    Bad user input (empty title, unparsable date, unknown status).

    `fields` maps the field name to a field-adjacent message.
    """

    user_message = "Invalid data"

    def __init__(self, fields: dict[str, str]) -> None:
        self.fields = dict(fields)
        super().__init__("; ".join(self.fields.values()) or None)


class NotFoundError(TaskCoreError):
    user_message = "Item no longer exists"


class ConflictError(TaskCoreError):
    """The row changed between read and write (version compare-and-swap failed)."""

    user_message = "Task was changed elsewhere; reload and try again"


class PersistenceError(TaskCoreError):
    user_message = "Storage is unavailable"


class PreconditionError(TaskCoreError):
    user_message = "Operation is not allowed right now"
