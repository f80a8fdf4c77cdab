# src/taskcore/cli/commands.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from ..core.state import AppState
from ..data.models import Task
from ..errors import TaskCoreError
from ..tasks.attachments import BlobSource
from ..tasks.dates import format_due_date
from ..tasks.repository import parse_status
from ..tasks.session import SessionMode, TaskSession, TaskSessionState
from ..tasks.sweep import SweepResult

CommandHandler = Callable[[AppState, list[str]], str]

T = TypeVar("T")

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /tasks, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(self, state: AppState, line: str) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        return handler(state, args)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _await(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _require_session(state: AppState) -> TaskSession | str:
    if state.session is None or state.session.closed:
        return "No task is open. Use /new or /open <id>."
    return state.session


def _render_task_line(t: Task, tz) -> str:
    who = t.assignee or "-"
    return f"#{t.id} [{t.status.value}] {t.title} (due {format_due_date(t.due_at, tz)}, {who})"


def render_session(s: TaskSessionState) -> str:
    head = f"Task #{s.task_id}" if s.task_id is not None else "New task"
    lines = [
        f"{head} [{s.mode.value}]",
        f"  title:       {s.title}",
        f"  description: {s.description}",
        f"  assignee:    {s.assignee or '-'}",
        f"  due:         {s.due_date}",
        f"  status:      {s.status}",
    ]
    if s.task_id is not None:
        if s.files:
            lines.append("  files:")
            for f in s.files:
                lines.append(f"    {f.id}: {f.file_name} ({f.mime_type})")
        else:
            lines.append("  files:       none")
    if s.error:
        lines.append(f"  ! {s.error}")
    for name, msg in s.field_errors.items():
        lines.append(f"  ! {name}: {msg}")
    return "\n".join(lines)


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_tasks(state: AppState, args: list[str]) -> str:
    """
    /tasks            -> all tasks, newest first
    /tasks STATUS     -> only tasks with this status
    /tasks @login     -> tasks assigned to login, soonest due first
    """
    status = None
    assignee = None
    for a in args:
        if a.startswith("@"):
            assignee = a[1:]
        else:
            try:
                status = parse_status(a)
            except ValueError as e:
                return str(e)

    try:
        tasks = state.repository.list_tasks(status=status, assignee=assignee)
    except TaskCoreError as e:
        logger.warning("Listing tasks failed: %s", e)
        return "Failed to load tasks"

    if not tasks:
        return "No tasks."
    tz = state.repository.tz
    return "\n".join(_render_task_line(t, tz) for t in tasks)


def cmd_new(state: AppState, args: list[str]) -> str:
    session = state.open_session()
    _await(session.load(None))
    return render_session(session.state)


def cmd_open(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /open <id>"
    session = state.open_session()
    _await(session.load(args[0]))
    return render_session(session.state)


_SETTERS = {
    "title": TaskSession.set_title,
    "description": TaskSession.set_description,
    "desc": TaskSession.set_description,
    "assignee": TaskSession.set_assignee,
    "due": TaskSession.set_due_date,
    "status": TaskSession.set_status,
}


def cmd_set(state: AppState, args: list[str]) -> str:
    """/set <title|description|assignee|due|status> <value...>"""
    session = _require_session(state)
    if isinstance(session, str):
        return session
    if not args or args[0].lower() not in _SETTERS:
        return "Usage: /set <title|description|assignee|due|status> <value...>"
    if session.state.mode == SessionMode.VIEW:
        return "Task is read-only. Use /edit first."

    _SETTERS[args[0].lower()](session, " ".join(args[1:]))
    return render_session(session.state)


def cmd_edit(state: AppState, args: list[str]) -> str:
    session = _require_session(state)
    if isinstance(session, str):
        return session
    if not session.to_edit():
        return "Only a loaded task can be edited."
    return render_session(session.state)


def cmd_save(state: AppState, args: list[str]) -> str:
    """Create in CREATE mode, save in EDIT mode."""
    session = _require_session(state)
    if isinstance(session, str):
        return session

    if session.state.mode == SessionMode.CREATE:
        ok = _await(session.create())
    elif session.state.mode == SessionMode.EDIT:
        ok = _await(session.save())
    else:
        return "Nothing to save. Use /edit first."

    if not ok and not session.state.error and not session.state.can_save:
        return "Title is required."
    return render_session(session.state)


def cmd_delete(state: AppState, args: list[str]) -> str:
    session = _require_session(state)
    if isinstance(session, str):
        return session
    task_id = session.state.task_id
    if _await(session.delete()):
        return f"Task #{task_id} deleted."
    return render_session(session.state)


def cmd_attach(state: AppState, args: list[str]) -> str:
    session = _require_session(state)
    if isinstance(session, str):
        return session
    if not args:
        return "Usage: /attach <path>"

    path = " ".join(args)
    if session.state.task_id is None:
        # Surface the precondition before touching the file.
        _await(session.attach_file(BlobSource(name=path, data=b"")))
        return render_session(session.state)
    try:
        source = BlobSource.from_path(path)
    except OSError as e:
        return f"Cannot read {path}: {e.strerror or e}"

    _await(session.attach_file(source))
    return render_session(session.state)


def cmd_files(state: AppState, args: list[str]) -> str:
    session = _require_session(state)
    if isinstance(session, str):
        return session
    if session.state.task_id is None:
        return "Task has no files yet."
    _await(session.reload())
    return render_session(session.state)


def cmd_rmfile(state: AppState, args: list[str]) -> str:
    session = _require_session(state)
    if isinstance(session, str):
        return session
    if not args:
        return "Usage: /rmfile <file id>"
    try:
        file_id = int(args[0])
    except ValueError:
        return "File id must be a number."

    if not _await(session.remove_file(file_id)) and not session.state.error:
        return f"No file {file_id} on this task."
    return render_session(session.state)


def cmd_show(state: AppState, args: list[str]) -> str:
    session = _require_session(state)
    if isinstance(session, str):
        return session
    return render_session(session.state)


def cmd_close(state: AppState, args: list[str]) -> str:
    state.close_session()
    return "Closed."


async def _sweep_on_own_loop(state: AppState) -> SweepResult:
    """One-off sweep on a throwaway loop; the notifier is closed before the loop ends."""
    try:
        return await state.sweep.run_once()
    finally:
        close = getattr(state.notifier, "close", None)
        if close is not None:
            await close()


def cmd_sweep(state: AppState, args: list[str]) -> str:
    """Run one overdue sweep now (on the scheduler loop when it is running)."""
    try:
        if state.scheduler is not None:
            result = state.scheduler.run(state.sweep.run_once(), timeout=120.0)
        else:
            result = _await(_sweep_on_own_loop(state))
    except Exception as e:
        logger.warning("Manual overdue sweep failed: %r", e)
        return "Overdue sweep failed; nothing was marked. It will be retried."

    if result.skipped:
        return "Overdue sweep already running."
    parts = [f"Notified {len(result.notified_ids)} overdue task(s)."]
    if result.recovered_ids:
        parts.append(f"Recovered {len(result.recovered_ids)} from an interrupted run.")
    return " ".join(parts)


def cmd_users(state: AppState, args: list[str]) -> str:
    try:
        users = state.db.list_users()
    except TaskCoreError:
        return "Failed to load users"
    if not users:
        return "No users."
    return "\n".join(f"{u.login} <{u.email}>" for u in users)


def cmd_reconcile(state: AppState, args: list[str]) -> str:
    try:
        n = state.attachments.reconcile_orphans()
    except TaskCoreError as e:
        logger.warning("Reconcile failed: %s", e)
        return "Failed to reconcile attachment storage."
    return f"Removed {n} orphan file(s)."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("tasks", cmd_tasks, help_text="List tasks: /tasks [STATUS] [@assignee].", aliases=["ls"])
registry.register("new", cmd_new, help_text="Start a new task (CREATE).")
registry.register("open", cmd_open, help_text="Open a task: /open <id> (VIEW).")
registry.register("set", cmd_set, help_text="Edit a field: /set <title|description|assignee|due|status> <value>.")
registry.register("edit", cmd_edit, help_text="Switch the open task to EDIT.")
registry.register("save", cmd_save, help_text="Create (CREATE) or save (EDIT) the open task.")
registry.register("delete", cmd_delete, help_text="Delete the open task and its files.")
registry.register("attach", cmd_attach, help_text="Attach a file: /attach <path>.")
registry.register("files", cmd_files, help_text="Reload the open task and its files.")
registry.register("rmfile", cmd_rmfile, help_text="Remove an attachment: /rmfile <file id>.")
registry.register("show", cmd_show, help_text="Show the open task.")
registry.register("close", cmd_close, help_text="Close the open task.")
registry.register("sweep", cmd_sweep, help_text="Notify overdue tasks now.")
registry.register("users", cmd_users, help_text="List known users (assignee options).")
registry.register("reconcile", cmd_reconcile, help_text="Delete attachment files no task references.")
