# tasks/attachments.py

from __future__ import annotations

import logging
import mimetypes
import os
import re
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

from ..core.ports import BlobStorage
from ..data.gateway import TaskCoreDB
from ..data.models import TaskFile
from ..errors import PersistenceError, PreconditionError
from .dates import now_ms

logger = logging.getLogger(__name__)

DEFAULT_MIME = "application/octet-stream"
ATTACH_BEFORE_CREATE = "Create the task first, then attach files"

_UNSAFE_NAME = re.compile(r"[^\w.\- ]+")


@dataclass(slots=True, frozen=True)
class BlobSource:
    """Bytes to attach plus the name the user sees."""

    name: str
    data: bytes
    mime_type: str | None = None

    @classmethod
    def from_path(cls, path: str | Path) -> BlobSource:
        p = Path(path).expanduser()
        return cls(name=p.name, data=p.read_bytes())


class LocalBlobStorage:
    """
    Blob storage on the local filesystem under one root directory.

    Paths handed out are absolute strings; every operation is fallible (OSError).
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, relative_path: str) -> str:
        return str(self._root / relative_path)

    def write_bytes(self, relative_path: str, data: bytes) -> str:
        target = self._root / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, target)
        return str(target)

    def read_bytes(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def exists(self, path: str) -> bool:
        return Path(path).exists()

    def delete(self, path: str) -> None:
        Path(path).unlink()

    def iter_paths(self) -> Iterator[str]:
        for p in self._root.rglob("*"):
            if p.is_file():
                yield str(p)


def _safe_name(name: str) -> str:
    base = os.path.basename((name or "").strip())
    base = _UNSAFE_NAME.sub("_", base).strip(" .")
    return base or "file"


class AttachmentManager:
    """
    TaskFiles rows and their backing blobs.

    Blobs live at <root>/<task_id>/<created_at_ms>_<name>. A row is only written
    after its blob; a blob without a row is cleaned by reconcile_orphans().
    """

    def __init__(
        self,
        db: TaskCoreDB,
        blobs: BlobStorage,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._db = db
        self._blobs = blobs
        self._clock = clock
        # attach (blob write .. row insert) and reconcile_orphans must not interleave.
        self._blob_lock = threading.Lock()

    def _storage_name(self, task_id: int, name: str, ts: int) -> str:
        rel = f"{task_id}/{ts}_{name}"
        n = 1
        while self._blobs.exists(self._blobs.resolve(rel)):
            rel = f"{task_id}/{ts}_{n}_{name}"
            n += 1
        return rel

    def attach(self, task_id: int | None, source: BlobSource) -> TaskFile:
        if task_id is None:
            raise PreconditionError(ATTACH_BEFORE_CREATE)
        if self._db.get_task(task_id) is None:
            raise PreconditionError(f"Task {task_id} does not exist; cannot attach files")

        display_name = (source.name or "").strip() or f"file_{self._clock()}"
        mime = source.mime_type or mimetypes.guess_type(display_name)[0] or DEFAULT_MIME

        ts = self._clock()
        with self._blob_lock:
            rel = self._storage_name(task_id, _safe_name(display_name), ts)
            try:
                path = self._blobs.write_bytes(rel, source.data)
            except OSError as e:
                raise PersistenceError(f"Cannot store attachment: {e}") from e

            try:
                file_id = self._db.insert_file(
                    task_id=task_id,
                    file_name=display_name,
                    file_path=path,
                    mime_type=mime,
                    created_at=ts,
                )
            except PersistenceError:
                self._delete_blob(path)
                raise

        logger.info("Attached file id=%s task=%s name=%s mime=%s", file_id, task_id, display_name, mime)
        return TaskFile(
            id=file_id,
            task_id=task_id,
            file_name=display_name,
            file_path=path,
            mime_type=mime,
            created_at=ts,
        )

    def list(self, task_id: int) -> list[TaskFile]:
        return self._db.list_files(task_id)

    def read(self, file_id: int) -> bytes:
        entity = self._db.get_file(file_id)
        if entity is None:
            raise PreconditionError(f"Attachment {file_id} does not exist")
        try:
            return self._blobs.read_bytes(entity.file_path)
        except OSError as e:
            raise PersistenceError(f"Cannot read attachment: {e}") from e

    def _delete_blob(self, path: str) -> bool:
        try:
            self._blobs.delete(path)
            return True
        except FileNotFoundError:
            return True
        except OSError:
            logger.warning("Failed to delete blob %s", path, exc_info=True)
            return False

    def remove(self, file_id: int) -> bool:
        entity = self._db.get_file(file_id)
        if entity is None:
            return False
        self._delete_blob(entity.file_path)
        removed = self._db.delete_file(file_id)
        logger.info("Removed file id=%s task=%s", file_id, entity.task_id)
        return removed

    def remove_all(self, task_id: int) -> int:
        """
        Remove every attachment of a task, blobs first.

        Call before TaskRepository.delete(): the FK cascade drops rows, not blobs.
        """
        files = self._db.list_files(task_id)
        for f in files:
            self._delete_blob(f.file_path)
        n = self._db.delete_files_for_task(task_id)
        if files:
            logger.info("Removed %d attachment(s) of task %s", n, task_id)
        return n

    def reconcile_orphans(self) -> int:
        """Delete blobs that no TaskFiles row references. Returns how many were removed."""
        removed = 0
        with self._blob_lock:
            live = self._db.list_file_paths()
            for path in list(self._blobs.iter_paths()):
                if path in live or path.endswith(".tmp"):
                    continue
                if self._delete_blob(path):
                    removed += 1
        if removed:
            logger.info("Reconciled attachment storage: removed %d orphan blob(s)", removed)
        return removed
