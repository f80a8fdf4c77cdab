# src/taskcore/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps notification channels and blob storage swappable and makes testing easier.
"""

from collections.abc import Awaitable, Iterator
from typing import Protocol


class Notifier(Protocol):
    """
    User-facing notification delivery.

    One call per notification; no return value and no delivery confirmation.
    Raising means the delivery failed.
    """

    def notify(self, title: str, body: str) -> Awaitable[None]: ...


class BlobStorage(Protocol):
    def resolve(self, relative_path: str) -> str: ...
    def write_bytes(self, relative_path: str, data: bytes) -> str: ...
    def read_bytes(self, path: str) -> bytes: ...
    def exists(self, path: str) -> bool: ...
    def delete(self, path: str) -> None: ...
    def iter_paths(self) -> Iterator[str]: ...
