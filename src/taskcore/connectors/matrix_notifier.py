# src/taskcore/connectors/matrix_notifier.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from nio import AsyncClient, AsyncClientConfig, LoginResponse, RoomSendResponse

logger = logging.getLogger(__name__)


def _session_path(store_dir: Path) -> Path:
    return store_dir / "session.json"


def _load_json(path: Path) -> dict[str, Any]:
    val = json.loads(path.read_text("utf-8"))
    if isinstance(val, dict):
        return val
    raise ValueError("Expected JSON object")


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False), "utf-8")
    os.replace(tmp, path)
    with contextlib.suppress(OSError):
        # Access token inside; keep it private where the FS allows it.
        os.chmod(path, 0o600)


class MatrixNotifier:
    """
    Notifier that posts overdue summaries as m.text messages into one Matrix room.

    The client is created lazily on the first notify() and reused. The session
    (access token/device id) is persisted in <store>/session.json so restarts
    don't log in again; the password is only needed to bootstrap it.

    Any failure raises RuntimeError: the sweep then leaves its tasks unmarked.
    """

    def __init__(
        self,
        *,
        homeserver: str,
        user_id: str,
        room_id: str,
        password: str = "",
        store_path: str | Path = ".local/taskcore/matrix_store",
        device_name: str = "taskcore (Python)",
    ) -> None:
        self._homeserver = homeserver.strip()
        self._user_id = user_id.strip()
        self._room_id = room_id.strip()
        self._password = password.strip()
        self._store_dir = Path(store_path)
        self._device_name = device_name

        self._client: AsyncClient | None = None
        self._lock: asyncio.Lock | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @classmethod
    def from_settings(cls, settings) -> MatrixNotifier:
        return cls(
            homeserver=settings.matrix_homeserver,
            user_id=settings.matrix_user_id,
            room_id=settings.matrix_room_id,
            password=settings.matrix_password,
            store_path=settings.matrix_store_path,
            device_name=f"{settings.app_name} (Python)",
        )

    async def _ensure_client(self) -> AsyncClient:
        if self._client is not None:
            return self._client

        if not self._homeserver or not self._user_id or not self._room_id:
            raise RuntimeError(
                "Matrix is not configured: set TASKCORE_MATRIX_HOMESERVER, "
                "TASKCORE_MATRIX_USER_ID and TASKCORE_MATRIX_ROOM_ID"
            )

        self._store_dir.mkdir(parents=True, exist_ok=True)
        session_file = _session_path(self._store_dir)

        client = AsyncClient(
            self._homeserver,
            self._user_id,
            config=AsyncClientConfig(encryption_enabled=False, store_sync_tokens=False),
        )

        if session_file.exists():
            try:
                data = _load_json(session_file)
                access_token = data.get("access_token")
                device_id = data.get("device_id")
                if not access_token or not device_id:
                    raise ValueError("session.json is missing required fields")
                client.access_token = str(access_token)
                client.user_id = str(data.get("user_id") or self._user_id)
                client.device_id = str(device_id)
                logger.info("Matrix session restored for %s", client.user_id)
                self._client = client
                return client
            except (OSError, ValueError) as e:
                logger.warning("Failed to restore Matrix session.json, will try password login: %r", e)

        if not self._password:
            await client.close()
            raise RuntimeError(
                "Matrix session.json not found and password is not set. "
                "Set TASKCORE_MATRIX_PASSWORD once to bootstrap a session."
            )

        logger.info("Logging in to Matrix (device_name=%r)...", self._device_name)
        resp = await client.login(password=self._password, device_name=self._device_name)
        if not isinstance(resp, LoginResponse):
            await client.close()
            raise RuntimeError(f"Matrix login failed: {resp!r}")

        try:
            _atomic_write_json(
                session_file,
                {"access_token": resp.access_token, "user_id": resp.user_id, "device_id": resp.device_id},
            )
            logger.info("Matrix session saved to %s (user=%s)", session_file, resp.user_id)
        except OSError as e:
            logger.error("Failed to write Matrix session.json (%s): %r", session_file, e)

        self._client = client
        return client

    async def notify(self, title: str, body: str) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # The client and lock are bound to the loop that created them.
            self._discard_client()
            self._lock = asyncio.Lock()
            self._loop = loop
        assert self._lock is not None

        async with self._lock:
            client = await self._ensure_client()
            text = f"{title}\n{body}" if body else title
            resp = await client.room_send(
                room_id=self._room_id,
                message_type="m.room.message",
                content={"msgtype": "m.text", "body": text},
                ignore_unverified_devices=True,
            )
            if not isinstance(resp, RoomSendResponse):
                raise RuntimeError(f"Matrix room_send failed: {resp!r}")
            logger.debug("Matrix notification sent room=%s event=%s", self._room_id, resp.event_id)

    def _discard_client(self) -> None:
        client, old_loop = self._client, self._loop
        self._client = None
        if client is None:
            return
        if old_loop is not None and old_loop.is_running() and not old_loop.is_closed():
            asyncio.run_coroutine_threadsafe(client.close(), old_loop)
            logger.debug("Closing Matrix client on its own event loop")
        else:
            logger.warning("Discarding Matrix client bound to a finished event loop; call close() before it ends")

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()
