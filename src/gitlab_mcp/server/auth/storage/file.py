"""
JSON file storage: an in-memory store with write-behind snapshots.

Changes mark the store dirty; ``flush()`` (called periodically by the session
store and on close) writes the whole snapshot to a temporary file and renames it
over the previous one, so a crash mid-write never leaves a truncated file.
"""

import logging
import os
from pathlib import Path
from typing import Literal

import anyio
import anyio.to_thread
from pydantic import BaseModel, ValidationError

from gitlab_mcp.server.auth.settings import FileStorageConfig
from gitlab_mcp.server.auth.storage.base import StorageError
from gitlab_mcp.server.auth.storage.memory import MemoryStorageBackend
from gitlab_mcp.server.auth.token_utils import now_ms
from gitlab_mcp.server.auth.types import (
    AuthCodeFlowState,
    AuthorizationCode,
    DeviceFlowState,
    OAuthSession,
    PendingFlow,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class StorageSnapshot(BaseModel):
    version: int = SNAPSHOT_VERSION
    exported_at: int
    sessions: list[OAuthSession] = []
    flows: dict[str, PendingFlow] = {}
    auth_codes: list[AuthorizationCode] = []


def _write_atomic(path: Path, data: str) -> None:
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class FileStorageBackend(MemoryStorageBackend):
    type: Literal["memory", "file", "sqlite"] = "file"

    def __init__(self, config: FileStorageConfig | None = None) -> None:
        super().__init__()
        self.config = config or FileStorageConfig()
        self.path = Path(self.config.path)
        self._dirty = False
        self._flush_lock = anyio.Lock()

    @property
    def dirty(self) -> bool:
        return self._dirty

    async def initialize(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {self.path.parent}: {e}") from e
        if not os.access(self.path.parent, os.W_OK):
            raise StorageError(f"Storage directory {self.path.parent} is not writable")

        if self.path.exists():
            await self._load()
        else:
            logger.info(f"No existing session file at {self.path}, starting fresh")

    async def _load(self) -> None:
        try:
            raw = await anyio.to_thread.run_sync(self.path.read_text, "utf-8")
            snapshot = StorageSnapshot.model_validate_json(raw)
        except (OSError, ValidationError) as e:
            raise StorageError(f"Cannot load session file {self.path}: {e}") from e

        now = now_ms()
        for session in snapshot.sessions:
            self.sessions[session.id] = session
            self._index(session)
        for state, flow in snapshot.flows.items():
            if flow.expires_at > now:
                self.flows[state] = flow
        for code in snapshot.auth_codes:
            if code.expires_at > now:
                self.auth_codes[code.code] = code
        logger.info(
            f"Loaded {len(self.sessions)} sessions, {len(self.flows)} pending flows "
            f"and {len(self.auth_codes)} authorization codes from {self.path}"
        )

    def _snapshot(self) -> str:
        snapshot = StorageSnapshot(
            exported_at=now_ms(),
            sessions=list(self.sessions.values()),
            flows=dict(self.flows),
            auth_codes=list(self.auth_codes.values()),
        )
        return snapshot.model_dump_json(indent=2 if self.config.pretty_print else None)

    async def flush(self) -> None:
        async with self._flush_lock:
            if not self._dirty:
                return
            data = self._snapshot()
            self._dirty = False
            try:
                await anyio.to_thread.run_sync(_write_atomic, self.path, data)
            except OSError as e:
                self._dirty = True
                raise StorageError(f"Cannot write session file {self.path}: {e}") from e
            logger.debug(f"Saved {len(self.sessions)} sessions to {self.path}")

    async def close(self) -> None:
        await self.flush()

    async def create_session(self, session: OAuthSession) -> None:
        await super().create_session(session)
        self._dirty = True

    async def update_session(self, session: OAuthSession) -> bool:
        updated = await super().update_session(session)
        self._dirty = self._dirty or updated
        return updated

    async def delete_session(self, session_id: str) -> bool:
        deleted = await super().delete_session(session_id)
        self._dirty = self._dirty or deleted
        return deleted

    async def put_flow(self, state: str, flow: DeviceFlowState | AuthCodeFlowState) -> None:
        await super().put_flow(state, flow)
        self._dirty = True

    async def delete_flow(self, state: str) -> bool:
        deleted = await super().delete_flow(state)
        self._dirty = self._dirty or deleted
        return deleted

    async def put_auth_code(self, code: AuthorizationCode) -> None:
        await super().put_auth_code(code)
        self._dirty = True

    async def delete_auth_code(self, code: str) -> bool:
        deleted = await super().delete_auth_code(code)
        self._dirty = self._dirty or deleted
        return deleted

    async def cleanup(self, now: int, session_max_age: int) -> int:
        removed = await super().cleanup(now, session_max_age)
        self._dirty = self._dirty or removed > 0
        return removed
