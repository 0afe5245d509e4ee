"""
Relational storage on SQLite.

Each collection is a table holding the model as a JSON payload plus the columns
needed for lookups and expiry sweeps. Calls run in a worker thread over a single
connection, serialized by a lock.
"""

import logging
import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal, TypeVar

import anyio
import anyio.to_thread

from gitlab_mcp.server.auth.settings import SQLiteStorageConfig
from gitlab_mcp.server.auth.storage.base import StorageError, StorageStats
from gitlab_mcp.server.auth.types import (
    AuthCodeFlowState,
    AuthorizationCode,
    DeviceFlowState,
    OAuthSession,
    PendingFlowModel,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SQLiteStorageBackend:
    type: Literal["memory", "file", "sqlite"] = "sqlite"

    def __init__(self, config: SQLiteStorageConfig | None = None) -> None:
        self.config = config or SQLiteStorageConfig()
        self.path = Path(self.config.path)
        prefix = self.config.table_prefix
        self.sessions_table = f"{prefix}sessions"
        self.flows_table = f"{prefix}flows"
        self.codes_table = f"{prefix}auth_codes"
        self._conn: sqlite3.Connection | None = None
        self._lock = anyio.Lock()

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.executescript(
            f"""
            CREATE TABLE IF NOT EXISTS {self.sessions_table} (
                id TEXT PRIMARY KEY,
                mcp_access_token TEXT NOT NULL,
                mcp_refresh_token TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                data TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_{self.sessions_table}_access
                ON {self.sessions_table}(mcp_access_token);
            CREATE INDEX IF NOT EXISTS idx_{self.sessions_table}_refresh
                ON {self.sessions_table}(mcp_refresh_token);

            CREATE TABLE IF NOT EXISTS {self.flows_table} (
                state TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                expires_at INTEGER NOT NULL,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS {self.codes_table} (
                code TEXT PRIMARY KEY,
                expires_at INTEGER NOT NULL,
                data TEXT NOT NULL
            );
            """
        )
        conn.commit()
        return conn

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            raise StorageError("SQLite storage is not initialized")
        conn = self._conn
        async with self._lock:
            try:
                return await anyio.to_thread.run_sync(fn, conn)
            except sqlite3.Error as e:
                raise StorageError(f"SQLite storage error: {e}") from e

    async def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        def execute(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount

        return await self._run(execute)

    async def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> sqlite3.Row | None:
        return await self._run(lambda conn: conn.execute(sql, params).fetchone())

    async def initialize(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = await anyio.to_thread.run_sync(self._connect)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open SQLite storage at {self.path}: {e}") from e
        logger.info(f"SQLite storage ready at {self.path}")

    async def flush(self) -> None:
        pass

    async def close(self) -> None:
        if self._conn is None:
            return
        conn = self._conn
        async with self._lock:
            self._conn = None
            await anyio.to_thread.run_sync(conn.close)

    async def create_session(self, session: OAuthSession) -> None:
        await self._execute(
            f"INSERT OR REPLACE INTO {self.sessions_table} "
            "(id, mcp_access_token, mcp_refresh_token, created_at, data) VALUES (?, ?, ?, ?, ?)",
            (
                session.id,
                session.mcp_access_token,
                session.mcp_refresh_token,
                session.created_at,
                session.model_dump_json(),
            ),
        )

    async def _session_where(self, column: str, value: str) -> OAuthSession | None:
        row = await self._fetch_one(f"SELECT data FROM {self.sessions_table} WHERE {column} = ?", (value,))
        return OAuthSession.model_validate_json(row["data"]) if row else None

    async def get_session(self, session_id: str) -> OAuthSession | None:
        return await self._session_where("id", session_id)

    async def get_session_by_token(self, mcp_access_token: str) -> OAuthSession | None:
        return await self._session_where("mcp_access_token", mcp_access_token)

    async def get_session_by_refresh_token(self, mcp_refresh_token: str) -> OAuthSession | None:
        return await self._session_where("mcp_refresh_token", mcp_refresh_token)

    async def update_session(self, session: OAuthSession) -> bool:
        count = await self._execute(
            f"UPDATE {self.sessions_table} SET mcp_access_token = ?, mcp_refresh_token = ?, data = ? WHERE id = ?",
            (session.mcp_access_token, session.mcp_refresh_token, session.model_dump_json(), session.id),
        )
        return count > 0

    async def delete_session(self, session_id: str) -> bool:
        return await self._execute(f"DELETE FROM {self.sessions_table} WHERE id = ?", (session_id,)) > 0

    async def list_sessions(self) -> list[OAuthSession]:
        rows = await self._run(lambda conn: conn.execute(f"SELECT data FROM {self.sessions_table}").fetchall())
        return [OAuthSession.model_validate_json(row["data"]) for row in rows]

    async def put_flow(self, state: str, flow: DeviceFlowState | AuthCodeFlowState) -> None:
        await self._execute(
            f"INSERT OR REPLACE INTO {self.flows_table} (state, kind, expires_at, data) VALUES (?, ?, ?, ?)",
            (state, flow.kind, flow.expires_at, flow.model_dump_json()),
        )

    async def get_flow(self, state: str) -> DeviceFlowState | AuthCodeFlowState | None:
        row = await self._fetch_one(f"SELECT data FROM {self.flows_table} WHERE state = ?", (state,))
        return PendingFlowModel.model_validate_json(row["data"]).root if row else None

    async def delete_flow(self, state: str) -> bool:
        return await self._execute(f"DELETE FROM {self.flows_table} WHERE state = ?", (state,)) > 0

    async def put_auth_code(self, code: AuthorizationCode) -> None:
        await self._execute(
            f"INSERT OR REPLACE INTO {self.codes_table} (code, expires_at, data) VALUES (?, ?, ?)",
            (code.code, code.expires_at, code.model_dump_json()),
        )

    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        row = await self._fetch_one(f"SELECT data FROM {self.codes_table} WHERE code = ?", (code,))
        return AuthorizationCode.model_validate_json(row["data"]) if row else None

    async def delete_auth_code(self, code: str) -> bool:
        return await self._execute(f"DELETE FROM {self.codes_table} WHERE code = ?", (code,)) > 0

    async def cleanup(self, now: int, session_max_age: int) -> int:
        def sweep(conn: sqlite3.Connection) -> int:
            removed = conn.execute(f"DELETE FROM {self.flows_table} WHERE expires_at < ?", (now,)).rowcount
            removed += conn.execute(f"DELETE FROM {self.codes_table} WHERE expires_at < ?", (now,)).rowcount
            removed += conn.execute(
                f"DELETE FROM {self.sessions_table} WHERE created_at < ?", (now - session_max_age,)
            ).rowcount
            conn.commit()
            return removed

        return await self._run(sweep)

    async def stats(self) -> StorageStats:
        def count(conn: sqlite3.Connection) -> StorageStats:
            def scalar(sql: str) -> int:
                return conn.execute(sql).fetchone()[0]

            return StorageStats(
                sessions=scalar(f"SELECT COUNT(*) FROM {self.sessions_table}"),
                device_flows=scalar(f"SELECT COUNT(*) FROM {self.flows_table} WHERE kind = 'device'"),
                auth_code_flows=scalar(f"SELECT COUNT(*) FROM {self.flows_table} WHERE kind = 'auth_code'"),
                auth_codes=scalar(f"SELECT COUNT(*) FROM {self.codes_table}"),
            )

        return await self._run(count)
