"""
Session store for OAuth sessions, pending authorization flows, authorization
codes and MCP transport-session associations.

The store wraps a storage backend, serializes mutations with a lock and runs a
maintenance task (flushing write-behind backends, sweeping expired entries)
between ``initialize()`` and ``close()``. It is created once per application and
passed to the handlers and middleware that need it.
"""

import logging
from contextlib import AsyncExitStack
from typing import Any

import anyio
from anyio.abc import TaskGroup

from gitlab_mcp.server.auth.storage.base import (
    DEFAULT_SESSION_MAX_AGE_MS,
    SessionStorageBackend,
    StorageStats,
)
from gitlab_mcp.server.auth.token_utils import now_ms
from gitlab_mcp.server.auth.types import AuthCodeFlowState, AuthorizationCode, DeviceFlowState, OAuthSession

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL = 5 * 60.0
DEFAULT_FLUSH_INTERVAL = 1.0


def _short(identifier: str) -> str:
    return f"{identifier[:8]}..."


class SessionStore:
    def __init__(
        self,
        backend: SessionStorageBackend,
        *,
        session_max_age_ms: int = DEFAULT_SESSION_MAX_AGE_MS,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
    ):
        self.backend = backend
        self.session_max_age_ms = session_max_age_ms
        self.cleanup_interval = cleanup_interval
        self.flush_interval = flush_interval

        self._lock = anyio.Lock()
        self._initialized = False
        self._exit_stack: AsyncExitStack | None = None
        self._task_group: TaskGroup | None = None
        # transport session id -> OAuth session id; not persisted
        self._mcp_sessions: dict[str, str] = {}
        # OAuth session id -> lock held while its GitLab token is refreshed
        self._session_locks: dict[str, anyio.Lock] = {}

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize the backend and start maintenance. Safe to call twice."""
        async with self._lock:
            if self._initialized:
                return
            await self.backend.initialize()

            exit_stack = AsyncExitStack()
            self._task_group = await exit_stack.enter_async_context(anyio.create_task_group())
            self._task_group.start_soon(self._maintenance_loop)
            self._exit_stack = exit_stack
            self._initialized = True
        logger.info(f"Session store initialized with {self.backend.type} storage")

    async def close(self) -> None:
        """
        Stop maintenance, flush pending changes and close the backend.

        Raises:
            StorageError: if the final flush fails.
        """
        if not self._initialized:
            return
        if self._task_group is not None:
            self._task_group.cancel_scope.cancel()
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
        self._task_group = None
        self._exit_stack = None

        async with self._lock:
            self._initialized = False
            self._mcp_sessions.clear()
            self._session_locks.clear()
            try:
                await self.backend.flush()
            finally:
                await self.backend.close()
        logger.info("Session store closed")

    async def __aenter__(self) -> "SessionStore":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _maintenance_loop(self) -> None:
        next_cleanup = anyio.current_time() + self.cleanup_interval
        while True:
            await anyio.sleep(self.flush_interval)
            try:
                if anyio.current_time() >= next_cleanup:
                    next_cleanup = anyio.current_time() + self.cleanup_interval
                    await self.cleanup()
                await self.backend.flush()
            except Exception:
                logger.exception("Session store maintenance failed")

    async def cleanup(self) -> int:
        """Remove expired flows, codes and sessions; returns the count removed."""
        async with self._lock:
            removed = await self.backend.cleanup(now_ms(), self.session_max_age_ms)
            if self._mcp_sessions or self._session_locks:
                live = {s.id for s in await self.backend.list_sessions()}
                for mcp_id in [m for m, sid in self._mcp_sessions.items() if sid not in live]:
                    del self._mcp_sessions[mcp_id]
                for session_id in [sid for sid in self._session_locks if sid not in live]:
                    del self._session_locks[session_id]
        if removed:
            logger.info(f"Cleaned up {removed} expired entries")
        return removed

    # Sessions

    async def create_session(self, session: OAuthSession) -> OAuthSession:
        async with self._lock:
            await self.backend.create_session(session)
        logger.info(f"Created session {_short(session.id)} for user {session.gitlab_username}")
        return session

    async def get_session(self, session_id: str) -> OAuthSession | None:
        return await self.backend.get_session(session_id)

    async def get_session_by_token(self, mcp_access_token: str) -> OAuthSession | None:
        return await self.backend.get_session_by_token(mcp_access_token)

    async def get_session_by_refresh_token(self, mcp_refresh_token: str) -> OAuthSession | None:
        return await self.backend.get_session_by_refresh_token(mcp_refresh_token)

    async def update_session(self, session_id: str, **changes: Any) -> OAuthSession | None:
        """Apply ``changes`` to a session; returns the updated copy or None if unknown."""
        async with self._lock:
            session = await self.backend.get_session(session_id)
            if session is None:
                return None
            updated = session.model_copy(update={**changes, "updated_at": now_ms()})
            await self.backend.update_session(updated)
        return updated

    async def rotate_refresh_token(
        self, session_id: str, old_refresh_token: str, **changes: Any
    ) -> OAuthSession | None:
        """
        Apply ``changes`` only if the session still holds ``old_refresh_token``.

        Returns None when the session is gone or the token was already rotated,
        so a refresh token can be redeemed at most once.
        """
        async with self._lock:
            session = await self.backend.get_session(session_id)
            if session is None or session.mcp_refresh_token != old_refresh_token:
                return None
            updated = session.model_copy(update={**changes, "updated_at": now_ms()})
            await self.backend.update_session(updated)
        return updated

    def session_lock(self, session_id: str) -> anyio.Lock:
        """Per-session lock for read-refresh-write sequences that call GitLab."""
        return self._session_locks.setdefault(session_id, anyio.Lock())

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            deleted = await self.backend.delete_session(session_id)
            for mcp_id in self.get_mcp_session_ids(session_id):
                del self._mcp_sessions[mcp_id]
            self._session_locks.pop(session_id, None)
        if deleted:
            logger.info(f"Deleted session {_short(session_id)}")
        return deleted

    async def list_sessions(self) -> list[OAuthSession]:
        return await self.backend.list_sessions()

    # Pending flows

    async def store_device_flow(self, state: str, flow: DeviceFlowState) -> None:
        async with self._lock:
            await self.backend.put_flow(state, flow)

    async def get_device_flow(self, state: str) -> DeviceFlowState | None:
        flow = await self.backend.get_flow(state)
        if flow is None or flow.kind != "device":
            return None
        return flow

    async def store_auth_code_flow(self, internal_state: str, flow: AuthCodeFlowState) -> None:
        async with self._lock:
            await self.backend.put_flow(internal_state, flow)

    async def get_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        flow = await self.backend.get_flow(internal_state)
        if flow is None or flow.kind != "auth_code":
            return None
        return flow

    async def consume_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        """
        Fetch and delete a pending authorization code flow in one step.

        A callback state is single-use; a device flow stored under the same key
        is left alone.
        """
        async with self._lock:
            flow = await self.backend.get_flow(internal_state)
            if flow is None or flow.kind != "auth_code":
                return None
            await self.backend.delete_flow(internal_state)
        return flow

    async def delete_flow(self, state: str) -> bool:
        async with self._lock:
            return await self.backend.delete_flow(state)

    # Authorization codes

    async def store_auth_code(self, code: AuthorizationCode) -> None:
        async with self._lock:
            await self.backend.put_auth_code(code)

    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        return await self.backend.get_auth_code(code)

    async def consume_auth_code(self, code: str) -> AuthorizationCode | None:
        """Fetch and delete an authorization code in one step; codes are single-use."""
        async with self._lock:
            auth_code = await self.backend.get_auth_code(code)
            if auth_code is not None:
                await self.backend.delete_auth_code(code)
        return auth_code

    async def delete_auth_code(self, code: str) -> bool:
        async with self._lock:
            return await self.backend.delete_auth_code(code)

    # MCP transport sessions

    async def associate_mcp_session(self, mcp_session_id: str, oauth_session_id: str) -> None:
        async with self._lock:
            self._mcp_sessions[mcp_session_id] = oauth_session_id
        logger.debug(f"Associated MCP session {_short(mcp_session_id)} with {_short(oauth_session_id)}")

    async def get_session_by_mcp_session_id(self, mcp_session_id: str) -> OAuthSession | None:
        oauth_session_id = self._mcp_sessions.get(mcp_session_id)
        if oauth_session_id is None:
            return None
        return await self.backend.get_session(oauth_session_id)

    def get_mcp_session_ids(self, oauth_session_id: str) -> frozenset[str]:
        return frozenset(m for m, sid in self._mcp_sessions.items() if sid == oauth_session_id)

    async def remove_mcp_session_association(self, mcp_session_id: str) -> bool:
        """Forget one transport session. The OAuth session itself is kept."""
        async with self._lock:
            removed = self._mcp_sessions.pop(mcp_session_id, None) is not None
        if removed:
            logger.debug(f"Removed MCP session association {_short(mcp_session_id)}")
        return removed

    async def stats(self) -> StorageStats:
        stats = await self.backend.stats()
        return stats.model_copy(update={"mcp_sessions": len(self._mcp_sessions)})
