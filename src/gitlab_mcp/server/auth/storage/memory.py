import logging
from typing import Literal

from gitlab_mcp.server.auth.storage.base import StorageStats
from gitlab_mcp.server.auth.types import AuthCodeFlowState, AuthorizationCode, DeviceFlowState, OAuthSession

logger = logging.getLogger(__name__)


class MemoryStorageBackend:
    """Dict-backed storage; everything is lost when the process exits."""

    type: Literal["memory", "file", "sqlite"] = "memory"

    def __init__(self) -> None:
        self.sessions: dict[str, OAuthSession] = {}
        self.flows: dict[str, DeviceFlowState | AuthCodeFlowState] = {}
        self.auth_codes: dict[str, AuthorizationCode] = {}
        # secondary indexes
        self.access_token_index: dict[str, str] = {}
        self.refresh_token_index: dict[str, str] = {}

    async def initialize(self) -> None:
        logger.debug(f"{self.type} storage initialized")

    async def flush(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def _index(self, session: OAuthSession) -> None:
        self.access_token_index[session.mcp_access_token] = session.id
        self.refresh_token_index[session.mcp_refresh_token] = session.id

    def _unindex(self, session: OAuthSession) -> None:
        self.access_token_index.pop(session.mcp_access_token, None)
        self.refresh_token_index.pop(session.mcp_refresh_token, None)

    async def create_session(self, session: OAuthSession) -> None:
        self.sessions[session.id] = session.model_copy()
        self._index(session)

    async def get_session(self, session_id: str) -> OAuthSession | None:
        session = self.sessions.get(session_id)
        return session.model_copy() if session else None

    async def get_session_by_token(self, mcp_access_token: str) -> OAuthSession | None:
        session_id = self.access_token_index.get(mcp_access_token)
        return await self.get_session(session_id) if session_id else None

    async def get_session_by_refresh_token(self, mcp_refresh_token: str) -> OAuthSession | None:
        session_id = self.refresh_token_index.get(mcp_refresh_token)
        return await self.get_session(session_id) if session_id else None

    async def update_session(self, session: OAuthSession) -> bool:
        existing = self.sessions.get(session.id)
        if existing is None:
            return False
        self._unindex(existing)
        self.sessions[session.id] = session.model_copy()
        self._index(session)
        return True

    async def delete_session(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        self._unindex(session)
        return True

    async def list_sessions(self) -> list[OAuthSession]:
        return [s.model_copy() for s in self.sessions.values()]

    async def put_flow(self, state: str, flow: DeviceFlowState | AuthCodeFlowState) -> None:
        self.flows[state] = flow.model_copy()

    async def get_flow(self, state: str) -> DeviceFlowState | AuthCodeFlowState | None:
        flow = self.flows.get(state)
        return flow.model_copy() if flow else None

    async def delete_flow(self, state: str) -> bool:
        return self.flows.pop(state, None) is not None

    async def put_auth_code(self, code: AuthorizationCode) -> None:
        self.auth_codes[code.code] = code.model_copy()

    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        auth_code = self.auth_codes.get(code)
        return auth_code.model_copy() if auth_code else None

    async def delete_auth_code(self, code: str) -> bool:
        return self.auth_codes.pop(code, None) is not None

    async def cleanup(self, now: int, session_max_age: int) -> int:
        removed = 0
        for state in [s for s, flow in self.flows.items() if flow.expires_at < now]:
            del self.flows[state]
            removed += 1
        for code in [c for c, ac in self.auth_codes.items() if ac.expires_at < now]:
            del self.auth_codes[code]
            removed += 1
        for session_id in [sid for sid, s in self.sessions.items() if now - s.created_at > session_max_age]:
            await self.delete_session(session_id)
            removed += 1
        return removed

    async def stats(self) -> StorageStats:
        return StorageStats(
            sessions=len(self.sessions),
            device_flows=sum(1 for f in self.flows.values() if f.kind == "device"),
            auth_code_flows=sum(1 for f in self.flows.values() if f.kind == "auth_code"),
            auth_codes=len(self.auth_codes),
        )
