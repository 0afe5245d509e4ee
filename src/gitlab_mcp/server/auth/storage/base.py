from typing import Literal, Protocol

from pydantic import BaseModel

from gitlab_mcp.server.auth.types import AuthCodeFlowState, AuthorizationCode, DeviceFlowState, OAuthSession

# Sessions are dropped this long after creation unless configured otherwise
DEFAULT_SESSION_MAX_AGE_MS = 7 * 24 * 60 * 60 * 1000


class StorageError(Exception):
    """A storage backend could not load or persist its data."""

    pass


class StorageStats(BaseModel):
    sessions: int
    device_flows: int
    auth_code_flows: int
    auth_codes: int
    mcp_sessions: int = 0


class SessionStorageBackend(Protocol):
    """
    Persistence for OAuth sessions, pending flows and authorization codes.

    Backends return copies; callers never mutate stored objects in place.
    Transport-session associations are not part of a backend's data.
    """

    type: Literal["memory", "file", "sqlite"]

    async def initialize(self) -> None:
        """
        Prepare the backend (create files, tables) and load existing data.

        Raises:
            StorageError: if the backend cannot be used.
        """
        ...

    async def flush(self) -> None:
        """Persist pending changes. A no-op for write-through backends."""
        ...

    async def close(self) -> None:
        """Flush and release resources."""
        ...

    async def create_session(self, session: OAuthSession) -> None: ...

    async def get_session(self, session_id: str) -> OAuthSession | None: ...

    async def get_session_by_token(self, mcp_access_token: str) -> OAuthSession | None: ...

    async def get_session_by_refresh_token(self, mcp_refresh_token: str) -> OAuthSession | None: ...

    async def update_session(self, session: OAuthSession) -> bool:
        """Replace a stored session; returns False if it does not exist."""
        ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def list_sessions(self) -> list[OAuthSession]: ...

    async def put_flow(self, state: str, flow: DeviceFlowState | AuthCodeFlowState) -> None: ...

    async def get_flow(self, state: str) -> DeviceFlowState | AuthCodeFlowState | None: ...

    async def delete_flow(self, state: str) -> bool: ...

    async def put_auth_code(self, code: AuthorizationCode) -> None: ...

    async def get_auth_code(self, code: str) -> AuthorizationCode | None: ...

    async def delete_auth_code(self, code: str) -> bool: ...

    async def cleanup(self, now: int, session_max_age: int) -> int:
        """
        Remove expired flows and codes and sessions older than ``session_max_age``.

        Args:
            now: current time in epoch milliseconds.
            session_max_age: maximum session age in milliseconds.

        Returns:
            The number of removed entries.
        """
        ...

    async def stats(self) -> StorageStats: ...
