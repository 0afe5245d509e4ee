"""
Bearer token authentication for the gateway's protected routes.
"""

import logging

import httpx
from starlette.authentication import AuthCredentials, AuthenticationBackend, SimpleUser
from starlette.requests import HTTPConnection
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from gitlab_mcp.client.gitlab import GitLabOAuthClient, GitLabOAuthError
from gitlab_mcp.server.auth.base_url import get_base_url
from gitlab_mcp.server.auth.errors import InvalidTokenError
from gitlab_mcp.server.auth.json_response import oauth_error_response
from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.token_utils import verify_mcp_token
from gitlab_mcp.server.auth.types import MCPTokenClaims, OAuthSession, TokenContext
from gitlab_mcp.server.auth.upstream import ensure_fresh_gitlab_token

logger = logging.getLogger(__name__)

REALM = "gitlab-mcp"


class AuthenticatedUser(SimpleUser):
    """User with the verified token claims and the session they resolve to."""

    def __init__(self, claims: MCPTokenClaims, session: OAuthSession):
        super().__init__(session.gitlab_username)
        self.claims = claims
        self.session_id = session.id
        self.scopes = claims.scope.split()
        self.token_context = TokenContext(
            gitlab_token=session.gitlab_access_token,
            gitlab_user_id=session.gitlab_user_id,
            gitlab_username=session.gitlab_username,
            session_id=session.id,
        )


class BearerAuthBackend(AuthenticationBackend):
    """
    Authentication backend that validates the gateway's bearer tokens.

    A request is authenticated when the token verifies, its session exists and
    the token is still the session's current one. Failures leave the request
    unauthenticated; ``RequireAuthMiddleware`` turns that into a 401.
    """

    def __init__(self, secret: str, session_store: SessionStore, gitlab: GitLabOAuthClient):
        self.secret = secret
        self.session_store = session_store
        self.gitlab = gitlab

    async def authenticate(self, conn: HTTPConnection):
        auth_header = conn.headers.get("Authorization")
        if not auth_header or not auth_header.lower().startswith("bearer "):
            return None

        token = auth_header[7:].strip()
        claims = verify_mcp_token(token, self.secret)
        if claims is None:
            logger.debug("Rejected bearer token: invalid or expired")
            return None

        session = await self.session_store.get_session(claims.sid)
        if session is None:
            logger.debug(f"Rejected bearer token: session {claims.sid[:8]}... not found")
            return None
        if session.mcp_access_token != token:
            logger.debug(f"Rejected bearer token: superseded for session {claims.sid[:8]}...")
            return None

        try:
            session = await ensure_fresh_gitlab_token(session, self.session_store, self.gitlab)
        except (GitLabOAuthError, httpx.HTTPError) as e:
            logger.warning(f"Failed to refresh GitLab token for session {session.id[:8]}...: {e}")
            return None

        user = AuthenticatedUser(claims, session)
        return AuthCredentials(user.scopes), user


class RequireAuthMiddleware:
    """
    Middleware that rejects requests without an authenticated user with a 401
    and a ``WWW-Authenticate`` challenge pointing at the resource metadata.
    """

    def __init__(self, app: ASGIApp, resource_metadata_path: str = "/.well-known/oauth-protected-resource"):
        self.app = app
        self.resource_metadata_path = resource_metadata_path

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or isinstance(scope.get("user"), AuthenticatedUser):
            await self.app(scope, receive, send)
            return

        conn = HTTPConnection(scope)
        if conn.headers.get("Authorization"):
            description = "Invalid or expired token"
        else:
            description = "Missing or invalid Authorization header"
        response = self._unauthorized(conn, description)
        await response(scope, receive, send)

    def _unauthorized(self, conn: HTTPConnection, description: str) -> Response:
        error = InvalidTokenError(description)
        resource_metadata = f"{get_base_url(conn)}{self.resource_metadata_path}"
        challenge = (
            f'Bearer realm="{REALM}", error="{error.error_code}", '
            f'error_description="{description}", resource_metadata="{resource_metadata}"'
        )
        return oauth_error_response(error, headers={"WWW-Authenticate": challenge})
