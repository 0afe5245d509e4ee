import logging

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from gitlab_mcp.server.auth.middleware.bearer_auth import AuthenticatedUser
from gitlab_mcp.server.auth.session_store import SessionStore

logger = logging.getLogger(__name__)

MCP_SESSION_ID_HEADER = "mcp-session-id"


class McpSessionMiddleware:
    """
    Middleware that ties MCP transport sessions to the authenticated OAuth session.

    The transport's session id is taken from the request header, or from the
    response header when the transport assigns a new one. A DELETE request ends
    the transport session and removes its association only.
    """

    def __init__(self, app: ASGIApp, session_store: SessionStore):
        self.app = app
        self.session_store = session_store

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        user = scope.get("user")
        if scope["type"] != "http" or not isinstance(user, AuthenticatedUser):
            await self.app(scope, receive, send)
            return

        mcp_session_id = Headers(scope=scope).get(MCP_SESSION_ID_HEADER)
        if mcp_session_id and scope["method"] != "DELETE":
            await self.session_store.associate_mcp_session(mcp_session_id, user.session_id)

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start" and not mcp_session_id:
                assigned = Headers(raw=message.get("headers", [])).get(MCP_SESSION_ID_HEADER)
                if assigned:
                    await self.session_store.associate_mcp_session(assigned, user.session_id)
            await send(message)

        await self.app(scope, receive, send_wrapper)

        if mcp_session_id and scope["method"] == "DELETE":
            await self.session_store.remove_mcp_session_association(mcp_session_id)
