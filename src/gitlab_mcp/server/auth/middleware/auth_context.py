import contextvars
from collections.abc import Awaitable, Callable
from typing import TypeVar

from starlette.types import ASGIApp, Receive, Scope, Send

from gitlab_mcp.server.auth.middleware.bearer_auth import AuthenticatedUser
from gitlab_mcp.server.auth.types import TokenContext

T = TypeVar("T")


# The default is None, indicating the code is not running inside an OAuth request
token_context_var = contextvars.ContextVar[TokenContext | None]("token_context", default=None)


async def run_with_token_context(
    context: TokenContext, fn: Callable[..., Awaitable[T]], *args: object
) -> T:
    """
    Await ``fn(*args)`` with ``context`` visible to it and to every task it starts.

    Concurrent invocations each see only their own context.
    """
    token = token_context_var.set(context)
    try:
        return await fn(*args)
    finally:
        token_context_var.reset(token)


def get_token_context() -> TokenContext | None:
    return token_context_var.get()


def is_in_oauth_context() -> bool:
    return token_context_var.get() is not None


def _require_context() -> TokenContext:
    context = token_context_var.get()
    if context is None:
        raise RuntimeError("No OAuth token context available; this code must run inside an authenticated request")
    return context


def get_gitlab_token_from_context() -> str:
    return _require_context().gitlab_token


def get_gitlab_user_id_from_context() -> int:
    return _require_context().gitlab_user_id


def get_gitlab_username_from_context() -> str:
    return _require_context().gitlab_username


def get_session_id_from_context() -> str:
    return _require_context().session_id


def resolve_gitlab_token(static_token: str | None = None) -> str:
    """
    The GitLab token for the current call: the OAuth context's token when
    present, otherwise the static service token.
    """
    context = token_context_var.get()
    if context is not None:
        return context.gitlab_token
    if static_token:
        return static_token
    raise RuntimeError("No GitLab token available: not in an OAuth context and no static token configured")


class AuthContextMiddleware:
    """
    Middleware that runs the rest of the request inside the authenticated user's
    token context.

    Must be installed inside AuthenticationMiddleware so that ``scope["user"]`` is
    populated.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        user = scope.get("user")
        if isinstance(user, AuthenticatedUser):
            await run_with_token_context(user.token_context, self.app, scope, receive, send)
        else:
            await self.app(scope, receive, send)
