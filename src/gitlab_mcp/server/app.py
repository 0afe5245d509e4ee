"""
Starlette application for the gateway.

In static mode every request uses the configured service token. In OAuth mode
the authorization server routes are added and the MCP endpoint requires a bearer
token issued by this gateway.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import AsyncExitStack, asynccontextmanager

import httpx
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.routing import BaseRoute, Mount, Route
from starlette.types import ASGIApp

from gitlab_mcp.client.auth_code_flow import AuthCodeFlowClient
from gitlab_mcp.client.device_flow import DeviceFlowClient
from gitlab_mcp.server.auth.handlers.metadata import HealthHandler
from gitlab_mcp.server.auth.middleware.auth_context import AuthContextMiddleware
from gitlab_mcp.server.auth.middleware.bearer_auth import BearerAuthBackend, RequireAuthMiddleware
from gitlab_mcp.server.auth.middleware.mcp_session import McpSessionMiddleware
from gitlab_mcp.server.auth.provider import InMemoryClientsStore, OAuthRegisteredClientsStore
from gitlab_mcp.server.auth.routes import create_auth_routes
from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.settings import OAuthConfig, OAuthMode, StaticTokenMode
from gitlab_mcp.server.auth.storage import create_storage_backend

logger = logging.getLogger(__name__)

MCP_PATH = "/mcp"


def create_session_store(config: OAuthConfig) -> SessionStore:
    backend = create_storage_backend(config.storage_config())
    return SessionStore(
        backend,
        session_max_age_ms=config.refresh_token_ttl * 1000,
        flush_interval=config.storage_save_interval,
    )


def create_app(
    auth_mode: StaticTokenMode | OAuthMode,
    *,
    mcp_app: ASGIApp | None = None,
    session_store: SessionStore | None = None,
    clients_store: OAuthRegisteredClientsStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    middleware: Sequence[Middleware] = (),
) -> Starlette:
    """
    Build the gateway application.

    Args:
        auth_mode: Static token or OAuth mode
        mcp_app: ASGI app serving the MCP transport, mounted at ``/mcp``
        session_store: Session store to use in OAuth mode; built from the
            configuration when omitted
        clients_store: Store for dynamically registered clients
        http_client: Client for GitLab calls; one is created (and closed on
            shutdown) when omitted
        middleware: Middleware placed in front of every route, such as a rate
            limiter
    """
    if auth_mode.kind == "static":
        return _create_static_app(auth_mode, mcp_app, middleware)

    config = auth_mode.config
    session_store = session_store or create_session_store(config)
    clients_store = clients_store or InMemoryClientsStore()
    owns_http_client = http_client is None
    http_client = http_client or httpx.AsyncClient(timeout=30.0)

    device_client = DeviceFlowClient(config, http_client)
    auth_code_client = AuthCodeFlowClient(config, http_client)

    routes: list[BaseRoute] = [
        Route("/health", endpoint=HealthHandler("oauth").handle, methods=["GET"]),
        *create_auth_routes(config, session_store, clients_store, device_client, auth_code_client, MCP_PATH),
    ]
    if mcp_app is not None:
        routes.append(Mount(MCP_PATH, app=RequireAuthMiddleware(McpSessionMiddleware(mcp_app, session_store))))

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            if owns_http_client:
                stack.push_async_callback(http_client.aclose)
            await stack.enter_async_context(session_store)
            logger.info(f"OAuth mode enabled, GitLab at {config.gitlab_url}")
            yield

    app = Starlette(
        routes=routes,
        middleware=[
            *middleware,
            Middleware(
                AuthenticationMiddleware,
                backend=BearerAuthBackend(config.session_secret, session_store, auth_code_client),
            ),
            Middleware(AuthContextMiddleware),
        ],
        lifespan=lifespan,
    )
    app.state.auth_mode = auth_mode
    app.state.session_store = session_store
    app.state.clients_store = clients_store
    return app


def _create_static_app(
    auth_mode: StaticTokenMode, mcp_app: ASGIApp | None, middleware: Sequence[Middleware]
) -> Starlette:
    routes: list[BaseRoute] = [Route("/health", endpoint=HealthHandler("static").handle, methods=["GET"])]
    if mcp_app is not None:
        routes.append(Mount(MCP_PATH, app=mcp_app))

    app = Starlette(routes=routes, middleware=list(middleware))
    app.state.auth_mode = auth_mode
    app.state.gitlab_token = auth_mode.gitlab_token
    logger.info("Static token mode enabled")
    return app
