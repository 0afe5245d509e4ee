"""
Command line entry point.

Usage:
    gitlab-mcp-gateway --port=3002
    python -m gitlab_mcp --mcp-app=my_package.server:app
"""

import asyncio
import logging

import click
from starlette.applications import Starlette
from uvicorn import Config, Server
from uvicorn.importer import ImportFromStringError, import_from_string

from gitlab_mcp.server.app import create_app
from gitlab_mcp.server.auth.settings import (
    ConfigurationError,
    OAuthMode,
    ServerSettings,
    StaticTokenMode,
    resolve_auth_mode,
)

logger = logging.getLogger(__name__)


async def run_server(app: Starlette, settings: ServerSettings, auth_mode: StaticTokenMode | OAuthMode) -> None:
    """Serve until a termination signal; shutdown flushes and closes the session store."""
    config = Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    server = Server(config)

    base = f"http://{settings.host}:{settings.port}"
    logger.info("=" * 80)
    logger.info(f"GITLAB MCP GATEWAY ({auth_mode.kind} mode)")
    logger.info("=" * 80)
    logger.info(f"  - Health: {base}/health")
    if auth_mode.kind == "oauth":
        logger.info(f"  - OAuth Metadata: {base}/.well-known/oauth-authorization-server")
        logger.info(f"  - Authorization: {base}/authorize")
        logger.info(f"  - Token Exchange: {base}/token")
        logger.info(f"  - Client Registration: {base}/register")
        logger.info(f"  - Session storage: {auth_mode.config.storage_type}")
    logger.info("=" * 80)

    await server.serve()


@click.command()
@click.option("--port", type=int, default=None, help="Port to listen on (default: $PORT or 3002)")
@click.option("--host", default=None, help="Host to bind to (default: $HOST or localhost)")
@click.option("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or INFO)")
@click.option("--mcp-app", default=None, help="Import string of the MCP transport ASGI app, e.g. pkg.module:app")
def main(port: int | None, host: str | None, log_level: str | None, mcp_app: str | None) -> int:
    """
    Run the GitLab MCP gateway.

    Environment variables:
    - GITLAB_TOKEN: service token for static mode
    - OAUTH_ENABLED=true, OAUTH_SESSION_SECRET, GITLAB_OAUTH_CLIENT_ID: OAuth mode
    """
    overrides = {k: v for k, v in {"port": port, "host": host, "log_level": log_level}.items() if v is not None}
    settings = ServerSettings(**overrides)
    logging.basicConfig(level=settings.log_level.upper())

    try:
        auth_mode = resolve_auth_mode(settings)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(1)

    transport = None
    if mcp_app:
        try:
            transport = import_from_string(mcp_app)
        except ImportFromStringError as e:
            logger.error(f"Cannot load MCP app: {e}")
            raise SystemExit(1)

    app = create_app(auth_mode, mcp_app=transport)
    asyncio.run(run_server(app, settings, auth_mode))
    return 0
