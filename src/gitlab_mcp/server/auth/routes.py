from starlette.routing import Route

from gitlab_mcp.client.auth_code_flow import AuthCodeFlowClient
from gitlab_mcp.client.device_flow import DeviceFlowClient
from gitlab_mcp.server.auth.handlers.authorize import CALLBACK_PATH, POLL_PATH, AuthorizationHandler
from gitlab_mcp.server.auth.handlers.callback import CallbackHandler
from gitlab_mcp.server.auth.handlers.metadata import (
    AUTHORIZATION_PATH,
    REGISTRATION_PATH,
    TOKEN_PATH,
    MetadataHandler,
    ProtectedResourceMetadataHandler,
)
from gitlab_mcp.server.auth.handlers.poll import DevicePollHandler
from gitlab_mcp.server.auth.handlers.register import RegistrationHandler
from gitlab_mcp.server.auth.handlers.token import TokenHandler
from gitlab_mcp.server.auth.middleware.client_auth import ClientAuthenticator
from gitlab_mcp.server.auth.provider import OAuthRegisteredClientsStore
from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.settings import OAuthConfig


def create_auth_routes(
    config: OAuthConfig,
    session_store: SessionStore,
    clients_store: OAuthRegisteredClientsStore,
    device_client: DeviceFlowClient,
    auth_code_client: AuthCodeFlowClient,
    resource_path: str = "/mcp",
) -> list[Route]:
    """
    Create the OAuth authorization server routes.

    Args:
        config: OAuth configuration
        session_store: Store for sessions, pending flows and authorization codes
        clients_store: Store for dynamically registered clients
        device_client: GitLab device flow client
        auth_code_client: GitLab authorization code flow client
        resource_path: Path of the protected MCP endpoint

    Returns:
        Starlette routes for the metadata, authorization, callback, token and
        registration endpoints
    """
    client_authenticator = ClientAuthenticator(clients_store)

    return [
        Route(
            "/.well-known/oauth-authorization-server",
            endpoint=MetadataHandler().handle,
            methods=["GET"],
        ),
        Route(
            "/.well-known/oauth-protected-resource",
            endpoint=ProtectedResourceMetadataHandler(resource_path).handle,
            methods=["GET"],
        ),
        Route(
            AUTHORIZATION_PATH,
            endpoint=AuthorizationHandler(session_store, clients_store, device_client, auth_code_client).handle,
            methods=["GET"],
        ),
        Route(
            POLL_PATH,
            endpoint=DevicePollHandler(session_store, device_client).handle,
            methods=["GET"],
        ),
        Route(
            CALLBACK_PATH,
            endpoint=CallbackHandler(session_store, auth_code_client).handle,
            methods=["GET"],
        ),
        Route(
            TOKEN_PATH,
            endpoint=TokenHandler(config, session_store, client_authenticator, auth_code_client).handle,
            methods=["POST"],
        ),
        Route(
            REGISTRATION_PATH,
            endpoint=RegistrationHandler(clients_store).handle,
            methods=["POST"],
        ),
    ]
