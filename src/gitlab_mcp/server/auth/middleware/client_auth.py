import hmac
import time

from pydantic import BaseModel

from gitlab_mcp.server.auth.errors import InvalidClientError
from gitlab_mcp.server.auth.provider import OAuthRegisteredClientsStore
from gitlab_mcp.shared.auth import OAuthClientInformationFull


class ClientAuthRequest(BaseModel):
    client_id: str
    client_secret: str | None = None


class ClientAuthenticator:
    """
    Authenticates the client named in a token request.

    Clients that never registered (for example a pre-configured public client id)
    are accepted as public clients; registered confidential clients must present
    their secret.
    """

    def __init__(self, clients_store: OAuthRegisteredClientsStore):
        self.clients_store = clients_store

    async def __call__(self, request: ClientAuthRequest) -> OAuthClientInformationFull | None:
        client = await self.clients_store.get_client(request.client_id)
        if client is None:
            return None

        # If client from the store expects a secret, validate that the request provides that secret
        if client.client_secret:
            if not request.client_secret:
                raise InvalidClientError("Client secret is required")

            if not hmac.compare_digest(client.client_secret.encode(), request.client_secret.encode()):
                raise InvalidClientError("Invalid client_secret")

            if client.client_secret_expires_at and client.client_secret_expires_at < int(time.time()):
                raise InvalidClientError("Client secret has expired")

        return client
