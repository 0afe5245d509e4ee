"""
Handler for OAuth 2.0 Dynamic Client Registration (RFC 7591).
"""

import logging
import secrets
import time
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ValidationError
from starlette.requests import Request
from starlette.responses import Response

from gitlab_mcp.server.auth.errors import stringify_pydantic_error
from gitlab_mcp.server.auth.json_response import PydanticJSONResponse
from gitlab_mcp.server.auth.provider import OAuthRegisteredClientsStore
from gitlab_mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata

logger = logging.getLogger(__name__)


class RegistrationErrorResponse(BaseModel):
    error: Literal["invalid_redirect_uri", "invalid_client_metadata"]
    error_description: str


@dataclass
class RegistrationHandler:
    clients_store: OAuthRegisteredClientsStore
    client_secret_expiry_seconds: int | None = None

    async def handle(self, request: Request) -> Response:
        try:
            body = await request.json()
            client_metadata = OAuthClientMetadata.model_validate(body)
        except JSONDecodeError:
            return PydanticJSONResponse(
                content=RegistrationErrorResponse(
                    error="invalid_client_metadata",
                    error_description="Request body must be JSON",
                ),
                status_code=400,
            )
        except ValidationError as validation_error:
            return PydanticJSONResponse(
                content=RegistrationErrorResponse(
                    error="invalid_client_metadata",
                    error_description=stringify_pydantic_error(validation_error),
                ),
                status_code=400,
            )

        client_id = str(uuid4())
        client_secret = None
        if client_metadata.token_endpoint_auth_method != "none":
            # cryptographically secure random 32-byte hex string
            client_secret = secrets.token_hex(32)

        client_id_issued_at = int(time.time())
        client_secret_expires_at = (
            client_id_issued_at + self.client_secret_expiry_seconds
            if client_secret is not None and self.client_secret_expiry_seconds is not None
            else None
        )

        client_info = OAuthClientInformationFull(
            client_id=client_id,
            client_id_issued_at=client_id_issued_at,
            client_secret=client_secret,
            client_secret_expires_at=client_secret_expires_at,
            **client_metadata.model_dump(),
        )
        await self.clients_store.register_client(client_info)
        logger.info(f"Registered client {client_id} ({client_metadata.client_name or 'unnamed'})")

        return PydanticJSONResponse(content=client_info, status_code=201)
