from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gitlab_mcp.server.auth.base_url import get_base_url
from gitlab_mcp.server.auth.json_response import PydanticJSONResponse
from gitlab_mcp.shared.auth import MCP_SCOPES, OAuthMetadata, ProtectedResourceMetadata

AUTHORIZATION_PATH = "/authorize"
TOKEN_PATH = "/token"
REGISTRATION_PATH = "/register"

CACHE_HEADERS = {"Cache-Control": "public, max-age=3600"}  # Cache for 1 hour


def build_metadata(issuer: str) -> OAuthMetadata:
    return OAuthMetadata(
        issuer=issuer,
        authorization_endpoint=f"{issuer}{AUTHORIZATION_PATH}",
        token_endpoint=f"{issuer}{TOKEN_PATH}",
        registration_endpoint=f"{issuer}{REGISTRATION_PATH}",
        scopes_supported=list(MCP_SCOPES),
        response_types_supported=["code"],
        grant_types_supported=["authorization_code", "refresh_token"],
        token_endpoint_auth_methods_supported=["none"],
        code_challenge_methods_supported=["S256"],
    )


@dataclass
class MetadataHandler:
    """RFC 8414 authorization server metadata, built from the request's base URL."""

    async def handle(self, request: Request) -> Response:
        return PydanticJSONResponse(
            content=build_metadata(get_base_url(request)),
            headers=CACHE_HEADERS,
        )


@dataclass
class ProtectedResourceMetadataHandler:
    resource_path: str = "/mcp"

    async def handle(self, request: Request) -> Response:
        base_url = get_base_url(request)
        metadata = ProtectedResourceMetadata(
            resource=f"{base_url}{self.resource_path}",
            authorization_servers=[base_url],
            scopes_supported=list(MCP_SCOPES),
        )
        return PydanticJSONResponse(content=metadata, headers=CACHE_HEADERS)


@dataclass
class HealthHandler:
    mode: Literal["oauth", "static"]

    async def handle(self, request: Request) -> Response:
        return JSONResponse(
            {
                "status": "ok",
                "mode": self.mode,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
