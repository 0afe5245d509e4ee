from typing import Any, Literal

from pydantic import AnyHttpUrl, AnyUrl, BaseModel, ConfigDict, Field, field_validator, model_validator

from gitlab_mcp.server.auth.token_utils import calculate_token_expiry

MCP_SCOPES = ["mcp:tools", "mcp:resources"]


class OAuthToken(BaseModel):
    """
    See https://datatracker.ietf.org/doc/html/rfc6749#section-5.1
    """

    access_token: str
    token_type: Literal["Bearer"] = "Bearer"
    expires_in: int | None = None
    scope: str | None = None
    refresh_token: str | None = None


class OAuthClientMetadata(BaseModel):
    """
    RFC 7591 OAuth 2.0 Dynamic Client Registration metadata.
    See https://datatracker.ietf.org/doc/html/rfc7591#section-2
    for the full specification.
    """

    # custom schemes are allowed so native clients can register
    redirect_uris: list[AnyUrl] = Field(..., min_length=1)
    # token_endpoint_auth_method: this implementation only supports none &
    # client_secret_post
    token_endpoint_auth_method: Literal["none", "client_secret_post"] = "none"
    grant_types: list[Literal["authorization_code", "refresh_token"]] = [
        "authorization_code",
        "refresh_token",
    ]
    # this implementation only supports code; ie: it does not support implicit grants
    response_types: list[Literal["code"]] = ["code"]
    scope: str | None = None

    # stored and echoed back, otherwise unused
    client_name: str | None = None
    client_uri: AnyHttpUrl | None = None
    logo_uri: AnyHttpUrl | None = None
    contacts: list[str] | None = None
    tos_uri: AnyHttpUrl | None = None
    policy_uri: AnyHttpUrl | None = None
    software_id: str | None = None
    software_version: str | None = None


class OAuthClientInformationFull(OAuthClientMetadata):
    """
    RFC 7591 OAuth 2.0 Dynamic Client Registration full response
    (client information plus metadata).
    """

    client_id: str
    client_secret: str | None = None
    client_id_issued_at: int | None = None
    client_secret_expires_at: int | None = None


class OAuthMetadata(BaseModel):
    """
    RFC 8414 OAuth 2.0 Authorization Server Metadata.
    See https://datatracker.ietf.org/doc/html/rfc8414#section-2
    """

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[Literal["code"]] = ["code"]
    grant_types_supported: list[Literal["authorization_code", "refresh_token"]] | None = None
    token_endpoint_auth_methods_supported: list[Literal["none", "client_secret_post"]] | None = None
    service_documentation: str | None = None
    code_challenge_methods_supported: list[Literal["S256"]] | None = None


class ProtectedResourceMetadata(BaseModel):
    """
    RFC 9728 OAuth 2.0 Protected Resource Metadata.
    See https://datatracker.ietf.org/doc/html/rfc9728#section-2
    """

    resource: str
    authorization_servers: list[str] = Field(..., min_length=1)
    scopes_supported: list[str] | None = None
    bearer_methods_supported: list[str] | None = Field(default=["header"])
    resource_documentation: str | None = None


class GitLabDeviceAuthorization(BaseModel):
    """Response of GitLab's device authorization endpoint (RFC 8628 §3.2)."""

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_in: int
    interval: int = 5
    # epoch milliseconds, derived from expires_in when the response arrives
    expires_at: int = 0

    @model_validator(mode="before")
    @classmethod
    def _compute_expires_at(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("expires_at") and "expires_in" in data:
            data = {**data, "expires_at": calculate_token_expiry(int(data["expires_in"]))}
        return data


class GitLabTokenSet(BaseModel):
    """Token set returned by GitLab's /oauth/token endpoint."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    # GitLab access tokens live two hours unless the instance says otherwise
    expires_in: int = 7200
    created_at: int | None = None
    scope: str | None = None

    @field_validator("expires_in", mode="before")
    @classmethod
    def _default_expires_in(cls, value: Any) -> Any:
        return 7200 if value is None else value


class GitLabUserInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    username: str
    name: str | None = None
    email: str | None = None
