"""
Session, pending-flow and token-claim types shared by the auth server.
"""

from dataclasses import dataclass
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, RootModel, StrictInt, StrictStr

# Authorization codes issued by /oauth/callback and /oauth/poll are valid this long
AUTHORIZATION_CODE_TTL_SECONDS = 10 * 60
# Pending auth-code flows (waiting for GitLab to redirect back) are kept this long
AUTH_CODE_FLOW_TTL_SECONDS = 10 * 60


class OAuthSession(BaseModel):
    """
    A user's authenticated session: the gateway's own tokens plus the GitLab
    credentials they stand for. All timestamps are epoch milliseconds.
    """

    id: str
    mcp_access_token: str
    mcp_refresh_token: str
    mcp_token_expiry: int
    gitlab_access_token: str
    gitlab_refresh_token: str | None = None
    gitlab_token_expiry: int
    gitlab_user_id: int
    gitlab_username: str
    client_id: str
    scopes: list[str]
    created_at: int
    updated_at: int


class DeviceFlowState(BaseModel):
    kind: Literal["device"] = "device"
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_at: int
    interval: int
    client_id: str
    code_challenge: str
    code_challenge_method: str
    # the client's own state, echoed back on completion
    state: str | None = None
    redirect_uri: str | None = None


class AuthCodeFlowState(BaseModel):
    kind: Literal["auth_code"] = "auth_code"
    client_id: str
    code_challenge: str
    code_challenge_method: str
    client_state: str | None = None
    internal_state: str
    client_redirect_uri: str
    callback_uri: str
    expires_at: int


PendingFlow = Annotated[DeviceFlowState | AuthCodeFlowState, Field(discriminator="kind")]


class PendingFlowModel(RootModel[PendingFlow]):
    """Validates a stored pending flow of either kind."""


class AuthorizationCode(BaseModel):
    code: str
    session_id: str
    client_id: str
    code_challenge: str
    code_challenge_method: str
    redirect_uri: str | None = None
    expires_at: int


class MCPTokenClaims(BaseModel):
    """Claims carried by the gateway's own bearer tokens."""

    model_config = ConfigDict(extra="allow")

    iss: StrictStr
    sub: StrictStr
    aud: StrictStr
    sid: StrictStr
    scope: StrictStr
    gitlab_user: StrictStr
    iat: StrictInt
    exp: StrictInt


class DeviceFlowPollResponse(BaseModel):
    status: Literal["pending", "complete", "failed", "expired"]
    redirect_uri: str | None = None
    code: str | None = None
    state: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class TokenContext:
    """The upstream credential and identity a request acts on behalf of."""

    gitlab_token: str
    gitlab_user_id: int
    gitlab_username: str
    session_id: str
