"""
Handler for the OAuth 2.0 Authorization endpoint.

Without a ``redirect_uri`` the request starts a GitLab device flow and renders a
page showing the user code; with one it sends the browser to GitLab's own
authorization endpoint and continues at ``/oauth/callback``.
"""

import html
import json
import logging
from dataclasses import dataclass
from typing import Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response

from gitlab_mcp.client.auth_code_flow import AuthCodeFlowClient
from gitlab_mcp.client.device_flow import DeviceFlowClient
from gitlab_mcp.client.gitlab import GitLabOAuthError
from gitlab_mcp.server.auth.base_url import get_base_url
from gitlab_mcp.server.auth.errors import (
    InvalidRequestError,
    OAuthError,
    ServerError,
    UnsupportedResponseTypeError,
    stringify_pydantic_error,
)
from gitlab_mcp.server.auth.json_response import oauth_error_response
from gitlab_mcp.server.auth.provider import OAuthRegisteredClientsStore
from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.token_utils import calculate_token_expiry, generate_random_string
from gitlab_mcp.server.auth.types import AUTH_CODE_FLOW_TTL_SECONDS, AuthCodeFlowState, DeviceFlowState

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth/callback"
POLL_PATH = "/oauth/poll"


class AuthorizationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    client_id: str = Field(..., min_length=1, description="The client ID")
    redirect_uri: str | None = Field(None, description="URL to redirect to after authorization")
    response_type: Literal["code"] = Field(..., description="Must be 'code' for authorization code flow")
    code_challenge: str = Field(..., min_length=1, description="PKCE code challenge")
    code_challenge_method: Literal["S256"] = Field("S256", description="PKCE code challenge method")
    state: str | None = Field(None, description="Optional state parameter")
    scope: str | None = Field(None, description="Optional scope parameter")


async def validate_redirect_uri(
    clients_store: OAuthRegisteredClientsStore, client_id: str, redirect_uri: str
) -> None:
    """Registered clients may only use their registered redirect URIs."""
    client = await clients_store.get_client(client_id)
    if client is None:
        return
    if redirect_uri not in {str(uri) for uri in client.redirect_uris} and redirect_uri not in {
        str(uri).rstrip("/") for uri in client.redirect_uris
    }:
        raise InvalidRequestError(f"Redirect URI '{redirect_uri}' not registered for client")


@dataclass
class AuthorizationHandler:
    session_store: SessionStore
    clients_store: OAuthRegisteredClientsStore
    device_client: DeviceFlowClient
    auth_code_client: AuthCodeFlowClient

    async def handle(self, request: Request) -> Response:
        try:
            params = dict(request.query_params)
            # see https://datatracker.ietf.org/doc/html/rfc6749#section-4.1.2.1
            response_type = params.get("response_type")
            if response_type and response_type != "code":
                raise UnsupportedResponseTypeError(
                    f"Unsupported response_type '{response_type}' (only 'code' is supported)"
                )
            try:
                auth_request = AuthorizationRequest.model_validate(params)
            except ValidationError as validation_error:
                raise InvalidRequestError(stringify_pydantic_error(validation_error))

            if auth_request.redirect_uri:
                await validate_redirect_uri(self.clients_store, auth_request.client_id, auth_request.redirect_uri)
                return await self._start_auth_code_flow(request, auth_request)
            return await self._start_device_flow(request, auth_request)
        except OAuthError as e:
            return oauth_error_response(e)

    async def _start_auth_code_flow(self, request: Request, auth_request: AuthorizationRequest) -> Response:
        assert auth_request.redirect_uri is not None
        internal_state = generate_random_string(32)
        callback_uri = f"{get_base_url(request)}{CALLBACK_PATH}"
        await self.session_store.store_auth_code_flow(
            internal_state,
            AuthCodeFlowState(
                client_id=auth_request.client_id,
                code_challenge=auth_request.code_challenge,
                code_challenge_method=auth_request.code_challenge_method,
                client_state=auth_request.state,
                internal_state=internal_state,
                client_redirect_uri=auth_request.redirect_uri,
                callback_uri=callback_uri,
                expires_at=calculate_token_expiry(AUTH_CODE_FLOW_TTL_SECONDS),
            ),
        )
        logger.info(f"Starting authorization code flow for client {auth_request.client_id}")
        return RedirectResponse(
            url=self.auth_code_client.build_authorization_url(callback_uri, internal_state),
            status_code=302,
            headers={"Cache-Control": "no-store"},
        )

    async def _start_device_flow(self, request: Request, auth_request: AuthorizationRequest) -> Response:
        try:
            authorization = await self.device_client.initiate_device_flow()
        except (GitLabOAuthError, httpx.HTTPError) as e:
            logger.error(f"Failed to initiate device flow: {e}")
            raise ServerError("Failed to initiate GitLab device authorization")

        flow_state = generate_random_string(32)
        await self.session_store.store_device_flow(
            flow_state,
            DeviceFlowState(
                device_code=authorization.device_code,
                user_code=authorization.user_code,
                verification_uri=authorization.verification_uri,
                verification_uri_complete=authorization.verification_uri_complete,
                expires_at=authorization.expires_at,
                interval=authorization.interval,
                client_id=auth_request.client_id,
                code_challenge=auth_request.code_challenge,
                code_challenge_method=auth_request.code_challenge_method,
                state=auth_request.state,
                redirect_uri=auth_request.redirect_uri,
            ),
        )
        return HTMLResponse(
            render_device_flow_page(
                user_code=authorization.user_code,
                verification_uri=authorization.verification_uri_complete or authorization.verification_uri,
                poll_url=f"{POLL_PATH}?flow_state={flow_state}",
                interval=authorization.interval,
            ),
            headers={"Cache-Control": "no-store"},
        )


def render_device_flow_page(user_code: str, verification_uri: str, poll_url: str, interval: int) -> str:
    code = html.escape(user_code)
    link = html.escape(verification_uri, quote=True)
    return f"""
<!DOCTYPE html>
<html>
<head>
    <title>Authorize with GitLab</title>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Oxygen, Ubuntu, Cantarell, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            min-height: 100vh;
            margin: 0;
            padding: 20px;
            background-color: #f5f5f5;
        }}
        .card {{
            background: white;
            padding: 40px;
            border-radius: 8px;
            box-shadow: 0 2px 4px rgba(0,0,0,0.1);
            width: 100%;
            max-width: 420px;
            text-align: center;
        }}
        .user-code {{
            font-family: monospace;
            font-size: 32px;
            letter-spacing: 4px;
            background: #f8f8f8;
            padding: 15px;
            border-radius: 4px;
            margin: 20px 0;
        }}
        a.button {{
            display: inline-block;
            padding: 10px 20px;
            background: #fc6d26;
            color: white;
            border-radius: 4px;
            text-decoration: none;
        }}
        #status {{
            margin-top: 20px;
            color: #666;
        }}
    </style>
</head>
<body>
    <div class="card">
        <h1>Authorize with GitLab</h1>
        <p>Enter this code on GitLab to grant access:</p>
        <div class="user-code">{code}</div>
        <a class="button" href="{link}" target="_blank" rel="noopener">Open GitLab</a>
        <div id="status">Waiting for authorization...</div>
    </div>
    <script>
        const pollUrl = {json.dumps(poll_url)};
        const status = document.getElementById("status");
        async function poll() {{
            try {{
                const response = await fetch(pollUrl);
                const result = await response.json();
                if (result.status === "complete") {{
                    if (result.redirect_uri) {{
                        window.location.href = result.redirect_uri;
                    }} else {{
                        status.textContent = "Authorization complete. Code: " + result.code;
                    }}
                    return;
                }}
                if (result.status === "failed" || result.status === "expired") {{
                    status.textContent = "Authorization " + result.status + (result.error ? ": " + result.error : "");
                    return;
                }}
            }} catch (e) {{
                status.textContent = "Waiting for authorization (retrying)...";
            }}
            setTimeout(poll, {interval * 1000});
        }}
        setTimeout(poll, {interval * 1000});
    </script>
</body>
</html>
"""
