"""
Handler for the OAuth 2.0 Token endpoint.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Literal

import httpx
from pydantic import BaseModel, Field, RootModel, ValidationError
from starlette.requests import Request
from starlette.responses import Response

from gitlab_mcp.client.gitlab import GitLabOAuthClient, GitLabOAuthError
from gitlab_mcp.server.auth.base_url import get_base_url
from gitlab_mcp.server.auth.errors import (
    InvalidGrantError,
    InvalidRequestError,
    OAuthError,
    UnsupportedGrantTypeError,
    stringify_pydantic_error,
)
from gitlab_mcp.server.auth.grants import issue_tokens
from gitlab_mcp.server.auth.json_response import no_store_response
from gitlab_mcp.server.auth.middleware.client_auth import ClientAuthenticator, ClientAuthRequest
from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.settings import OAuthConfig
from gitlab_mcp.server.auth.token_utils import now_ms, verify_code_challenge
from gitlab_mcp.server.auth.upstream import ensure_fresh_gitlab_token
from gitlab_mcp.shared.auth import OAuthToken

logger = logging.getLogger(__name__)

SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")


class AuthorizationCodeRequest(ClientAuthRequest):
    # See https://datatracker.ietf.org/doc/html/rfc6749#section-4.1.3
    grant_type: Literal["authorization_code"]
    code: str = Field(..., description="The authorization code")
    redirect_uri: str | None = Field(None, description="Must be the same as redirect URI provided in /authorize")
    # See https://datatracker.ietf.org/doc/html/rfc7636#section-4.5
    code_verifier: str = Field(..., description="PKCE code verifier")


class RefreshTokenRequest(BaseModel):
    # See https://datatracker.ietf.org/doc/html/rfc6749#section-6
    grant_type: Literal["refresh_token"]
    refresh_token: str = Field(..., description="The refresh token")
    client_id: str | None = None
    client_secret: str | None = None
    scope: str | None = Field(None, description="Optional scope parameter")


class TokenRequest(RootModel):
    root: Annotated[
        AuthorizationCodeRequest | RefreshTokenRequest,
        Field(discriminator="grant_type"),
    ]


@dataclass
class TokenHandler:
    config: OAuthConfig
    session_store: SessionStore
    client_authenticator: ClientAuthenticator
    gitlab: GitLabOAuthClient

    async def handle(self, request: Request) -> Response:
        try:
            form_data = dict(await request.form())
            grant_type = form_data.get("grant_type")
            if not grant_type:
                raise InvalidRequestError("grant_type is required")
            if grant_type not in SUPPORTED_GRANT_TYPES:
                raise UnsupportedGrantTypeError(
                    f"Unsupported grant type (supported grant types are {list(SUPPORTED_GRANT_TYPES)})"
                )
            try:
                token_request = TokenRequest.model_validate(form_data).root
            except ValidationError as validation_error:
                raise InvalidRequestError(stringify_pydantic_error(validation_error))

            match token_request.grant_type:
                case "authorization_code":
                    tokens = await self._authorization_code_grant(request, token_request)
                case "refresh_token":
                    tokens = await self._refresh_token_grant(request, token_request)
        except OAuthError as e:
            return no_store_response(e.error_response(), status_code=e.status_code)

        return no_store_response(tokens)

    async def _authorization_code_grant(self, request: Request, token_request: AuthorizationCodeRequest) -> OAuthToken:
        await self.client_authenticator(token_request)

        # codes are single-use, whether or not the exchange succeeds
        auth_code = await self.session_store.consume_auth_code(token_request.code)
        if auth_code is None or auth_code.client_id != token_request.client_id:
            # if code belongs to different client, pretend it doesn't exist
            raise InvalidGrantError("Invalid authorization code")

        # see https://datatracker.ietf.org/doc/html/rfc6749#section-10.5
        if auth_code.expires_at < now_ms():
            raise InvalidGrantError("Authorization code has expired")

        # see https://datatracker.ietf.org/doc/html/rfc6749#section-10.6
        if auth_code.redirect_uri and token_request.redirect_uri != auth_code.redirect_uri:
            raise InvalidGrantError("redirect_uri didn't match the one used when creating auth code")

        # see https://datatracker.ietf.org/doc/html/rfc7636#section-4.6
        if not verify_code_challenge(
            token_request.code_verifier, auth_code.code_challenge, auth_code.code_challenge_method
        ):
            raise InvalidGrantError("incorrect code_verifier")

        session = await self.session_store.get_session(auth_code.session_id)
        if session is None:
            raise InvalidGrantError("Session not found")

        tokens = await issue_tokens(
            self.session_store, self.config, session, get_base_url(request), session.mcp_refresh_token
        )
        if tokens is None:
            raise InvalidGrantError("Invalid authorization code")
        logger.info(f"Issued tokens for session {session.id[:8]}...")
        return tokens

    async def _refresh_token_grant(self, request: Request, token_request: RefreshTokenRequest) -> OAuthToken:
        session = await self.session_store.get_session_by_refresh_token(token_request.refresh_token)
        if session is None or (token_request.client_id and token_request.client_id != session.client_id):
            # if token belongs to different client, pretend it doesn't exist
            raise InvalidGrantError("Invalid refresh token")

        await self.client_authenticator(
            ClientAuthRequest(client_id=session.client_id, client_secret=token_request.client_secret)
        )

        if now_ms() - session.created_at > self.config.refresh_token_ttl * 1000:
            await self.session_store.delete_session(session.id)
            raise InvalidGrantError("Refresh token has expired")

        try:
            session = await ensure_fresh_gitlab_token(session, self.session_store, self.gitlab)
        except (GitLabOAuthError, httpx.HTTPError) as e:
            logger.warning(f"Failed to refresh GitLab token for session {session.id[:8]}...: {e}")
            raise InvalidGrantError("Failed to refresh GitLab token")

        tokens = await issue_tokens(
            self.session_store, self.config, session, get_base_url(request), token_request.refresh_token
        )
        if tokens is None:
            # a concurrent request redeemed this refresh token first
            raise InvalidGrantError("Invalid refresh token")
        logger.info(f"Refreshed tokens for session {session.id[:8]}...")
        return tokens
