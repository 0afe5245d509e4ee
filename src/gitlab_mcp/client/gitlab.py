"""
HTTP client for GitLab's OAuth endpoints and user API.

Shared by the device-flow and authorization-code-flow clients.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from gitlab_mcp.server.auth.settings import OAuthConfig
from gitlab_mcp.shared.auth import GitLabTokenSet, GitLabUserInfo

logger = logging.getLogger(__name__)


class GitLabOAuthError(Exception):
    """Base exception for GitLab OAuth errors."""

    pass


class UpstreamHTTPError(GitLabOAuthError):
    """GitLab answered with a non-success status."""

    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(f"{message}: {status_code} {body}".rstrip())
        self.status_code = status_code
        self.body = body


class DeviceFlowError(GitLabOAuthError):
    """Terminal device-flow outcome; polling must stop."""

    def __init__(self, error_code: str, description: str | None = None):
        message = f"Device flow failed: {error_code}"
        if description:
            message = f"{message} ({description})"
        super().__init__(message)
        self.error_code = error_code
        self.description = description


class DeviceFlowTimeoutError(GitLabOAuthError):
    """The device flow was not completed before the configured timeout."""

    pass


class GitLabOAuthClient:
    """
    Thin async wrapper around GitLab's OAuth endpoints.

    An ``httpx.AsyncClient`` may be injected and is then shared by every call;
    otherwise a short-lived client is opened per request.
    """

    def __init__(self, config: OAuthConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._http_client = http_client

    @property
    def base_url(self) -> str:
        return self.config.gitlab_url

    @property
    def scope(self) -> str:
        """Configured scopes in the space-separated form OAuth expects."""
        return " ".join(self.config.scope_list)

    @asynccontextmanager
    async def _client(self) -> AsyncGenerator[httpx.AsyncClient, None]:
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                yield client

    def _client_credentials(self) -> dict[str, str]:
        data = {"client_id": self.config.gitlab_client_id}
        if self.config.gitlab_client_secret:
            data["client_secret"] = self.config.gitlab_client_secret
        return data

    async def _post_form(self, path: str, data: dict[str, str]) -> httpx.Response:
        async with self._client() as client:
            return await client.post(
                f"{self.base_url}{path}",
                data=data,
                headers={"Accept": "application/json"},
            )

    async def _token_request(self, data: dict[str, str], action: str) -> GitLabTokenSet:
        response = await self._post_form("/oauth/token", {**data, **self._client_credentials()})
        if response.status_code != 200:
            raise UpstreamHTTPError(f"Failed to {action}", response.status_code, response.text)
        try:
            return GitLabTokenSet.model_validate_json(response.content)
        except ValidationError as e:
            raise GitLabOAuthError(f"Invalid token response from GitLab: {e}") from e

    async def refresh_gitlab_token(self, refresh_token: str) -> GitLabTokenSet:
        """Exchange a GitLab refresh token for a new token set."""
        logger.debug("Refreshing GitLab access token")
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "refresh GitLab token",
        )

    async def exchange_gitlab_auth_code(self, code: str, redirect_uri: str) -> GitLabTokenSet:
        return await self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            "exchange authorization code",
        )

    async def get_gitlab_user(self, access_token: str) -> GitLabUserInfo:
        async with self._client() as client:
            response = await client.get(
                f"{self.base_url}/api/v4/user",
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        if response.status_code != 200:
            raise UpstreamHTTPError("Failed to get GitLab user info", response.status_code, response.text)
        return GitLabUserInfo.model_validate_json(response.content)

    async def validate_gitlab_token(self, access_token: str) -> bool:
        """Cheap liveness check of a GitLab token; any failure counts as invalid."""
        try:
            async with self._client() as client:
                response = await client.head(
                    f"{self.base_url}/api/v4/user",
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            return response.is_success
        except Exception as e:
            logger.debug(f"GitLab token validation failed: {e}")
            return False

    def build_gitlab_auth_url(self, redirect_uri: str, state: str) -> str:
        params: dict[str, Any] = {
            "client_id": self.config.gitlab_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
            "scope": self.scope,
        }
        return f"{self.base_url}/oauth/authorize?{urlencode(params)}"
