"""
GitLab OAuth 2.0 Device Authorization Grant (RFC 8628).

The user enters a short code on GitLab while the gateway polls the token
endpoint until the grant is approved, denied or expires.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

import anyio
from pydantic import ValidationError

from gitlab_mcp.client.gitlab import (
    DeviceFlowError,
    DeviceFlowTimeoutError,
    GitLabOAuthClient,
    GitLabOAuthError,
    UpstreamHTTPError,
)
from gitlab_mcp.shared.auth import GitLabDeviceAuthorization, GitLabTokenSet

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
# RFC 8628 §3.5: each slow_down widens the polling interval by five seconds
SLOW_DOWN_INCREMENT = 5.0

PENDING_ERRORS = frozenset({"authorization_pending", "slow_down"})


@dataclass(frozen=True)
class DevicePollOutcome:
    """Result of one poll: still waiting, asked to back off, or authorized."""

    kind: Literal["pending", "slow_down", "authorized"]
    token: GitLabTokenSet | None = None


class DeviceFlowClient(GitLabOAuthClient):
    slow_down_increment: float = SLOW_DOWN_INCREMENT

    async def initiate_device_flow(self) -> GitLabDeviceAuthorization:
        """Request a device code and user code from GitLab."""
        response = await self._post_form(
            "/oauth/authorize_device",
            {"client_id": self.config.gitlab_client_id, "scope": self.scope},
        )
        if response.status_code != 200:
            raise UpstreamHTTPError("Failed to initiate device flow", response.status_code, response.text)

        try:
            authorization = GitLabDeviceAuthorization.model_validate_json(response.content)
        except ValidationError as e:
            raise GitLabOAuthError(f"Invalid device authorization response: {e}") from e
        logger.info(f"Device flow initiated, user code {authorization.user_code}")
        return authorization

    async def _poll(self, device_code: str) -> DevicePollOutcome:
        response = await self._post_form(
            "/oauth/token",
            {
                "grant_type": DEVICE_CODE_GRANT_TYPE,
                "device_code": device_code,
                **self._client_credentials(),
            },
        )
        if response.is_success:
            try:
                token = GitLabTokenSet.model_validate_json(response.content)
            except ValidationError as e:
                raise GitLabOAuthError(f"Invalid token response from GitLab: {e}") from e
            return DevicePollOutcome("authorized", token)

        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, str):
            raise UpstreamHTTPError("Device token poll failed", response.status_code, response.text)

        if error == "authorization_pending":
            return DevicePollOutcome("pending")
        if error == "slow_down":
            return DevicePollOutcome("slow_down")
        # expired_token, access_denied, invalid_grant and anything unrecognized
        raise DeviceFlowError(error, body.get("error_description"))

    async def poll_device_flow_once(self, device_code: str) -> GitLabTokenSet | None:
        """
        Poll the token endpoint once.

        Returns:
            The token set once the user has approved, or None while the grant is
            still pending (including ``slow_down``).

        Raises:
            DeviceFlowError: for terminal outcomes (expired, denied, invalid).
            UpstreamHTTPError: when GitLab fails without an OAuth error body.
        """
        outcome = await self._poll(device_code)
        return outcome.token

    async def poll_for_token(
        self,
        device_code: str,
        on_pending: Callable[[], None] | None = None,
    ) -> GitLabTokenSet:
        """
        Poll until the user approves, a terminal error occurs or the configured
        device timeout elapses.

        Sleeps the poll interval before every attempt. Cancelling the enclosing
        cancel scope stops polling at the next checkpoint.
        """
        interval = self.config.device_poll_interval
        deadline = anyio.current_time() + self.config.device_timeout

        while anyio.current_time() < deadline:
            await anyio.sleep(interval)
            try:
                outcome = await self._poll(device_code)
            except DeviceFlowError:
                raise
            except Exception as e:
                logger.warning(f"Device flow poll failed, retrying: {e}")
                continue

            if outcome.kind == "authorized" and outcome.token is not None:
                logger.info("Device flow authorized")
                return outcome.token
            if outcome.kind == "slow_down":
                interval += self.slow_down_increment
                logger.debug(f"GitLab asked to slow down, polling every {interval}s")
            if on_pending is not None:
                on_pending()

        raise DeviceFlowTimeoutError("Device flow timed out")
