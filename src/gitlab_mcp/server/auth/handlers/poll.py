import logging
from dataclasses import dataclass

import httpx
from starlette.requests import Request
from starlette.responses import Response

from gitlab_mcp.client.device_flow import DeviceFlowClient
from gitlab_mcp.client.gitlab import DeviceFlowError, GitLabOAuthError
from gitlab_mcp.server.auth.grants import create_session_for_user, issue_authorization_code
from gitlab_mcp.server.auth.json_response import PydanticJSONResponse
from gitlab_mcp.server.auth.provider import construct_redirect_uri
from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.token_utils import now_ms
from gitlab_mcp.server.auth.types import DeviceFlowPollResponse

logger = logging.getLogger(__name__)


@dataclass
class DevicePollHandler:
    """
    Polled by the device-flow page. Each request polls GitLab once; on approval
    the session and an authorization code are created.
    """

    session_store: SessionStore
    device_client: DeviceFlowClient

    async def handle(self, request: Request) -> Response:
        flow_state = request.query_params.get("flow_state")
        if not flow_state:
            return self._response(DeviceFlowPollResponse(status="failed", error="Missing flow_state"), 400)

        flow = await self.session_store.get_device_flow(flow_state)
        if flow is None:
            return self._response(DeviceFlowPollResponse(status="expired", error="Unknown or expired flow"), 404)
        if flow.expires_at < now_ms():
            await self.session_store.delete_flow(flow_state)
            return self._response(DeviceFlowPollResponse(status="expired", error="Device code expired"))

        try:
            tokens = await self.device_client.poll_device_flow_once(flow.device_code)
        except DeviceFlowError as e:
            await self.session_store.delete_flow(flow_state)
            status = "expired" if e.error_code == "expired_token" else "failed"
            logger.info(f"Device flow ended: {e.error_code}")
            return self._response(DeviceFlowPollResponse(status=status, error=e.error_code))
        except (GitLabOAuthError, httpx.HTTPError) as e:
            # transient; the page polls again
            logger.warning(f"Device flow poll failed: {e}")
            return self._response(DeviceFlowPollResponse(status="pending"))

        if tokens is None:
            return self._response(DeviceFlowPollResponse(status="pending"))

        try:
            user = await self.device_client.get_gitlab_user(tokens.access_token)
        except (GitLabOAuthError, httpx.HTTPError) as e:
            logger.error(f"Failed to fetch GitLab user after device authorization: {e}")
            await self.session_store.delete_flow(flow_state)
            return self._response(DeviceFlowPollResponse(status="failed", error="Failed to fetch GitLab user"))

        session = await create_session_for_user(self.session_store, tokens, user, flow.client_id)
        auth_code = await issue_authorization_code(
            self.session_store,
            session,
            flow.code_challenge,
            flow.code_challenge_method,
            flow.redirect_uri,
        )
        await self.session_store.delete_flow(flow_state)

        redirect_uri = None
        if flow.redirect_uri:
            redirect_uri = construct_redirect_uri(flow.redirect_uri, code=auth_code.code, state=flow.state)
        return self._response(
            DeviceFlowPollResponse(
                status="complete",
                code=auth_code.code,
                state=flow.state,
                redirect_uri=redirect_uri,
            )
        )

    def _response(self, content: DeviceFlowPollResponse, status_code: int = 200) -> Response:
        return PydanticJSONResponse(content=content, status_code=status_code, headers={"Cache-Control": "no-store"})
