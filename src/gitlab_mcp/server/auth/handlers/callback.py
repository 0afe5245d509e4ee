import logging
from dataclasses import dataclass

import httpx
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from gitlab_mcp.client.auth_code_flow import AuthCodeFlowClient
from gitlab_mcp.client.gitlab import GitLabOAuthError
from gitlab_mcp.server.auth.errors import InvalidRequestError
from gitlab_mcp.server.auth.grants import create_session_for_user, issue_authorization_code
from gitlab_mcp.server.auth.json_response import oauth_error_response
from gitlab_mcp.server.auth.provider import construct_redirect_uri
from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.token_utils import now_ms
from gitlab_mcp.server.auth.types import AuthCodeFlowState

logger = logging.getLogger(__name__)


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=302, headers={"Cache-Control": "no-store"})


@dataclass
class CallbackHandler:
    """Where GitLab sends the browser back during the authorization code flow."""

    session_store: SessionStore
    auth_code_client: AuthCodeFlowClient

    async def handle(self, request: Request) -> Response:
        params = request.query_params
        state = params.get("state")
        flow = await self._take_flow(state) if state else None

        if error := params.get("error"):
            logger.info(f"GitLab authorization failed: {error}")
            if flow is None:
                return oauth_error_response(InvalidRequestError(f"GitLab authorization failed: {error}"))
            return _redirect(
                construct_redirect_uri(
                    flow.client_redirect_uri,
                    error=error,
                    error_description=params.get("error_description"),
                    state=flow.client_state,
                )
            )

        code = params.get("code")
        if not code or not state:
            return oauth_error_response(InvalidRequestError("Missing code or state parameter"))
        if flow is None:
            return oauth_error_response(InvalidRequestError("Invalid or expired state parameter"))

        try:
            tokens = await self.auth_code_client.exchange_code(code, flow.callback_uri)
            user = await self.auth_code_client.get_gitlab_user(tokens.access_token)
        except (GitLabOAuthError, httpx.HTTPError) as e:
            logger.error(f"Failed to complete GitLab authorization: {e}")
            return _redirect(
                construct_redirect_uri(
                    flow.client_redirect_uri,
                    error="server_error",
                    error_description="Failed to complete GitLab authorization",
                    state=flow.client_state,
                )
            )

        session = await create_session_for_user(self.session_store, tokens, user, flow.client_id)
        auth_code = await issue_authorization_code(
            self.session_store,
            session,
            flow.code_challenge,
            flow.code_challenge_method,
            flow.client_redirect_uri,
        )
        return _redirect(construct_redirect_uri(flow.client_redirect_uri, code=auth_code.code, state=flow.client_state))

    async def _take_flow(self, state: str) -> AuthCodeFlowState | None:
        """Look up and remove the pending flow; a state is usable once."""
        flow = await self.session_store.consume_auth_code_flow(state)
        if flow is None or flow.expires_at < now_ms():
            return None
        return flow
