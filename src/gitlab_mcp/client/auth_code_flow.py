"""
GitLab OAuth 2.0 Authorization Code Grant.

The gateway sends the user's browser to GitLab and exchanges the code GitLab
returns to ``/oauth/callback``. State generation and checking belong to the
callback handler, not to this client.
"""

from gitlab_mcp.client.gitlab import GitLabOAuthClient
from gitlab_mcp.shared.auth import GitLabTokenSet


class AuthCodeFlowClient(GitLabOAuthClient):
    def build_authorization_url(self, redirect_uri: str, state: str) -> str:
        return self.build_gitlab_auth_url(redirect_uri, state)

    async def exchange_code(self, code: str, redirect_uri: str) -> GitLabTokenSet:
        return await self.exchange_gitlab_auth_code(code, redirect_uri)

    async def refresh(self, refresh_token: str) -> GitLabTokenSet:
        return await self.refresh_gitlab_token(refresh_token)
