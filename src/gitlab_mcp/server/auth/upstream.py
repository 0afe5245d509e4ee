import logging

from gitlab_mcp.client.gitlab import GitLabOAuthClient
from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.token_utils import calculate_token_expiry, is_token_expiring_soon
from gitlab_mcp.server.auth.types import OAuthSession

logger = logging.getLogger(__name__)


async def ensure_fresh_gitlab_token(
    session: OAuthSession, session_store: SessionStore, gitlab: GitLabOAuthClient
) -> OAuthSession:
    """
    Refresh the session's GitLab token if it expires within five minutes.

    Returns the session unchanged when no refresh is needed or possible, or the
    updated session. Refreshes of one session are serialized: a caller that
    waited on another's refresh re-reads the session and reuses its result, so
    GitLab sees each refresh token once. Refresh failures propagate.
    """
    if not is_token_expiring_soon(session.gitlab_token_expiry):
        return session

    async with session_store.session_lock(session.id):
        current = await session_store.get_session(session.id)
        if current is None:
            return session
        if not is_token_expiring_soon(current.gitlab_token_expiry):
            return current
        if not current.gitlab_refresh_token:
            logger.warning(f"GitLab token for session {current.id[:8]}... is expiring and cannot be refreshed")
            return current

        logger.info(f"Refreshing GitLab token for session {current.id[:8]}...")
        tokens = await gitlab.refresh_gitlab_token(current.gitlab_refresh_token)
        updated = await session_store.update_session(
            current.id,
            gitlab_access_token=tokens.access_token,
            gitlab_refresh_token=tokens.refresh_token or current.gitlab_refresh_token,
            gitlab_token_expiry=calculate_token_expiry(tokens.expires_in),
        )
    return updated or current
