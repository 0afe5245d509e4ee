"""
Creation of sessions, authorization codes and gateway tokens once GitLab has
authorized a user.
"""

from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.settings import OAuthConfig
from gitlab_mcp.server.auth.token_utils import (
    calculate_token_expiry,
    create_jwt,
    generate_authorization_code,
    generate_random_string,
    generate_refresh_token,
    generate_session_id,
    generate_uuid,
    now_ms,
)
from gitlab_mcp.server.auth.types import AUTHORIZATION_CODE_TTL_SECONDS, AuthorizationCode, OAuthSession
from gitlab_mcp.shared.auth import MCP_SCOPES, GitLabTokenSet, GitLabUserInfo, OAuthToken


async def create_session_for_user(
    session_store: SessionStore,
    tokens: GitLabTokenSet,
    user: GitLabUserInfo,
    client_id: str,
) -> OAuthSession:
    """
    Store a new session for a GitLab-authorized user.

    The gateway tokens are unusable placeholders until the client redeems its
    authorization code at the token endpoint.
    """
    now = now_ms()
    session = OAuthSession(
        id=generate_session_id(),
        mcp_access_token=generate_random_string(64),
        mcp_refresh_token=generate_refresh_token(),
        mcp_token_expiry=now,
        gitlab_access_token=tokens.access_token,
        gitlab_refresh_token=tokens.refresh_token,
        gitlab_token_expiry=calculate_token_expiry(tokens.expires_in),
        gitlab_user_id=user.id,
        gitlab_username=user.username,
        client_id=client_id,
        scopes=list(MCP_SCOPES),
        created_at=now,
        updated_at=now,
    )
    return await session_store.create_session(session)


async def issue_authorization_code(
    session_store: SessionStore,
    session: OAuthSession,
    code_challenge: str,
    code_challenge_method: str,
    redirect_uri: str | None,
) -> AuthorizationCode:
    auth_code = AuthorizationCode(
        code=generate_authorization_code(),
        session_id=session.id,
        client_id=session.client_id,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        redirect_uri=redirect_uri,
        expires_at=calculate_token_expiry(AUTHORIZATION_CODE_TTL_SECONDS),
    )
    await session_store.store_auth_code(auth_code)
    return auth_code


async def issue_tokens(
    session_store: SessionStore,
    config: OAuthConfig,
    session: OAuthSession,
    issuer: str,
    previous_refresh_token: str,
) -> OAuthToken | None:
    """
    Mint a new access token and rotate the refresh token of a session.

    The rotation only happens while the session still holds
    ``previous_refresh_token``; returns None when another request rotated it
    first.
    """
    access_token = create_jwt(
        {
            "iss": issuer,
            "sub": str(session.gitlab_user_id),
            "aud": session.client_id,
            "sid": session.id,
            "scope": " ".join(session.scopes),
            "gitlab_user": session.gitlab_username,
            # tokens minted within the same second must still differ
            "jti": generate_uuid(),
        },
        config.session_secret,
        config.token_ttl,
    )
    refresh_token = generate_refresh_token()
    rotated = await session_store.rotate_refresh_token(
        session.id,
        previous_refresh_token,
        mcp_access_token=access_token,
        mcp_refresh_token=refresh_token,
        mcp_token_expiry=calculate_token_expiry(config.token_ttl),
    )
    if rotated is None:
        return None
    return OAuthToken(
        access_token=access_token,
        expires_in=config.token_ttl,
        refresh_token=refresh_token,
        scope=" ".join(session.scopes),
    )
