"""
Token minting and verification for the gateway's own bearer tokens, PKCE helpers
and random identifier generators.

Expiry helpers work in epoch milliseconds, matching the timestamps stored on
sessions; JWT ``iat``/``exp`` claims are epoch seconds.
"""

import base64
import hashlib
import hmac
import logging
import math
import secrets
import time
import uuid
from typing import Any

import jwt
from pydantic import ValidationError

from gitlab_mcp.server.auth.types import MCPTokenClaims

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
DEFAULT_EXPIRY_BUFFER_MS = 5 * 60 * 1000


def create_jwt(payload: dict[str, Any], secret: str, expires_in: int) -> str:
    """
    Sign a compact HS256 token.

    Args:
        payload: Claims to embed; copied verbatim.
        secret: Shared signing secret.
        expires_in: Lifetime in seconds.

    Returns:
        The encoded token; ``iat`` is now and ``exp`` is now + ``expires_in``.
    """
    now = int(time.time())
    claims = {**payload, "iat": now, "exp": now + expires_in}
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def verify_jwt(token: str, secret: str) -> dict[str, Any] | None:
    """
    Verify signature and expiry of a token.

    Returns the decoded payload, or None when the token is malformed, signed with
    another secret or expired. Never raises.
    """
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            # audience and issuer are checked by callers that care about them
            options={"verify_aud": False, "verify_iss": False, "verify_sub": False},
        )
    except jwt.ExpiredSignatureError:
        logger.debug("JWT has expired")
        return None
    except jwt.PyJWTError as e:
        logger.debug(f"JWT verification failed: {e}")
        return None


def verify_mcp_token(token: str, secret: str) -> MCPTokenClaims | None:
    """Verify a token and require every claim a gateway access token carries."""
    payload = verify_jwt(token, secret)
    if payload is None:
        return None
    try:
        return MCPTokenClaims.model_validate(payload)
    except ValidationError:
        logger.debug("Token is missing required MCP claims")
        return None


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def generate_code_verifier() -> str:
    """PKCE code verifier: base64url of 32 random bytes (43 characters)."""
    return _base64url(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    return _base64url(hashlib.sha256(verifier.encode()).digest())


def verify_code_challenge(verifier: str, challenge: str, method: str = "S256") -> bool:
    # "plain" is rejected
    if method != "S256":
        return False
    return hmac.compare_digest(generate_code_challenge(verifier).encode(), challenge.encode())


def generate_random_string(length: int = 32) -> str:
    """URL-safe random string of exactly ``length`` characters."""
    return secrets.token_urlsafe(math.ceil(length * 3 / 4) + 1)[:length]


def generate_uuid() -> str:
    return str(uuid.uuid4())


def generate_session_id() -> str:
    return generate_uuid()


def generate_authorization_code() -> str:
    return generate_random_string(32)


def generate_refresh_token() -> str:
    return generate_random_string(64)


def now_ms() -> int:
    return int(time.time() * 1000)


def calculate_token_expiry(expires_in: int) -> int:
    """Absolute expiry in epoch milliseconds for a lifetime given in seconds."""
    return now_ms() + expires_in * 1000


def is_token_expiring_soon(expiry: int, buffer_ms: int = DEFAULT_EXPIRY_BUFFER_MS) -> bool:
    """True when ``expiry`` (epoch ms) falls within ``buffer_ms`` from now."""
    return now_ms() + buffer_ms >= expiry
