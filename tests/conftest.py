import json
from urllib.parse import parse_qs

import httpx
import pytest

from gitlab_mcp.server.auth.settings import OAuthConfig
from gitlab_mcp.server.auth.token_utils import generate_session_id, now_ms
from gitlab_mcp.server.auth.types import OAuthSession

GITLAB_URL = "https://gitlab.example.com"
SESSION_SECRET = "test-session-secret-that-is-long-enough-for-hs256"


class FakeGitLab:
    """
    Stand-in for GitLab's OAuth endpoints and user API, served through
    ``httpx.MockTransport``.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        # queued (status, body) answers for device-code polls; pending when empty
        self.device_poll_responses: list[tuple[int, object]] = []
        self.valid_tokens = {"gl-access", "gl-access-2"}
        self.refresh_count = 0
        self.fail_device_authorization = False

    def form(self, request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/authorize_device" and request.method == "POST":
            if self.fail_device_authorization:
                return httpx.Response(500, text="internal error")
            return httpx.Response(
                200,
                json={
                    "device_code": "dev-code",
                    "user_code": "ABCD-1234",
                    "verification_uri": f"{GITLAB_URL}/oauth/device",
                    "verification_uri_complete": f"{GITLAB_URL}/oauth/device?user_code=ABCD-1234",
                    "expires_in": 300,
                    "interval": 5,
                },
            )

        if path == "/oauth/token" and request.method == "POST":
            return self._token(self.form(request))

        if path == "/api/v4/user":
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            if token not in self.valid_tokens:
                return httpx.Response(401, json={"message": "401 Unauthorized"})
            if request.method == "HEAD":
                return httpx.Response(200)
            return httpx.Response(
                200,
                json={"id": 42, "username": "alice", "name": "Alice", "email": "alice@example.com"},
            )

        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, form: dict[str, str]) -> httpx.Response:
        grant_type = form.get("grant_type")
        if grant_type == "urn:ietf:params:oauth:grant-type:device_code":
            if self.device_poll_responses:
                status, body = self.device_poll_responses.pop(0)
                if isinstance(body, str):
                    return httpx.Response(status, text=body)
                return httpx.Response(status, content=json.dumps(body), headers={"content-type": "application/json"})
            return httpx.Response(400, json={"error": "authorization_pending"})

        if grant_type == "authorization_code":
            if form.get("code") != "gitlab-code":
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=token_set("gl-access", "gl-refresh"))

        if grant_type == "refresh_token":
            self.refresh_count += 1
            return httpx.Response(200, json=token_set("gl-access-2", "gl-refresh-2"))

        return httpx.Response(400, json={"error": "unsupported_grant_type"})


def token_set(access_token: str, refresh_token: str) -> dict[str, object]:
    return {
        "access_token": access_token,
        "token_type": "Bearer",
        "refresh_token": refresh_token,
        "expires_in": 7200,
        "created_at": 1700000000,
        "scope": "api read_user",
    }


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_gitlab():
    return FakeGitLab()


@pytest.fixture
async def gitlab_http_client(fake_gitlab: FakeGitLab):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_gitlab.handler)) as client:
        yield client


@pytest.fixture
def oauth_config():
    return OAuthConfig(
        session_secret=SESSION_SECRET,
        gitlab_base_url=GITLAB_URL,
        gitlab_client_id="gitlab-app-id",
        gitlab_client_secret=None,
        gitlab_scopes="api,read_user",
        device_poll_interval=0.01,
        device_timeout=2,
        storage_type="memory",
    )


@pytest.fixture
def session_factory():
    """Build OAuthSession objects with distinct tokens."""
    counter = iter(range(1, 1_000_000))

    def make(**overrides) -> OAuthSession:
        n = next(counter)
        now = now_ms()
        values = {
            "id": generate_session_id(),
            "mcp_access_token": f"mcp-access-{n}",
            "mcp_refresh_token": f"mcp-refresh-{n}",
            "mcp_token_expiry": now + 3_600_000,
            "gitlab_access_token": "gl-access",
            "gitlab_refresh_token": "gl-refresh",
            "gitlab_token_expiry": now + 7_200_000,
            "gitlab_user_id": 42,
            "gitlab_username": "alice",
            "client_id": "client-1",
            "scopes": ["mcp:tools", "mcp:resources"],
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        return OAuthSession(**values)

    return make
