"""
End-to-end tests of the gateway's OAuth endpoints and protected MCP mount,
with GitLab replaced by a mock transport.
"""

import re
from urllib.parse import parse_qs, urlparse

import anyio
import httpx
import pytest
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from gitlab_mcp.server.app import create_app
from gitlab_mcp.server.auth.middleware.auth_context import get_token_context
from gitlab_mcp.server.auth.provider import InMemoryClientsStore
from gitlab_mcp.server.auth.session_store import SessionStore
from gitlab_mcp.server.auth.settings import OAuthMode, StaticTokenMode
from gitlab_mcp.server.auth.storage import MemoryStorageBackend
from gitlab_mcp.server.auth.token_utils import (
    create_jwt,
    generate_code_challenge,
    generate_code_verifier,
    now_ms,
)

BASE_URL = "https://gateway.example.com"
CLIENT_ID = "client-1"
REDIRECT_URI = "https://client.example.com/callback"


async def mcp_echo(scope: Scope, receive: Receive, send: Send) -> None:
    """Stands in for the MCP transport: reports the token context it runs in."""
    request = Request(scope, receive)
    context = get_token_context()
    headers = {}
    if "mcp-session-id" not in request.headers and request.method != "DELETE":
        headers["mcp-session-id"] = "transport-new"
    response = JSONResponse(
        {
            "username": context.gitlab_username if context else None,
            "gitlab_token": context.gitlab_token if context else None,
            "session_id": context.session_id if context else None,
        },
        headers=headers,
    )
    await response(scope, receive, send)


class BlockingMiddleware:
    """Rejects requests carrying ``x-block``, like a rate limiter would."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and any(name == b"x-block" for name, _ in scope["headers"]):
            await PlainTextResponse("Too Many Requests", status_code=429)(scope, receive, send)
            return
        await self.app(scope, receive, send)


@pytest.fixture
async def session_store():
    async with SessionStore(MemoryStorageBackend()) as store:
        yield store


@pytest.fixture
def clients_store():
    return InMemoryClientsStore()


@pytest.fixture
def app(oauth_config, session_store, clients_store, gitlab_http_client):
    return create_app(
        OAuthMode(config=oauth_config),
        mcp_app=mcp_echo,
        session_store=session_store,
        clients_store=clients_store,
        http_client=gitlab_http_client,
        middleware=[Middleware(BlockingMiddleware)],
    )


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE_URL) as client:
        yield client


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


async def authorize_via_gitlab(
    client: httpx.AsyncClient,
    code_verifier: str,
    client_id: str = CLIENT_ID,
    state: str = "client-state",
) -> str:
    """Run /authorize and /oauth/callback; returns the gateway's authorization code."""
    response = await client.get(
        "/authorize",
        params={
            "client_id": client_id,
            "redirect_uri": REDIRECT_URI,
            "response_type": "code",
            "code_challenge": generate_code_challenge(code_verifier),
            "code_challenge_method": "S256",
            "state": state,
        },
    )
    assert response.status_code == 302
    internal_state = query_of(response.headers["location"])["state"]

    response = await client.get("/oauth/callback", params={"code": "gitlab-code", "state": internal_state})
    assert response.status_code == 302
    redirect = response.headers["location"]
    assert redirect.startswith(REDIRECT_URI)
    params = query_of(redirect)
    assert params["state"] == state
    return params["code"]


async def exchange_code(
    client: httpx.AsyncClient,
    code: str,
    code_verifier: str,
    redirect_uri: str | None = REDIRECT_URI,
    **extra: str,
) -> httpx.Response:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": CLIENT_ID,
        "code_verifier": code_verifier,
        **extra,
    }
    if redirect_uri:
        data["redirect_uri"] = redirect_uri
    return await client.post("/token", data=data)


async def login(client: httpx.AsyncClient) -> dict[str, str]:
    verifier = generate_code_verifier()
    code = await authorize_via_gitlab(client, verifier)
    response = await exchange_code(client, code, verifier)
    assert response.status_code == 200
    return response.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestMetadata:
    @pytest.mark.anyio
    async def test_authorization_server_metadata(self, client):
        response = await client.get("/.well-known/oauth-authorization-server")

        assert response.status_code == 200
        assert response.headers["cache-control"] == "public, max-age=3600"
        metadata = response.json()
        assert metadata["issuer"] == BASE_URL
        assert metadata["authorization_endpoint"] == f"{BASE_URL}/authorize"
        assert metadata["token_endpoint"] == f"{BASE_URL}/token"
        assert metadata["registration_endpoint"] == f"{BASE_URL}/register"
        assert metadata["response_types_supported"] == ["code"]
        assert metadata["grant_types_supported"] == ["authorization_code", "refresh_token"]
        assert metadata["code_challenge_methods_supported"] == ["S256"]
        assert metadata["token_endpoint_auth_methods_supported"] == ["none"]
        assert metadata["scopes_supported"] == ["mcp:tools", "mcp:resources"]

    @pytest.mark.anyio
    async def test_metadata_behind_proxy(self, client):
        response = await client.get(
            "/.well-known/oauth-authorization-server",
            headers={"X-Forwarded-Proto": "https", "X-Forwarded-Host": "mcp.example.org"},
        )

        assert response.json()["issuer"] == "https://mcp.example.org"
        assert response.json()["token_endpoint"] == "https://mcp.example.org/token"

    @pytest.mark.anyio
    async def test_protected_resource_metadata(self, client):
        response = await client.get("/.well-known/oauth-protected-resource")

        assert response.status_code == 200
        assert response.json() == {
            "resource": f"{BASE_URL}/mcp",
            "authorization_servers": [BASE_URL],
            "scopes_supported": ["mcp:tools", "mcp:resources"],
            "bearer_methods_supported": ["header"],
        }

    @pytest.mark.anyio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["mode"] == "oauth"
        assert "timestamp" in body


class TestRegistration:
    @pytest.mark.anyio
    async def test_register_public_client(self, client, clients_store):
        response = await client.post(
            "/register",
            json={"redirect_uris": [REDIRECT_URI], "client_name": "Test Client"},
        )

        assert response.status_code == 201
        info = response.json()
        assert info["client_name"] == "Test Client"
        assert info["redirect_uris"] == [REDIRECT_URI]
        assert "client_secret" not in info
        assert await clients_store.get_client(info["client_id"]) is not None

    @pytest.mark.anyio
    async def test_register_confidential_client(self, client):
        response = await client.post(
            "/register",
            json={"redirect_uris": [REDIRECT_URI], "token_endpoint_auth_method": "client_secret_post"},
        )

        assert response.status_code == 201
        assert len(response.json()["client_secret"]) == 64

    @pytest.mark.anyio
    async def test_register_invalid_metadata(self, client):
        response = await client.post("/register", json={"redirect_uris": []})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client_metadata"

    @pytest.mark.anyio
    async def test_register_non_json_body(self, client):
        response = await client.post("/register", content=b"not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client_metadata"


class TestAuthorize:
    @pytest.mark.anyio
    async def test_missing_parameters(self, client):
        response = await client.get("/authorize", params={"client_id": CLIENT_ID, "response_type": "code"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert "code_challenge" in response.json()["error_description"]

    @pytest.mark.anyio
    async def test_unsupported_response_type(self, client):
        response = await client.get(
            "/authorize",
            params={"client_id": CLIENT_ID, "response_type": "token", "code_challenge": "challenge"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_response_type"

    @pytest.mark.anyio
    async def test_missing_response_type(self, client):
        response = await client.get("/authorize", params={"client_id": CLIENT_ID, "code_challenge": "challenge"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.anyio
    async def test_plain_challenge_method_is_rejected(self, client):
        response = await client.get(
            "/authorize",
            params={
                "client_id": CLIENT_ID,
                "response_type": "code",
                "code_challenge": "abc",
                "code_challenge_method": "plain",
            },
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.anyio
    async def test_redirects_to_gitlab(self, client, session_store):
        response = await client.get(
            "/authorize",
            params={
                "client_id": CLIENT_ID,
                "redirect_uri": REDIRECT_URI,
                "response_type": "code",
                "code_challenge": "challenge",
                "state": "xyz",
            },
        )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://gitlab.example.com/oauth/authorize?")
        params = query_of(location)
        assert params["client_id"] == "gitlab-app-id"
        assert params["redirect_uri"] == f"{BASE_URL}/oauth/callback"
        assert params["response_type"] == "code"

        flow = await session_store.get_auth_code_flow(params["state"])
        assert flow is not None
        assert flow.client_state == "xyz"
        assert flow.client_redirect_uri == REDIRECT_URI

    @pytest.mark.anyio
    async def test_unregistered_redirect_uri_for_registered_client(self, client):
        registration = await client.post("/register", json={"redirect_uris": [REDIRECT_URI]})
        client_id = registration.json()["client_id"]

        response = await client.get(
            "/authorize",
            params={
                "client_id": client_id,
                "redirect_uri": "https://evil.example.com/callback",
                "response_type": "code",
                "code_challenge": "challenge",
            },
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


class TestAuthorizationCodeFlow:
    @pytest.mark.anyio
    async def test_full_flow(self, client, fake_gitlab):
        tokens = await login(client)

        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["scope"] == "mcp:tools mcp:resources"
        assert tokens["refresh_token"]

        (exchange,) = fake_gitlab.requests_to("/oauth/token")
        assert fake_gitlab.form(exchange)["redirect_uri"] == f"{BASE_URL}/oauth/callback"

        response = await client.get("/mcp/", headers=bearer(tokens["access_token"]))

        assert response.status_code == 200
        assert response.json()["username"] == "alice"
        assert response.json()["gitlab_token"] == "gl-access"

    @pytest.mark.anyio
    async def test_token_response_is_not_cached(self, client):
        verifier = generate_code_verifier()
        code = await authorize_via_gitlab(client, verifier)

        response = await exchange_code(client, code, verifier)

        assert response.headers["cache-control"] == "no-store"
        assert response.headers["pragma"] == "no-cache"

    @pytest.mark.anyio
    async def test_wrong_code_verifier(self, client):
        verifier = generate_code_verifier()
        code = await authorize_via_gitlab(client, verifier)

        response = await exchange_code(client, code, generate_code_verifier())

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

        # the failed attempt used up the code
        response = await exchange_code(client, code, verifier)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    @pytest.mark.anyio
    async def test_code_cannot_be_reused(self, client):
        verifier = generate_code_verifier()
        code = await authorize_via_gitlab(client, verifier)

        assert (await exchange_code(client, code, verifier)).status_code == 200
        response = await exchange_code(client, code, verifier)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    @pytest.mark.anyio
    async def test_redirect_uri_must_match(self, client):
        verifier = generate_code_verifier()
        code = await authorize_via_gitlab(client, verifier)

        response = await exchange_code(client, code, verifier, redirect_uri="https://client.example.com/other")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    @pytest.mark.anyio
    async def test_code_bound_to_client(self, client):
        verifier = generate_code_verifier()
        code = await authorize_via_gitlab(client, verifier, client_id="another-client")

        response = await exchange_code(client, code, verifier)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    @pytest.mark.anyio
    async def test_confidential_client_requires_secret(self, client):
        registration = await client.post(
            "/register",
            json={"redirect_uris": [REDIRECT_URI], "token_endpoint_auth_method": "client_secret_post"},
        )
        client_info = registration.json()
        verifier = generate_code_verifier()
        code = await authorize_via_gitlab(client, verifier, client_id=client_info["client_id"])
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_info["client_id"],
            "code_verifier": verifier,
            "redirect_uri": REDIRECT_URI,
        }

        response = await client.post("/token", data=data)
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

        response = await client.post("/token", data={**data, "client_secret": client_info["client_secret"]})
        assert response.status_code == 200

    @pytest.mark.anyio
    async def test_callback_error_is_relayed_to_client(self, client):
        response = await client.get(
            "/authorize",
            params={
                "client_id": CLIENT_ID,
                "redirect_uri": REDIRECT_URI,
                "response_type": "code",
                "code_challenge": "challenge",
                "state": "xyz",
            },
        )
        internal_state = query_of(response.headers["location"])["state"]

        response = await client.get(
            "/oauth/callback",
            params={"error": "access_denied", "error_description": "User denied", "state": internal_state},
        )

        assert response.status_code == 302
        params = query_of(response.headers["location"])
        assert params == {"error": "access_denied", "error_description": "User denied", "state": "xyz"}

    @pytest.mark.anyio
    async def test_callback_without_state(self, client):
        response = await client.get("/oauth/callback", params={"code": "gitlab-code"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.anyio
    async def test_callback_with_unknown_state(self, client):
        response = await client.get("/oauth/callback", params={"code": "gitlab-code", "state": "forged"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.anyio
    async def test_callback_state_is_single_use(self, client):
        response = await client.get(
            "/authorize",
            params={
                "client_id": CLIENT_ID,
                "redirect_uri": REDIRECT_URI,
                "response_type": "code",
                "code_challenge": "challenge",
            },
        )
        internal_state = query_of(response.headers["location"])["state"]

        first = await client.get("/oauth/callback", params={"code": "gitlab-code", "state": internal_state})
        second = await client.get("/oauth/callback", params={"code": "gitlab-code", "state": internal_state})

        assert first.status_code == 302
        assert second.status_code == 400

    @pytest.mark.anyio
    async def test_concurrent_callbacks_use_state_once(self, client, session_store):
        response = await client.get(
            "/authorize",
            params={
                "client_id": CLIENT_ID,
                "redirect_uri": REDIRECT_URI,
                "response_type": "code",
                "code_challenge": "challenge",
            },
        )
        internal_state = query_of(response.headers["location"])["state"]
        responses: list[httpx.Response] = []

        async def callback():
            responses.append(
                await client.get("/oauth/callback", params={"code": "gitlab-code", "state": internal_state})
            )

        async with anyio.create_task_group() as tg:
            for _ in range(3):
                tg.start_soon(callback)

        assert sorted(r.status_code for r in responses) == [302, 400, 400]
        assert len(await session_store.list_sessions()) == 1

    @pytest.mark.anyio
    async def test_failed_gitlab_exchange(self, client):
        response = await client.get(
            "/authorize",
            params={
                "client_id": CLIENT_ID,
                "redirect_uri": REDIRECT_URI,
                "response_type": "code",
                "code_challenge": "challenge",
                "state": "xyz",
            },
        )
        internal_state = query_of(response.headers["location"])["state"]

        response = await client.get("/oauth/callback", params={"code": "bogus", "state": internal_state})

        assert response.status_code == 302
        params = query_of(response.headers["location"])
        assert params["error"] == "server_error"
        assert params["state"] == "xyz"


class TestTokenEndpoint:
    @pytest.mark.anyio
    async def test_missing_grant_type(self, client):
        response = await client.post("/token", data={"code": "x"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.anyio
    async def test_unsupported_grant_type(self, client):
        response = await client.post("/token", data={"grant_type": "password", "username": "u"})

        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    @pytest.mark.anyio
    async def test_unknown_code(self, client):
        response = await exchange_code(client, "does-not-exist", generate_code_verifier())

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    @pytest.mark.anyio
    async def test_refresh_rotates_tokens(self, client):
        tokens = await login(client)

        response = await client.post(
            "/token",
            data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"], "client_id": CLIENT_ID},
        )

        assert response.status_code == 200
        refreshed = response.json()
        assert refreshed["access_token"] != tokens["access_token"]
        assert refreshed["refresh_token"] != tokens["refresh_token"]

        # the previous pair is superseded
        assert (await client.get("/mcp/", headers=bearer(tokens["access_token"]))).status_code == 401
        response = await client.post(
            "/token", data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

        assert (await client.get("/mcp/", headers=bearer(refreshed["access_token"]))).status_code == 200

    @pytest.mark.anyio
    async def test_refresh_with_other_client_id(self, client):
        tokens = await login(client)

        response = await client.post(
            "/token",
            data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"], "client_id": "intruder"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    @pytest.mark.anyio
    async def test_refresh_renews_expiring_gitlab_token(self, client, session_store, fake_gitlab):
        tokens = await login(client)
        session = (await session_store.list_sessions())[0]
        await session_store.update_session(session.id, gitlab_token_expiry=now_ms() + 1_000)

        response = await client.post(
            "/token", data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]}
        )

        assert response.status_code == 200
        assert fake_gitlab.refresh_count == 1
        assert (await session_store.get_session(session.id)).gitlab_access_token == "gl-access-2"

    @pytest.mark.anyio
    async def test_concurrent_refreshes_redeem_token_once(self, client, session_store, fake_gitlab):
        tokens = await login(client)
        session = (await session_store.list_sessions())[0]
        await session_store.update_session(session.id, gitlab_token_expiry=now_ms() + 1_000)
        responses: list[httpx.Response] = []

        async def refresh():
            responses.append(
                await client.post(
                    "/token",
                    data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
                )
            )

        async with anyio.create_task_group() as tg:
            tg.start_soon(refresh)
            tg.start_soon(refresh)

        assert sorted(r.status_code for r in responses) == [200, 400]
        (rejected,) = [r for r in responses if r.status_code == 400]
        assert rejected.json()["error"] == "invalid_grant"
        assert fake_gitlab.refresh_count == 1

        (accepted,) = [r for r in responses if r.status_code == 200]
        stored = await session_store.get_session(session.id)
        assert stored.mcp_refresh_token == accepted.json()["refresh_token"]
        assert stored.gitlab_refresh_token == "gl-refresh-2"


class TestDeviceFlow:
    async def start(self, client, verifier: str) -> tuple[httpx.Response, str]:
        response = await client.get(
            "/authorize",
            params={
                "client_id": CLIENT_ID,
                "response_type": "code",
                "code_challenge": generate_code_challenge(verifier),
                "state": "device-state",
            },
        )
        match = re.search(r"flow_state=([A-Za-z0-9_-]+)", response.text)
        assert match is not None
        return response, match.group(1)

    @pytest.mark.anyio
    async def test_authorization_page(self, client):
        response, _ = await self.start(client, generate_code_verifier())

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "ABCD-1234" in response.text
        assert "https://gitlab.example.com/oauth/device?user_code=ABCD-1234" in response.text

    @pytest.mark.anyio
    async def test_poll_until_complete(self, client, fake_gitlab):
        verifier = generate_code_verifier()
        _, flow_state = await self.start(client, verifier)

        response = await client.get("/oauth/poll", params={"flow_state": flow_state})
        assert response.status_code == 200
        assert response.json() == {"status": "pending"}

        fake_gitlab.device_poll_responses.append(
            (
                200,
                {
                    "access_token": "gl-access",
                    "token_type": "Bearer",
                    "refresh_token": "gl-refresh",
                    "expires_in": 7200,
                },
            )
        )
        response = await client.get("/oauth/poll", params={"flow_state": flow_state})

        body = response.json()
        assert body["status"] == "complete"
        assert body["state"] == "device-state"

        response = await exchange_code(client, body["code"], verifier, redirect_uri=None)
        assert response.status_code == 200
        access_token = response.json()["access_token"]

        response = await client.get("/mcp/", headers=bearer(access_token))
        assert response.json()["username"] == "alice"

        # the flow is gone once completed
        response = await client.get("/oauth/poll", params={"flow_state": flow_state})
        assert response.status_code == 404
        assert response.json()["status"] == "expired"

    @pytest.mark.anyio
    async def test_denied(self, client, fake_gitlab):
        _, flow_state = await self.start(client, generate_code_verifier())
        fake_gitlab.device_poll_responses.append((400, {"error": "access_denied"}))

        response = await client.get("/oauth/poll", params={"flow_state": flow_state})

        assert response.json() == {"status": "failed", "error": "access_denied"}

    @pytest.mark.anyio
    async def test_expired_device_code(self, client, fake_gitlab):
        _, flow_state = await self.start(client, generate_code_verifier())
        fake_gitlab.device_poll_responses.append((400, {"error": "expired_token"}))

        response = await client.get("/oauth/poll", params={"flow_state": flow_state})

        assert response.json() == {"status": "expired", "error": "expired_token"}

    @pytest.mark.anyio
    async def test_slow_down_reads_as_pending(self, client, fake_gitlab):
        _, flow_state = await self.start(client, generate_code_verifier())
        fake_gitlab.device_poll_responses.append((400, {"error": "slow_down"}))

        response = await client.get("/oauth/poll", params={"flow_state": flow_state})

        assert response.json() == {"status": "pending"}

    @pytest.mark.anyio
    async def test_poll_without_flow_state(self, client):
        response = await client.get("/oauth/poll")

        assert response.status_code == 400
        assert response.json()["status"] == "failed"

    @pytest.mark.anyio
    async def test_poll_unknown_flow(self, client):
        response = await client.get("/oauth/poll", params={"flow_state": "unknown"})

        assert response.status_code == 404
        assert response.json()["status"] == "expired"

    @pytest.mark.anyio
    async def test_gitlab_unavailable(self, client, fake_gitlab):
        fake_gitlab.fail_device_authorization = True

        response = await client.get(
            "/authorize",
            params={"client_id": CLIENT_ID, "response_type": "code", "code_challenge": "challenge"},
        )

        assert response.status_code == 500
        assert response.json()["error"] == "server_error"


class TestProtectedResource:
    @pytest.mark.anyio
    async def test_missing_token(self, client):
        response = await client.get("/mcp/")

        assert response.status_code == 401
        assert response.json() == {
            "error": "invalid_token",
            "error_description": "Missing or invalid Authorization header",
        }
        challenge = response.headers["www-authenticate"]
        assert challenge.startswith('Bearer realm="gitlab-mcp"')
        assert 'error="invalid_token"' in challenge
        assert f'resource_metadata="{BASE_URL}/.well-known/oauth-protected-resource"' in challenge

    @pytest.mark.anyio
    async def test_invalid_token(self, client):
        response = await client.get("/mcp/", headers=bearer("not-a-jwt"))

        assert response.status_code == 401
        assert response.json()["error_description"] == "Invalid or expired token"
        assert 'error_description="Invalid or expired token"' in response.headers["www-authenticate"]

    @pytest.mark.anyio
    async def test_token_signed_with_other_secret(self, client, session_store, session_factory):
        session = session_factory()
        await session_store.create_session(session)
        token = create_jwt(
            {
                "iss": BASE_URL,
                "sub": "42",
                "aud": CLIENT_ID,
                "sid": session.id,
                "scope": "mcp:tools",
                "gitlab_user": "alice",
            },
            "another-secret-that-is-long-enough-to-sign",
            3600,
        )

        response = await client.get("/mcp/", headers=bearer(token))

        assert response.status_code == 401

    @pytest.mark.anyio
    async def test_token_of_deleted_session(self, client, session_store):
        tokens = await login(client)
        session = (await session_store.list_sessions())[0]
        await session_store.delete_session(session.id)

        response = await client.get("/mcp/", headers=bearer(tokens["access_token"]))

        assert response.status_code == 401

    @pytest.mark.anyio
    async def test_expiring_gitlab_token_is_refreshed(self, client, session_store, fake_gitlab):
        tokens = await login(client)
        session = (await session_store.list_sessions())[0]
        await session_store.update_session(session.id, gitlab_token_expiry=now_ms() + 1_000)

        response = await client.get("/mcp/", headers=bearer(tokens["access_token"]))

        assert response.status_code == 200
        assert response.json()["gitlab_token"] == "gl-access-2"
        assert fake_gitlab.refresh_count == 1
        stored = await session_store.get_session(session.id)
        assert stored.gitlab_refresh_token == "gl-refresh-2"

    @pytest.mark.anyio
    async def test_concurrent_requests_refresh_gitlab_once(self, client, session_store, fake_gitlab):
        tokens = await login(client)
        session = (await session_store.list_sessions())[0]
        await session_store.update_session(session.id, gitlab_token_expiry=now_ms() + 1_000)
        responses: list[httpx.Response] = []

        async def call_mcp():
            responses.append(await client.get("/mcp/", headers=bearer(tokens["access_token"])))

        async with anyio.create_task_group() as tg:
            for _ in range(3):
                tg.start_soon(call_mcp)

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert {r.json()["gitlab_token"] for r in responses} == {"gl-access-2"}
        assert fake_gitlab.refresh_count == 1

    @pytest.mark.anyio
    async def test_other_routes_stay_public(self, client):
        assert (await client.get("/health", headers=bearer("garbage"))).status_code == 200


class TestMcpSessions:
    @pytest.mark.anyio
    async def test_new_transport_session_is_associated(self, client, session_store):
        tokens = await login(client)

        response = await client.post("/mcp/", headers=bearer(tokens["access_token"]))

        assert response.headers["mcp-session-id"] == "transport-new"
        session = await session_store.get_session_by_mcp_session_id("transport-new")
        assert session is not None
        assert session.id == response.json()["session_id"]

    @pytest.mark.anyio
    async def test_delete_removes_association_only(self, client, session_store):
        tokens = await login(client)
        headers = {**bearer(tokens["access_token"]), "mcp-session-id": "transport-1"}

        await client.post("/mcp/", headers=headers)
        session = await session_store.get_session_by_mcp_session_id("transport-1")
        assert session is not None

        response = await client.delete("/mcp/", headers=headers)

        assert response.status_code == 200
        assert await session_store.get_session_by_mcp_session_id("transport-1") is None
        assert await session_store.get_session(session.id) is not None
        # the access token keeps working for new transport sessions
        assert (await client.post("/mcp/", headers=bearer(tokens["access_token"]))).status_code == 200

    @pytest.mark.anyio
    async def test_unauthenticated_requests_are_not_associated(self, client, session_store):
        await client.post("/mcp/", headers={"mcp-session-id": "transport-x"})

        assert await session_store.get_session_by_mcp_session_id("transport-x") is None


class TestMiddlewareHook:
    @pytest.mark.anyio
    async def test_extra_middleware_runs_first(self, client):
        response = await client.get("/health", headers={"x-block": "1"})

        assert response.status_code == 429

    @pytest.mark.anyio
    async def test_extra_middleware_guards_protected_routes(self, client):
        response = await client.get("/mcp/", headers={"x-block": "1"})

        assert response.status_code == 429


class TestStaticMode:
    @pytest.fixture
    async def static_client(self):
        app = create_app(StaticTokenMode(gitlab_token="glpat-static"), mcp_app=mcp_echo)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE_URL) as client:
            yield client

    @pytest.mark.anyio
    async def test_health(self, static_client):
        response = await static_client.get("/health")

        assert response.json()["mode"] == "static"

    @pytest.mark.anyio
    async def test_mcp_needs_no_token(self, static_client):
        response = await static_client.get("/mcp/")

        assert response.status_code == 200
        assert response.json()["username"] is None

    @pytest.mark.anyio
    async def test_oauth_routes_are_absent(self, static_client):
        assert (await static_client.get("/.well-known/oauth-authorization-server")).status_code == 404
        assert (await static_client.post("/token", data={"grant_type": "refresh_token"})).status_code == 404
