"""End-to-end tests for server.py over Starlette's TestClient."""
import asyncio
import json
import sys
import time
import urllib.parse
from pathlib import Path

import httpx
import pytest
from starlette.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from herald_config import PrincipalSeed, Settings
from herald_errors import StoreError
from herald_identity import FederatedIdentity, FederatedTokenError
from herald_oauth import s256_challenge
from herald_sessions import SessionState
from server import SESSION_HEADER, HeraldService, _local_principal, build_asgi_app, create_app

SECRET = "test-signing-secret-xxxxxxxxxxxxxxxxxxxxxx"
ISSUER = "https://herald.test"
CONSENT = "https://consent.test/auth/agent"
REDIRECT = "https://client/cb"


class FakeFederated:
    async def verify(self, token):
        if token != "c1":
            raise FederatedTokenError("unknown grant")
        return FederatedIdentity(subject="u1", email="u1@example.com")


def _service(**overrides):
    values = {"issuer_url": ISSUER, "signing_secret": SECRET, "consent_url": CONSENT,
              "environment": "development",
              "principals": [PrincipalSeed(id="seeded", email="s@example.com", tier="pro")]}
    values.update(overrides)
    return HeraldService(Settings(**values), federated=FakeFederated())


@pytest.fixture
def service():
    return _service()


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as c:
        yield c


def _login(client, state="s1", verifier="verifier1"):
    return client.get("/auth/login", params={
        "redirect_uri": REDIRECT, "state": state,
        "code_challenge": s256_challenge(verifier), "code_challenge_method": "S256",
    }, follow_redirects=False)


def _code(client, state="s1", verifier="verifier1"):
    _login(client, state, verifier)
    response = client.get("/auth/callback", params={"code": "c1", "state": state},
                          follow_redirects=False)
    query = urllib.parse.parse_qs(urllib.parse.urlparse(response.headers["location"]).query)
    return query["code"][0]


def _tokens(client, state="s1"):
    response = client.post("/auth/token", data={
        "grant_type": "authorization_code", "code": _code(client, state),
        "code_verifier": "verifier1",
    })
    assert response.status_code == 200
    return response.json()


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


PING = {"jsonrpc": "2.0", "id": 1, "method": "ping"}


# ---------------------------------------------------------------------------
# End-to-end authorization flow
# ---------------------------------------------------------------------------

class TestAuthorizationFlow:
    def test_full_flow(self, client):
        # 1. authorization endpoint redirects to consent, forwarding state
        response = _login(client)
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(CONSENT)
        assert urllib.parse.parse_qs(urllib.parse.urlparse(location).query)["state"] == ["s1"]

        # 2. consent callback redirects to the client with our own code
        response = client.get("/auth/callback", params={"code": "c1", "state": "s1"},
                              follow_redirects=False)
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(f"{REDIRECT}?code=")
        query = urllib.parse.parse_qs(urllib.parse.urlparse(location).query)
        assert query["state"] == ["s1"]
        code = query["code"][0]
        assert code != "c1"

        # 3. code exchange
        form = {"grant_type": "authorization_code", "code": code, "code_verifier": "verifier1"}
        response = client.post("/auth/token", data=form)
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        tokens = response.json()
        assert tokens["expires_in"] == 604800
        assert tokens["token_type"] == "Bearer"
        assert tokens["access_token"] and tokens["refresh_token"]

        # 4. second exchange of the same code
        response = client.post("/auth/token", data=form)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

        # 5. refresh rotates; the original refresh token is dead afterwards
        response = client.post("/auth/token", data={
            "grant_type": "refresh_token", "refresh_token": tokens["refresh_token"],
        })
        assert response.status_code == 200
        rotated = response.json()
        assert rotated["refresh_token"] != tokens["refresh_token"]
        assert rotated["access_token"] != tokens["access_token"]

        response = client.post("/auth/token", data={
            "grant_type": "refresh_token", "refresh_token": tokens["refresh_token"],
        })
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_invalid_bearer_on_mcp(self, client, service):
        # 6. no session header + bad bearer: generic 401, no session
        response = client.post("/mcp", json=PING, headers=_bearer("not-a-real-token"))
        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized",
                                    "error_description": "Invalid authentication token"}
        assert "resource_metadata" in response.headers["www-authenticate"]
        assert SESSION_HEADER.lower() not in response.headers
        assert len(service.sessions) == 0

    def test_pkce_mismatch_is_generic(self, client):
        response = client.post("/auth/token", data={
            "grant_type": "authorization_code", "code": _code(client),
            "code_verifier": "wrong-verifier",
        })
        assert response.status_code == 400
        assert response.json() == {"error": "invalid_grant",
                                   "error_description": "Invalid or expired grant"}

    def test_token_request_as_json(self, client):
        response = client.post("/auth/token", json={
            "grant_type": "authorization_code", "code": _code(client),
            "code_verifier": "verifier1", "redirect_uri": REDIRECT,
        })
        assert response.status_code == 200

    def test_authorize_alias(self, client):
        response = client.get("/authorize", params={
            "redirect_uri": REDIRECT, "state": "s9", "code_challenge": "c",
        }, follow_redirects=False)
        assert response.status_code == 302


class TestEndpointErrors:
    def test_login_missing_parameter(self, client):
        response = client.get("/auth/login", params={"state": "s1"}, follow_redirects=False)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_callback_missing_parameter(self, client):
        response = client.get("/auth/callback", params={"state": "s1"}, follow_redirects=False)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_callback_unknown_state(self, client):
        response = client.get("/auth/callback", params={"code": "c1", "state": "nope"},
                              follow_redirects=False)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_callback_rejected_consent(self, client):
        _login(client)
        response = client.get("/auth/callback", params={"code": "forged", "state": "s1"},
                              follow_redirects=False)
        assert response.status_code == 302
        assert "error=access_denied" in response.headers["location"]

    def test_unsupported_grant_type(self, client):
        response = client.post("/auth/token", data={"grant_type": "password"})
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_missing_grant_type(self, client):
        response = client.post("/auth/token", data={})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_internal_error_redacted_in_production(self):
        service = _service(environment="production")

        async def boom(**kwargs):
            raise RuntimeError("database exploded")

        service.auth_server.exchange_code = boom
        with TestClient(create_app(service)) as client:
            response = client.post("/auth/token", data={
                "grant_type": "authorization_code", "code": "x", "code_verifier": "y",
            })
        assert response.status_code == 500
        assert response.json() == {"error": "server_error",
                                   "error_description": "Internal server error"}

    def test_internal_error_detail_in_development(self, client, service):
        async def boom(**kwargs):
            raise RuntimeError("database exploded")

        service.auth_server.exchange_code = boom
        response = client.post("/auth/token", data={
            "grant_type": "authorization_code", "code": "x", "code_verifier": "y",
        })
        assert response.status_code == 500
        assert response.json()["error_description"] == "database exploded"

    def test_rate_limited_in_production(self):
        service = _service(environment="production", auth_rate_limit=2)
        with TestClient(create_app(service)) as client:
            statuses = [_login(client, state=f"s{i}").status_code for i in range(3)]
        assert statuses == [302, 302, 429]

    def test_not_rate_limited_in_development(self, client):
        statuses = [_login(client, state=f"s{i}").status_code for i in range(15)]
        assert set(statuses) == {302}


# ---------------------------------------------------------------------------
# Discovery, status, logout, health
# ---------------------------------------------------------------------------

class TestDiscovery:
    @pytest.mark.parametrize("path", [
        "/.well-known/oauth-authorization-server",
        "/.well-known/openid-configuration",
    ])
    def test_metadata(self, client, path):
        body = client.get(path).json()
        assert body["issuer"] == ISSUER
        assert body["authorization_endpoint"] == f"{ISSUER}/auth/login"
        assert body["token_endpoint"] == f"{ISSUER}/auth/token"
        assert body["code_challenge_methods_supported"] == ["S256"]
        assert body["token_endpoint_auth_methods_supported"] == ["none"]
        assert body["grant_types_supported"] == ["authorization_code", "refresh_token"]

    def test_protected_resource(self, client):
        body = client.get("/.well-known/oauth-protected-resource").json()
        assert body["resource"] == f"{ISSUER}/mcp"
        assert body["authorization_servers"] == [ISSUER]


class TestStatusAndLogout:
    def test_status(self, client):
        tokens = _tokens(client)
        response = client.get("/auth/status", headers=_bearer(tokens["access_token"]))
        assert response.json() == {"authenticated": True,
                                   "user": {"id": "u1", "email": "u1@example.com", "tier": "free"}}

    def test_status_requires_bearer(self, client):
        response = client.get("/auth/status")
        assert response.status_code == 401
        assert response.headers["www-authenticate"].startswith("Bearer")

    def test_logout_revokes_refresh_tokens(self, client):
        tokens = _tokens(client)
        response = client.post("/auth/logout", headers=_bearer(tokens["access_token"]))
        assert response.json() == {"success": True, "revoked_tokens": 1}
        response = client.post("/auth/token", data={
            "grant_type": "refresh_token", "refresh_token": tokens["refresh_token"],
        })
        assert response.status_code == 400

    def test_logout_requires_bearer(self, client):
        assert client.post("/auth/logout").status_code == 401


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["environment"] == "development"
        assert body["sessions"] == 0


# ---------------------------------------------------------------------------
# /mcp
# ---------------------------------------------------------------------------

class TestMcpEndpoint:
    def _open(self, client, service):
        token, _ = service.issuer.issue("seeded")
        response = client.post("/mcp", json=PING, headers=_bearer(token))
        assert response.status_code == 200
        return response.headers[SESSION_HEADER]

    def test_new_session(self, client, service):
        session_id = self._open(client, service)
        assert len(service.sessions) == 1
        assert client.get("/health").json()["sessions"] == 1
        assert session_id

    def test_federated_bearer_opens_session(self, client, service):
        response = client.post("/mcp", json=PING, headers=_bearer("c1"))
        assert response.status_code == 200
        assert response.json()["result"] == {}

    def test_continue_with_session_id(self, client, service):
        session_id = self._open(client, service)
        response = client.post("/mcp", json={
            "jsonrpc": "2.0", "id": 2, "method": "tools/call",
            "params": {"name": "whoami", "arguments": {}},
        }, headers={SESSION_HEADER: session_id})
        assert response.status_code == 200
        assert response.headers[SESSION_HEADER] == session_id
        assert '"seeded"' in response.json()["result"]["content"][0]["text"]

    def test_unknown_session_id(self, client, service):
        token, _ = service.issuer.issue("seeded")
        response = client.post("/mcp", json=PING,
                               headers={SESSION_HEADER: "forged", **_bearer(token)})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_session"
        assert len(service.sessions) == 0

    def test_notification_accepted(self, client, service):
        session_id = self._open(client, service)
        response = client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"},
                               headers={SESSION_HEADER: session_id})
        assert response.status_code == 202

    def test_parse_error(self, client):
        response = client.post("/mcp", content=b"{nope", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    def test_stream_requires_known_session(self, client):
        response = client.get("/mcp", headers={SESSION_HEADER: "forged"})
        assert response.status_code == 400
        assert response.json()["error_description"] == "invalid or missing session"
        assert client.get("/mcp").status_code == 400

    def test_delete(self, client, service):
        session_id = self._open(client, service)
        response = client.delete("/mcp", headers={SESSION_HEADER: session_id})
        assert response.status_code == 200
        assert len(service.sessions) == 0
        response = client.delete("/mcp", headers={SESSION_HEADER: session_id})
        assert response.status_code == 400
        response = client.post("/mcp", json=PING, headers={SESSION_HEADER: session_id})
        assert response.json()["error"] == "invalid_session"


class SlowFederated(FakeFederated):
    """Holds each verification open long enough for requests to overlap."""

    async def verify(self, token):
        await asyncio.sleep(0.05)
        return await super().verify(token)


def _http(app, client=("10.0.0.1", 40001)):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app, client=client),
                             base_url="http://herald.test")


class TestConnections:
    @pytest.mark.asyncio
    async def test_clients_behind_one_forwarded_address_get_own_sessions(self, service):
        app = build_asgi_app(service)
        token, _ = service.issuer.issue("seeded")
        headers = {**_bearer(token), "X-Forwarded-For": "203.0.113.7"}
        async with _http(app, ("10.0.0.1", 40001)) as a, _http(app, ("10.0.0.1", 40002)) as b:
            first_a, first_b = await asyncio.gather(
                a.post("/mcp", json=PING, headers=headers),
                b.post("/mcp", json=PING, headers=headers),
            )
            session_a = first_a.headers[SESSION_HEADER]
            session_b = first_b.headers[SESSION_HEADER]
            assert session_a != session_b
            assert len(service.sessions) == 2

            assert (await a.delete("/mcp", headers={SESSION_HEADER: session_a})).status_code == 200
            response = await b.post("/mcp", json=PING, headers={SESSION_HEADER: session_b})
            assert response.status_code == 200
            assert response.json()["result"] == {}

    @pytest.mark.asyncio
    async def test_sequential_first_messages_on_one_connection(self, service):
        token, _ = service.issuer.issue("seeded")
        async with _http(build_asgi_app(service)) as http:
            first = await http.post("/mcp", json=PING, headers=_bearer(token))
            second = await http.post("/mcp", json=PING, headers=_bearer(token))
        assert first.headers[SESSION_HEADER] != second.headers[SESSION_HEADER]

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_on_one_connection_share_a_session(self):
        service = HeraldService(Settings(issuer_url=ISSUER, signing_secret=SECRET,
                                         consent_url=CONSENT, environment="development"),
                                federated=SlowFederated())
        async with _http(build_asgi_app(service)) as http:
            responses = await asyncio.gather(*[
                http.post("/mcp", json=PING, headers=_bearer("c1")) for _ in range(3)
            ])
        assert all(r.status_code == 200 for r in responses)
        assert len({r.headers[SESSION_HEADER] for r in responses}) == 1
        assert len(service.sessions) == 1


class TestPushChannel:
    @pytest.mark.asyncio
    async def test_push_delivered_and_disconnect_ends_session(self, service):
        token, _ = service.issuer.issue("seeded")
        session = await service.multiplexer.open_session(token, "10.0.0.1:40001")
        app = create_app(service)
        sent = []
        delivered = asyncio.Event()

        async def receive():
            await delivered.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)
            if message["type"] == "http.response.body" and b"event: message" in message.get("body", b""):
                delivered.set()

        scope = {
            "type": "http", "asgi": {"version": "3.0"}, "http_version": "1.1",
            "method": "GET", "scheme": "http", "path": "/mcp", "raw_path": b"/mcp",
            "query_string": b"", "root_path": "",
            "headers": [(b"mcp-session-id", session.session_id.encode())],
            "client": ("10.0.0.1", 40001), "server": ("herald.test", 80),
        }
        request = asyncio.create_task(app(scope, receive, send))
        while session.transport.streams == 0:
            await asyncio.sleep(0.01)

        push = {"jsonrpc": "2.0", "method": "notifications/message",
                "params": {"level": "info", "data": "edition ready"}}
        assert await session.transport.send(push) is True
        await asyncio.wait_for(request, timeout=2)
        for _ in range(50):
            if await service.sessions.get(session.session_id) is None:
                break
            await asyncio.sleep(0.01)

        start = sent[0]
        assert start["status"] == 200
        assert dict(start["headers"])[b"content-type"].startswith(b"text/event-stream")
        body = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
        assert body.startswith(b"event: message\ndata: ")
        assert json.loads(body.split(b"data: ", 1)[1].split(b"\n\n", 1)[0]) == push
        assert await service.sessions.get(session.session_id) is None
        assert session.transport.state is SessionState.CLOSED


# ---------------------------------------------------------------------------
# Service lifecycle
# ---------------------------------------------------------------------------

class TestService:
    def test_refuses_without_signing_secret(self):
        with pytest.raises(ValueError):
            HeraldService(Settings(issuer_url=ISSUER))

    @pytest.mark.asyncio
    async def test_run_sweep(self, service):
        token, _ = service.issuer.issue("seeded")
        session = await service.multiplexer.open_session(token, "conn-1")
        session.last_seen = time.time() - service.settings.session_idle_ttl - 1
        result = await service.run_sweep()
        assert result == {"pending": 0, "grants": 0, "sessions": 1}
        assert len(service.sessions) == 0

    @pytest.mark.asyncio
    async def test_run_sweep_survives_store_errors(self, service, monkeypatch):
        async def broken(now=None):
            raise StoreError("disk on fire")

        monkeypatch.setattr(service.grants, "purge_expired", broken)
        result = await service.run_sweep()
        assert result["grants"] == 0

    @pytest.mark.asyncio
    async def test_stop_closes_sessions(self, service):
        await service.start()
        token, _ = service.issuer.issue("seeded")
        session = await service.multiplexer.open_session(token, "conn-1")
        await service.stop()
        await service.stop()
        assert session.transport.state is SessionState.CLOSED
        assert len(service.sessions) == 0
        assert not service.multiplexer.accepting

    def test_service_restarts_after_stop(self, service):
        token, _ = service.issuer.issue("seeded")
        for _ in range(2):
            with TestClient(create_app(service)) as c:
                response = c.post("/mcp", json=PING, headers=_bearer(token))
                assert response.status_code == 200
                assert service.multiplexer.accepting
            assert len(service.sessions) == 0
            assert not service.multiplexer.accepting


class TestLocalPrincipal:
    def test_required(self):
        with pytest.raises(SystemExit):
            _local_principal(Settings())

    def test_seeded(self):
        settings = Settings(local_principal="dev",
                            principals=[PrincipalSeed(id="dev", email="d@example.com", tier="pro")])
        principal = _local_principal(settings)
        assert principal.id == "dev"
        assert principal.tier == "pro"

    def test_unseeded(self):
        assert _local_principal(Settings(local_principal="solo")).tier == "free"
