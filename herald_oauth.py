"""
herald_oauth.py — OAuth 2.0 Authorization Code + PKCE server for Herald MCP.

Public clients only (no client secret). The user consents on an external
surface; the callback trades the federated grant it returns for a
single-use authorization code bound to the PKCE challenge.

Implements:
  /.well-known/oauth-authorization-server  — RFC 8414 metadata
  /.well-known/oauth-protected-resource    — RFC 9728 metadata
  /auth/login                              — Authorization endpoint (GET → consent redirect)
  /auth/callback                           — Consent callback (GET → client redirect with code)
  /auth/token                              — Token endpoint (authorization_code, refresh_token)
  /auth/status                             — Who am I (bearer required)
  /auth/logout                             — Revoke every refresh token of the caller

Security features:
  - S256 PKCE compared in constant time
  - Authorization codes spent exactly once (compare-and-set in the grant store)
  - Strict refresh rotation: a refresh token is good for one refresh, ever
  - Every rejection reaches the client as a bare invalid_grant; the precise
    reason only goes to the audit log
  - In-memory sliding window rate limiter on the auth endpoints
  - Structured audit logging (herald_guard.audit, JSON-lines)
"""

import base64
import functools
import hashlib
import hmac
import logging
import secrets
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from herald_config import Settings
from herald_errors import (
    ErrorKind,
    Failure,
    internal_error_response,
    invalid_grant,
    invalid_request,
)
from herald_guard import RateLimiter, audit
from herald_identity import CredentialVerifier, TokenIssuer, parse_bearer
from herald_stores import (
    AuthorizationCode,
    GrantStore,
    PendingAuthorization,
    PendingAuthorizationCache,
    RefreshToken,
)

logger = logging.getLogger("herald-oauth")

CHALLENGE_METHODS = ("S256", "plain")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_client_ip(request: Request) -> str:
    """Extract real client IP, preferring CF-Connecting-IP."""
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def _append_query(url: str, **params: str | None) -> str:
    query = urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{query}"


def _valid_redirect_uri(uri: str) -> bool:
    parsed = urllib.parse.urlparse(uri)
    if parsed.scheme == "https" and parsed.netloc:
        return True
    return parsed.scheme == "http" and parsed.hostname in ("localhost", "127.0.0.1")


def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


# ---------------------------------------------------------------------------
# PKCE verification
# ---------------------------------------------------------------------------

def _verify_pkce(verifier: str, challenge: str, method: str) -> bool:
    if method == "S256":
        try:
            expected = s256_challenge(verifier)
        except UnicodeEncodeError:
            return False
    elif method == "plain":
        expected = verifier
    else:
        return False
    # compare_digest does not exit early on the first differing byte.
    return hmac.compare_digest(expected.encode(), challenge.encode())


# ---------------------------------------------------------------------------
# Authorization server
# ---------------------------------------------------------------------------

@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
        }


@dataclass
class CompletedAuthorization:
    redirect_uri: str
    state: str
    code: str | None = None
    error: str | None = None

    @property
    def location(self) -> str:
        if self.error:
            return _append_query(self.redirect_uri, error=self.error, state=self.state)
        return _append_query(self.redirect_uri, code=self.code, state=self.state)


class AuthorizationServer:
    """The grant logic behind the OAuth endpoints, free of HTTP concerns."""

    def __init__(self, settings: Settings, pending: PendingAuthorizationCache,
                 grants: GrantStore, issuer: TokenIssuer, verifier: CredentialVerifier):
        self.settings = settings
        self.pending = pending
        self.grants = grants
        self.issuer = issuer
        self.verifier = verifier

    @property
    def default_scope(self) -> str:
        return " ".join(self.settings.scopes)

    # --- discovery ---

    def metadata(self) -> dict[str, Any]:
        base = self.settings.issuer_url
        return {
            "issuer": base,
            "authorization_endpoint": f"{base}/auth/login",
            "token_endpoint": f"{base}/auth/token",
            "scopes_supported": list(self.settings.scopes),
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
        }

    def protected_resource_metadata(self) -> dict[str, Any]:
        base = self.settings.issuer_url
        return {
            "resource": f"{base}/mcp",
            "authorization_servers": [base],
            "scopes_supported": list(self.settings.scopes),
            "bearer_methods_supported": ["header"],
        }

    # --- authorization ---

    async def begin_authorization(
        self,
        state: str | None,
        code_challenge: str | None,
        challenge_method: str | None,
        redirect_uri: str | None,
        scope: str | None = None,
        client_id: str | None = None,
    ) -> str | Failure:
        """Park the PKCE challenge under ``state``; return the consent redirect."""
        missing = [name for name, value in (("state", state), ("redirect_uri", redirect_uri),
                                            ("code_challenge", code_challenge)) if not value]
        if missing:
            return invalid_request(f"Missing required parameter(s): {', '.join(missing)}")
        method = challenge_method or "S256"
        if method not in CHALLENGE_METHODS:
            return invalid_request("Unsupported code_challenge_method")
        if not _valid_redirect_uri(redirect_uri):
            return invalid_request("redirect_uri must be https (or http on localhost)")

        scope = scope or self.default_scope
        pending = PendingAuthorization(
            state=state,
            code_challenge=code_challenge,
            challenge_method=method,
            redirect_uri=redirect_uri,
            scope=scope,
            client_id=client_id or None,
            created_at=time.time(),
        )
        if not await self.pending.put(pending):
            audit("authorize_rejected", reason="state_in_flight", client_id=client_id)
            return invalid_request("state is already in use")

        audit("authorize_started", client_id=client_id, method=method)
        return _append_query(
            self.settings.consent_url,
            callback=self.settings.callback_url,
            state=state,
            scope=scope,
        )

    async def complete_authorization(self, state: str | None,
                                     external_grant: str | None) -> CompletedAuthorization | Failure:
        """Trade the consent surface's grant for one of our authorization codes."""
        if not state or not external_grant:
            return invalid_request("Missing code or state")
        pending = await self.pending.take(state)
        if pending is None:
            audit("authorize_rejected", reason="unknown_state")
            return invalid_request("unknown or expired state")

        principal = await self.verifier.resolve_federated(external_grant)
        if isinstance(principal, Failure):
            audit("consent_rejected", client_id=pending.client_id, reason=principal.reason)
            return CompletedAuthorization(
                redirect_uri=pending.redirect_uri, state=state, error="access_denied",
            )

        code = secrets.token_urlsafe(32)
        await self.grants.save_code(AuthorizationCode(
            code=code,
            principal_id=principal.id,
            code_challenge=pending.code_challenge,
            challenge_method=pending.challenge_method,
            redirect_uri=pending.redirect_uri,
            scope=pending.scope,
            client_id=pending.client_id,
            expires_at=time.time() + self.settings.auth_code_ttl,
        ))
        audit("authorize_completed", principal_id=principal.id, client_id=pending.client_id)
        return CompletedAuthorization(redirect_uri=pending.redirect_uri, state=state, code=code)

    # --- token endpoint grants ---

    async def _mint(self, principal_id: str, scope: str, client_id: str | None,
                    previous_token: str | None = None) -> tuple[TokenGrant, RefreshToken]:
        access_token, expires_in = self.issuer.issue(principal_id, scope)
        refresh = RefreshToken(
            token=secrets.token_urlsafe(32),
            principal_id=principal_id,
            scope=scope,
            client_id=client_id,
            expires_at=time.time() + self.settings.refresh_token_ttl,
            previous_token=previous_token,
        )
        grant = TokenGrant(
            access_token=access_token,
            refresh_token=refresh.token,
            expires_in=expires_in,
            scope=scope,
        )
        return grant, refresh

    async def exchange_code(self, code: str | None, code_verifier: str | None,
                            redirect_uri: str | None = None,
                            client_id: str | None = None) -> TokenGrant | Failure:
        if not code or not code_verifier:
            return invalid_request("Missing code or code_verifier")

        record = await self.grants.get_code(code)
        failure = self._check_code(record, code_verifier, redirect_uri, client_id)
        if failure is not None:
            audit("grant_rejected", reason=failure.reason,
                   principal_id=record.principal_id if record else None)
            if failure.reason == "code_reused":
                logger.warning("authorization code presented twice; possible interception "
                               "(principal=%s)", record.principal_id)
            return failure

        # First exchange wins; a concurrent duplicate loses the compare-and-set.
        if not await self.grants.consume_code(code):
            audit("grant_rejected", reason="code_reused", principal_id=record.principal_id)
            logger.warning("authorization code lost the exchange race; possible interception "
                           "(principal=%s)", record.principal_id)
            return invalid_grant("code_reused")

        grant, refresh = await self._mint(record.principal_id, record.scope, record.client_id)
        await self.grants.save_refresh(refresh)
        audit("token_issued", principal_id=record.principal_id, client_id=record.client_id,
               expires_in=grant.expires_in)
        return grant

    def _check_code(self, record: AuthorizationCode | None, code_verifier: str,
                    redirect_uri: str | None, client_id: str | None) -> Failure | None:
        if record is None:
            return invalid_grant("unknown_code")
        if record.used:
            return invalid_grant("code_reused")
        if time.time() >= record.expires_at:
            return invalid_grant("code_expired")
        if redirect_uri is not None and redirect_uri != record.redirect_uri:
            return invalid_grant("redirect_mismatch")
        if client_id and record.client_id and client_id != record.client_id:
            return invalid_grant("client_mismatch")
        if not _verify_pkce(code_verifier, record.code_challenge, record.challenge_method):
            return invalid_grant("pkce_mismatch")
        return None

    async def refresh(self, token: str | None) -> TokenGrant | Failure:
        if not token:
            return invalid_request("Missing refresh_token")

        record = await self.grants.get_refresh(token)
        if record is None:
            reason = "unknown"
        elif record.revoked:
            # A rotated-out token coming back is a replay signal.
            reason = "revoked"
        elif time.time() >= record.expires_at:
            reason = "expired"
        else:
            reason = ""
        if reason:
            audit("refresh_rejected", reason=reason,
                   principal_id=record.principal_id if record else None)
            return invalid_grant(reason)

        grant, new = await self._mint(record.principal_id, record.scope, record.client_id,
                                      previous_token=token)
        if not await self.grants.rotate_refresh(token, new):
            audit("refresh_rejected", reason="race", principal_id=record.principal_id)
            return invalid_grant("race")
        audit("token_refreshed", principal_id=record.principal_id, client_id=record.client_id)
        return grant

    async def revoke_all(self, principal_id: str) -> int:
        count = await self.grants.revoke_all(principal_id)
        audit("tokens_revoked", principal_id=principal_id, count=count)
        return count

    # --- housekeeping ---

    async def sweep(self, now: float | None = None) -> dict[str, int]:
        """Drop expired pending authorizations and grants. Never raises."""
        result = {"pending": 0, "grants": 0}
        try:
            result["pending"] = await self.pending.sweep(now)
        except Exception:
            logger.exception("sweep: pending authorizations failed")
        try:
            result["grants"] = await self.grants.purge_expired(now)
        except Exception:
            logger.exception("sweep: grant purge failed")
        return result


# ---------------------------------------------------------------------------
# HTTP endpoints
# ---------------------------------------------------------------------------

Handler = Callable[[Request], Awaitable[Response]]


class OAuthEndpoints:
    """Starlette routes for the authorization server.

    Every handler answers with JSON ``{error, error_description}`` on failure,
    unexpected exceptions included.
    """

    RATE_LIMITED_PATHS = {"/auth/login", "/authorize", "/auth/callback", "/auth/token", "/token"}

    def __init__(self, server: AuthorizationServer, verifier: CredentialVerifier,
                 settings: Settings):
        self.server = server
        self.verifier = verifier
        self.settings = settings
        self.rate_limiter = RateLimiter(settings.auth_rate_limit, settings.auth_rate_window)

    @property
    def www_authenticate(self) -> str:
        rm_url = f"{self.settings.issuer_url}/.well-known/oauth-protected-resource"
        return f'Bearer resource_metadata="{rm_url}"'

    def guarded(self, handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(request: Request) -> Response:
            path = request.url.path
            if path in self.RATE_LIMITED_PATHS and not self.settings.development:
                client_ip = _get_client_ip(request)
                if not self.rate_limiter.is_allowed(f"{path}:{client_ip}"):
                    audit("rate_limited", ip=client_ip, path=path)
                    return Failure(
                        ErrorKind.RATE_LIMITED, "Rate limit exceeded. Try again later.",
                    ).to_response(headers={"Retry-After": str(self.settings.auth_rate_window)})
            try:
                return await handler(request)
            except Exception as e:
                logger.exception("unhandled error on %s", path)
                return internal_error_response(e, self.settings.development)
        return wrapper

    def routes(self) -> list[Route]:
        g = self.guarded
        return [
            Route("/.well-known/oauth-authorization-server", g(self.handle_metadata), methods=["GET"]),
            Route("/.well-known/openid-configuration", g(self.handle_metadata), methods=["GET"]),
            Route("/.well-known/oauth-protected-resource",
                  g(self.handle_protected_resource_metadata), methods=["GET"]),
            Route("/.well-known/oauth-protected-resource/mcp",
                  g(self.handle_protected_resource_metadata), methods=["GET"]),
            Route("/auth/login", g(self.handle_authorize), methods=["GET"]),
            Route("/authorize", g(self.handle_authorize), methods=["GET"]),
            Route("/auth/callback", g(self.handle_callback), methods=["GET"]),
            Route("/auth/token", g(self.handle_token), methods=["POST"]),
            Route("/token", g(self.handle_token), methods=["POST"]),
            Route("/auth/status", g(self.handle_status), methods=["GET"]),
            Route("/auth/logout", g(self.handle_logout), methods=["POST"]),
        ]

    # --- Endpoint handlers ---

    async def handle_metadata(self, request: Request) -> Response:
        """RFC 8414 — OAuth Authorization Server Metadata."""
        return JSONResponse(self.server.metadata())

    async def handle_protected_resource_metadata(self, request: Request) -> Response:
        """RFC 9728 — OAuth Protected Resource Metadata."""
        return JSONResponse(self.server.protected_resource_metadata())

    async def handle_authorize(self, request: Request) -> Response:
        qs = request.query_params
        result = await self.server.begin_authorization(
            state=qs.get("state"),
            code_challenge=qs.get("code_challenge"),
            challenge_method=qs.get("code_challenge_method"),
            redirect_uri=qs.get("redirect_uri"),
            scope=qs.get("scope"),
            client_id=qs.get("client_id"),
        )
        if isinstance(result, Failure):
            return result.to_response()
        return RedirectResponse(result, status_code=302)

    async def handle_callback(self, request: Request) -> Response:
        qs = request.query_params
        result = await self.server.complete_authorization(qs.get("state"), qs.get("code"))
        if isinstance(result, Failure):
            return result.to_response()
        return RedirectResponse(result.location, status_code=302)

    async def _read_token_request(self, request: Request) -> dict[str, str] | None:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                data = await request.json()
            except ValueError:
                return None
            if not isinstance(data, dict):
                return None
            return {k: str(v) for k, v in data.items() if v is not None}
        form = await request.form()
        return {k: str(v) for k, v in form.items()}

    async def handle_token(self, request: Request) -> Response:
        form = await self._read_token_request(request)
        if form is None:
            return invalid_request("Malformed request body").to_response()

        grant_type = form.get("grant_type", "")
        if grant_type == "authorization_code":
            result = await self.server.exchange_code(
                code=form.get("code"),
                code_verifier=form.get("code_verifier"),
                redirect_uri=form.get("redirect_uri"),
                client_id=form.get("client_id"),
            )
        elif grant_type == "refresh_token":
            result = await self.server.refresh(form.get("refresh_token"))
        elif not grant_type:
            result = invalid_request("Missing grant_type")
        else:
            result = Failure(ErrorKind.UNSUPPORTED_GRANT_TYPE,
                             f"Unsupported grant_type: {grant_type}")

        if isinstance(result, Failure):
            return result.to_response()
        return JSONResponse(result.to_dict(), headers={"Cache-Control": "no-store", "Pragma": "no-cache"})

    async def _authenticate(self, request: Request):
        principal = await self.verifier.verify(parse_bearer(request.headers.get("authorization")))
        if isinstance(principal, Failure):
            audit("auth_failed", path=request.url.path, reason=principal.reason,
                   ip=_get_client_ip(request))
        return principal

    async def handle_status(self, request: Request) -> Response:
        principal = await self._authenticate(request)
        if isinstance(principal, Failure):
            return principal.to_response(self.www_authenticate)
        return JSONResponse({"authenticated": True, "user": principal.summary()})

    async def handle_logout(self, request: Request) -> Response:
        principal = await self._authenticate(request)
        if isinstance(principal, Failure):
            return principal.to_response(self.www_authenticate)
        count = await self.server.revoke_all(principal.id)
        return JSONResponse({"success": True, "revoked_tokens": count})
