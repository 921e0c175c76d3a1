#!/usr/bin/env python3
"""
Herald MCP — briefing tools for AI agents, behind an OAuth 2.0 gateway.

Runs as an MCP server (stdio or streamable-http). Over HTTP every session is
opened by a verified bearer credential (one of our access tokens or a
federated identity token) and continued by its Mcp-Session-Id. Over stdio a
single configured principal is bound at start-up and nothing listens on the
network.

Settings come from herald.yaml / HERALD_* environment variables
(see herald_config.py).
"""

import asyncio
import argparse
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from mcp.server.stdio import stdio_server
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from herald_config import Settings, load_settings
from herald_errors import Failure, invalid_session
from herald_identity import (
    CredentialVerifier,
    DisabledFederatedVerifier,
    FederatedVerifier,
    MemoryPrincipalStore,
    OIDCTokenVerifier,
    Principal,
    PrincipalStore,
    TokenIssuer,
    parse_bearer,
)
from herald_oauth import AuthorizationServer, OAuthEndpoints
from herald_sessions import (
    LocalTransport,
    Session,
    SessionMultiplexer,
    SessionTable,
)
from herald_stores import GrantStore, PendingAuthorizationCache, create_grant_store
from herald_tools import (
    SERVER_VERSION,
    BriefingBackend,
    MemoryBriefingBackend,
    ToolDispatcher,
    create_tool_server,
    parse_error,
)

logger = logging.getLogger("herald")

SESSION_HEADER = "Mcp-Session-Id"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

def build_dispatcher(settings: Settings, backend: BriefingBackend | None = None) -> ToolDispatcher:
    return ToolDispatcher(
        create_tool_server(backend or MemoryBriefingBackend()),
        tier_limits=settings.tier_limits,
        rate_limit_enabled=not settings.development,
    )


def build_federated_verifier(settings: Settings) -> FederatedVerifier:
    if not settings.federation_enabled:
        logger.warning("herald: no federated identity provider configured; "
                       "consent callbacks and federated bearers will be rejected")
        return DisabledFederatedVerifier()
    return OIDCTokenVerifier(
        issuer=settings.federated_issuer,
        audience=settings.federated_audience or "",
        jwks_url=settings.federated_jwks_url,
    )


class HeraldService:
    """Owns every long-lived piece of the network gateway and its lifecycle."""

    def __init__(
        self,
        settings: Settings,
        *,
        principals: PrincipalStore | None = None,
        federated: FederatedVerifier | None = None,
        grants: GrantStore | None = None,
        backend: BriefingBackend | None = None,
    ):
        settings.validate_for_network()
        self.settings = settings
        self.principals = principals or MemoryPrincipalStore(settings.principals)
        self.pending = PendingAuthorizationCache(settings.pending_ttl)
        self.grants = grants or create_grant_store(settings.store_path)
        self.issuer = TokenIssuer(settings.signing_secret, settings.issuer_url,
                                  settings.access_token_ttl)
        self.verifier = CredentialVerifier(
            self.issuer, federated or build_federated_verifier(settings), self.principals,
        )
        self.auth_server = AuthorizationServer(settings, self.pending, self.grants,
                                               self.issuer, self.verifier)
        self.endpoints = OAuthEndpoints(self.auth_server, self.verifier, settings)
        self.dispatcher = build_dispatcher(settings, backend)
        self.sessions = SessionTable()
        self.multiplexer = SessionMultiplexer(self.sessions, self.verifier, self.dispatcher)
        self._sweep_task: asyncio.Task | None = None
        self._stop_task: asyncio.Future | None = None

    async def start(self) -> None:
        """Start (or restart, after a completed stop) the background sweep."""
        if self._stop_task is not None and self._stop_task.done():
            self._stop_task = None
            self.multiplexer.resume_accepting()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._periodic_sweep())
        logger.info("herald: service started (issuer=%s, env=%s)",
                    self.settings.issuer_url, self.settings.environment)

    async def _periodic_sweep(self) -> None:
        """Background loop that runs the cleanup sweep every sweep_interval seconds."""
        while True:
            await asyncio.sleep(self.settings.sweep_interval)
            await self.run_sweep()

    async def run_sweep(self, now: float | None = None) -> dict[str, int]:
        """One cleanup pass. Failures are logged and retried on the next tick."""
        result = await self.auth_server.sweep(now)
        try:
            result["sessions"] = await self.multiplexer.evict_idle(
                self.settings.session_idle_ttl, now,
            )
        except Exception:
            logger.exception("sweep: idle session eviction failed")
            result["sessions"] = 0
        self.endpoints.rate_limiter.cleanup()
        self.dispatcher.rate_limiter.cleanup()
        if any(result.values()):
            logger.info("sweep: removed %d pending, %d grants, %d idle sessions",
                        result["pending"], result["grants"], result["sessions"])
        return result

    def begin_shutdown(self) -> None:
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._stop())

    async def stop(self) -> None:
        self.begin_shutdown()
        await self._stop_task

    async def _stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("herald: shutting down, closing %d session(s)...", len(self.sessions))
        await self.multiplexer.shutdown(self.settings.shutdown_grace)


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

PEER_SCOPE_KEY = "herald.peer"


def _connection_key(request: Request) -> str | None:
    """The socket peer of the request, never an address taken from forwarded headers."""
    peer = request.scope.get(PEER_SCOPE_KEY, request.scope.get("client"))
    if not peer:
        return None
    host, port = peer
    return f"{host}:{port}"


def _sse(message: dict[str, Any]) -> str:
    return f"event: message\ndata: {json.dumps(message)}\n\n"


class _RequestLogMiddleware:
    """Log each HTTP request with at most a short prefix of its credential."""

    def __init__(self, inner: ASGIApp):
        self.inner = inner

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.inner(scope, receive, send)
            return

        hdrs = dict(scope.get("headers", []))
        auth = hdrs.get(b"authorization", b"").decode(errors="replace")
        ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
        logger.info("recv: %s %s auth=%s ua=%s", scope.get("method", "?"), scope.get("path", "?"),
                    auth[:15] + "..." if auth else "none", ua[:60])
        await self.inner(scope, receive, send)


class _PeerMiddleware:
    """Record the socket peer before ProxyHeadersMiddleware rewrites ``client``."""

    def __init__(self, inner: ASGIApp):
        self.inner = inner

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            scope[PEER_SCOPE_KEY] = scope.get("client")
        await self.inner(scope, receive, send)


def create_app(service: HeraldService) -> Starlette:
    multiplexer = service.multiplexer
    endpoints = service.endpoints

    async def handle_health(request: Request) -> Response:
        return JSONResponse({
            "status": "healthy",
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "version": SERVER_VERSION,
            "environment": service.settings.environment,
            "sessions": len(service.sessions),
        })

    async def handle_mcp_post(request: Request) -> Response:
        try:
            message = await request.json()
        except ValueError:
            return JSONResponse(parse_error(), status_code=400)

        outcome = await multiplexer.handle(
            message,
            session_id=request.headers.get(SESSION_HEADER),
            bearer=parse_bearer(request.headers.get("authorization")),
            connection_key=_connection_key(request),
        )
        if isinstance(outcome, Failure):
            return outcome.to_response(endpoints.www_authenticate)
        session, reply = outcome
        headers = {SESSION_HEADER: session.session_id}
        if reply is None:
            return Response(status_code=202, headers=headers)
        return JSONResponse(reply, headers=headers)

    async def _push_stream(session: Session) -> AsyncIterator[str]:
        try:
            async for message in session.transport.stream():
                yield ": keepalive\n\n" if message is None else _sse(message)
        finally:
            # The client went away (or the session ended): tear the session down.
            await asyncio.shield(multiplexer.terminate(session.session_id))

    async def handle_mcp_get(request: Request) -> Response:
        session = await multiplexer.resume(request.headers.get(SESSION_HEADER))
        if isinstance(session, Failure):
            return session.to_response()
        return StreamingResponse(
            _push_stream(session),
            media_type="text/event-stream",
            headers={SESSION_HEADER: session.session_id, "Cache-Control": "no-store"},
        )

    async def handle_mcp_delete(request: Request) -> Response:
        if not await multiplexer.terminate(request.headers.get(SESSION_HEADER)):
            return invalid_session("terminate for unknown session").to_response()
        return JSONResponse({"terminated": True})

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    g = endpoints.guarded
    routes = endpoints.routes() + [
        Route("/health", handle_health, methods=["GET"]),
        Route("/mcp", g(handle_mcp_post), methods=["POST"]),
        Route("/mcp", g(handle_mcp_get), methods=["GET"]),
        Route("/mcp", g(handle_mcp_delete), methods=["DELETE"]),
    ]
    return Starlette(routes=routes, lifespan=lifespan)


def build_asgi_app(service: HeraldService) -> ASGIApp:
    """The app as served: peer capture, then forwarded-header handling, then request logging."""
    app = _RequestLogMiddleware(create_app(service))
    return _PeerMiddleware(ProxyHeadersMiddleware(app, trusted_hosts="*"))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _local_principal(settings: Settings) -> Principal:
    if not settings.local_principal:
        raise SystemExit("stdio transport needs local_principal (HERALD_LOCAL_PRINCIPAL)")
    for seed in settings.principals:
        if seed.id == settings.local_principal:
            return Principal(id=seed.id, email=seed.email,
                             display_name=seed.display_name, tier=seed.tier)
    return Principal(id=settings.local_principal)


async def _serve_stdio(settings: Settings) -> None:
    principal = _local_principal(settings)
    async with stdio_server() as (read_stream, write_stream):
        transport = LocalTransport(build_dispatcher(settings), principal, read_stream, write_stream)
        await transport.serve()


def _configure_logging(audit_log_path: Path) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON-lines to ~/.herald/audit.log
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("herald-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Herald MCP server")
    parser.add_argument("--transport", choices=["stdio", "streamable-http"], default="streamable-http")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--config", default=None, help="path to herald.yaml")
    parser.add_argument("--audit-log", default=str(Path.home() / ".herald" / "audit.log"))
    args = parser.parse_args(argv)

    _configure_logging(Path(args.audit_log))
    settings = load_settings(args.config)

    if args.transport == "stdio":
        asyncio.run(_serve_stdio(settings))
        return

    import uvicorn

    try:
        service = HeraldService(settings)
    except ValueError as e:
        raise SystemExit(f"herald: refusing to start: {e}")
    app = build_asgi_app(service)

    class _HeraldServer(uvicorn.Server):
        """Closes MCP sessions as soon as shutdown begins, so open push
        streams end inside the graceful-shutdown window."""

        _loop: asyncio.AbstractEventLoop | None = None

        async def serve(self, sockets=None) -> None:
            self._loop = asyncio.get_running_loop()
            await super().serve(sockets)

        def handle_exit(self, sig, frame) -> None:
            if self._loop is not None and not self.should_exit:
                self._loop.call_soon_threadsafe(service.begin_shutdown)
            super().handle_exit(sig, frame)

    logger.info(f"herald: starting HTTP server on {args.host}:{args.port}")

    config = uvicorn.Config(
        app, host=args.host, port=args.port, log_level="info",
        proxy_headers=False,  # applied in build_asgi_app, after the socket peer is recorded
        timeout_graceful_shutdown=max(1, int(settings.shutdown_grace)),
    )
    asyncio.run(_HeraldServer(config).serve())


if __name__ == "__main__":
    main()
