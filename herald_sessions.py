"""
herald_sessions.py — Transports, the session table and the multiplexer.

Every MCP message enters through a Transport, which binds it to exactly one
Principal before handing it to the ToolDispatcher:

  LocalTransport   — the SDK's stdio streams, for trusted same-host clients.
                     The principal is fixed at process start; no session
                     table, no network authentication.
  NetworkTransport — one per remote session. Created by SessionMultiplexer
                     only after the bearer credential verified; later
                     messages carry the session id instead of re-verifying.

Connection lifecycle: UNAUTHENTICATED → ACTIVE → CLOSING → CLOSED.
Pushes to a transport that is no longer ACTIVE are dropped, never queued.
"""

import asyncio
import functools
import logging
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import types
from mcp.shared.message import SessionMessage

from herald_errors import ErrorKind, Failure, invalid_session
from herald_guard import audit
from herald_identity import CredentialVerifier, Principal
from herald_tools import ToolDispatcher

logger = logging.getLogger("herald-sessions")

KEEPALIVE_SECONDS = 15.0


class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class TransportClosed(Exception):
    pass


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

class Transport(ABC):
    """A channel to one client: open / receive (inbound) / send (push) / close."""

    def __init__(self, dispatcher: ToolDispatcher, principal: Principal,
                 on_close: Callable[[], Awaitable[None]] | None = None):
        self.dispatcher = dispatcher
        self.principal = principal
        self.state = SessionState.UNAUTHENTICATED
        self._on_close = on_close

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    async def open(self) -> None:
        if self.state is SessionState.UNAUTHENTICATED:
            self.state = SessionState.ACTIVE

    async def receive(self, message: Any) -> dict[str, Any] | None:
        """Process one inbound message and return the direct reply, if any."""
        if not self.active:
            raise TransportClosed(f"transport is {self.state.value}")
        return await self.dispatcher.dispatch(message, self.principal)

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> bool:
        """Push ``message`` to the client; False when it was dropped."""

    async def close(self) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING
        try:
            await self._teardown()
        finally:
            self.state = SessionState.CLOSED
            if self._on_close is not None:
                await self._on_close()

    async def _teardown(self) -> None:
        pass


class NetworkTransport(Transport):
    def __init__(self, dispatcher: ToolDispatcher, principal: Principal, session_id: str,
                 on_close: Callable[[], Awaitable[None]] | None = None):
        super().__init__(dispatcher, principal, on_close)
        self.session_id = session_id
        self.streams = 0
        self._outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._closed = asyncio.Event()

    async def send(self, message: dict[str, Any]) -> bool:
        if not self.active:
            logger.debug("push to %s session %s dropped", self.state.value, self.session_id[:8])
            return False
        self._outbound.put_nowait(message)
        return True

    async def stream(self, keepalive: float = KEEPALIVE_SECONDS) -> AsyncIterator[dict[str, Any] | None]:
        """Yield pushed messages until the transport closes; None marks a keepalive tick.

        Cancelling the consumer (client went away) cancels the pending wait.
        """
        self.streams += 1
        try:
            while self.active:
                getter = asyncio.ensure_future(self._outbound.get())
                closer = asyncio.ensure_future(self._closed.wait())
                try:
                    done, _ = await asyncio.wait(
                        {getter, closer}, timeout=keepalive,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    for task in (getter, closer):
                        if not task.done():
                            task.cancel()
                if getter in done:
                    if not self.active:
                        break
                    yield getter.result()
                elif closer in done:
                    break
                else:
                    yield None
        finally:
            self.streams -= 1

    async def _teardown(self) -> None:
        self._closed.set()
        dropped = 0
        while not self._outbound.empty():
            self._outbound.get_nowait()
            dropped += 1
        if dropped:
            logger.info("session %s closed with %d undelivered push(es)", self.session_id[:8], dropped)


class LocalTransport(Transport):
    """JSON-RPC over the read/write streams of ``mcp.server.stdio.stdio_server()``."""

    def __init__(self, dispatcher: ToolDispatcher, principal: Principal,
                 read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
                 write_stream: MemoryObjectSendStream[SessionMessage]):
        super().__init__(dispatcher, principal)
        self.read_stream = read_stream
        self.write_stream = write_stream

    async def send(self, message: dict[str, Any]) -> bool:
        if not self.active:
            return False
        await self.write_stream.send(SessionMessage(types.JSONRPCMessage.model_validate(message)))
        return True

    async def serve(self) -> None:
        await self.open()
        logger.info("local transport serving principal %s", self.principal.id)
        try:
            async for item in self.read_stream:
                if not self.active:
                    break
                if isinstance(item, Exception):
                    # A line the SDK could not parse as JSON-RPC.
                    logger.warning("local transport: unreadable message: %s", item)
                    continue
                reply = await self.receive(item.message)
                if reply is not None:
                    await self.send(reply)
        finally:
            await self.close()

    async def _teardown(self) -> None:
        await self.write_stream.aclose()


# ---------------------------------------------------------------------------
# Session table
# ---------------------------------------------------------------------------

@dataclass
class Session:
    session_id: str
    principal: Principal
    transport: NetworkTransport
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_seen = time.time()


class SessionTable:
    """session id → Session. Shared by every request handler, so lock-protected."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def add(self, session: Session) -> None:
        async with self._lock:
            self._sessions[session.session_id] = session

    async def get(self, session_id: str) -> Session | None:
        async with self._lock:
            return self._sessions.get(session_id)

    async def remove(self, session_id: str) -> Session | None:
        async with self._lock:
            return self._sessions.pop(session_id, None)

    async def snapshot(self) -> list[Session]:
        async with self._lock:
            return list(self._sessions.values())


# ---------------------------------------------------------------------------
# Multiplexer
# ---------------------------------------------------------------------------

@dataclass
class _Creation:
    """First messages in flight together on one connection."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    in_flight: int = 0
    session: Session | None = None


class SessionMultiplexer:
    """Route every network MCP message to its session, creating it on first contact."""

    def __init__(self, table: SessionTable, verifier: CredentialVerifier,
                 dispatcher: ToolDispatcher):
        self.table = table
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.accepting = True
        self._creations: dict[str, _Creation] = {}  # connection key -> in-flight creation

    def _unavailable(self) -> Failure:
        return Failure(ErrorKind.UNAVAILABLE, "Server is shutting down", "not accepting sessions")

    async def open_session(self, bearer: str | None,
                           connection_key: str | None = None) -> Session | Failure:
        """Verify ``bearer`` and create a session for it.

        First messages that are in flight together on the same connection are
        serialized, and those for the same principal share the session the
        first of them created. The sharing ends when the last of them
        finishes: a later first message always gets a new session.
        """
        if not self.accepting:
            return self._unavailable()
        if connection_key is None:
            return await self._verify_and_create(bearer, None)

        creation = self._creations.setdefault(connection_key, _Creation())
        creation.in_flight += 1
        try:
            async with creation.lock:
                return await self._verify_and_create(bearer, creation)
        finally:
            creation.in_flight -= 1
            if creation.in_flight == 0 and self._creations.get(connection_key) is creation:
                del self._creations[connection_key]

    async def _verify_and_create(self, bearer: str | None,
                                 creation: _Creation | None) -> Session | Failure:
        principal = await self.verifier.verify(bearer)
        if isinstance(principal, Failure):
            audit("auth_failed", path="/mcp", reason=principal.reason)
            return principal
        if not self.accepting:
            return self._unavailable()

        shared = creation.session if creation is not None else None
        if (shared is not None and shared.transport.active
                and shared.principal.id == principal.id):
            shared.touch()
            return shared

        session_id = secrets.token_urlsafe(32)
        transport = NetworkTransport(
            self.dispatcher, principal, session_id,
            on_close=functools.partial(self._transport_closed, session_id),
        )
        await transport.open()
        session = Session(session_id=session_id, principal=principal, transport=transport)
        await self.table.add(session)
        if creation is not None and creation.session is None:
            creation.session = session
        audit("session_created", principal_id=principal.id, session=session_id[:8])
        logger.info("session %s opened for %s (%d active)",
                    session_id[:8], principal.id, len(self.table))
        return session

    async def _transport_closed(self, session_id: str) -> None:
        session = await self.table.remove(session_id)
        if session is None:
            return
        audit("session_closed", principal_id=session.principal.id, session=session_id[:8])
        logger.info("session %s closed (%d active)", session_id[:8], len(self.table))

    async def resume(self, session_id: str | None) -> Session | Failure:
        if not session_id:
            return invalid_session("missing session id")
        session = await self.table.get(session_id)
        if session is None or not session.transport.active:
            return invalid_session("unknown session id")
        session.touch()
        return session

    async def handle(self, message: Any, *, session_id: str | None = None,
                     bearer: str | None = None,
                     connection_key: str | None = None) -> tuple[Session, dict[str, Any] | None] | Failure:
        """Resolve the session for one inbound message and process it.

        A message with a session id never falls back to bearer verification:
        an unknown id is always INVALID_SESSION.
        """
        if session_id:
            session = await self.resume(session_id)
        else:
            session = await self.open_session(bearer, connection_key)
        if isinstance(session, Failure):
            return session
        try:
            reply = await session.transport.receive(message)
        except TransportClosed:
            return invalid_session("session closed while processing")
        return session, reply

    async def terminate(self, session_id: str | None) -> bool:
        if not session_id:
            return False
        session = await self.table.get(session_id)
        if session is None:
            return False
        await session.transport.close()
        return True

    async def evict_idle(self, max_idle: float, now: float | None = None) -> int:
        now = time.time() if now is None else now
        evicted = 0
        for session in await self.table.snapshot():
            if session.transport.streams == 0 and now - session.last_seen > max_idle:
                await session.transport.close()
                evicted += 1
        return evicted

    def resume_accepting(self) -> None:
        self.accepting = True

    async def shutdown(self, grace: float) -> None:
        """Stop accepting, close every session within ``grace`` seconds, then force."""
        self.accepting = False
        sessions = await self.table.snapshot()
        if sessions:
            logger.info("closing %d session(s)", len(sessions))
            closing = [asyncio.create_task(s.transport.close()) for s in sessions]
            done, pending = await asyncio.wait(closing, timeout=grace)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error("session close failed: %r", task.exception())
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("%d session(s) did not close within %.1fs; forcing",
                               len(pending), grace)
        for session in await self.table.snapshot():
            session.transport.state = SessionState.CLOSED
            await self.table.remove(session.session_id)
