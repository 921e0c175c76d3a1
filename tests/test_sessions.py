"""Tests for herald_sessions.py."""
import asyncio
import json
import sys
import time
from pathlib import Path

import anyio
import pytest
from mcp import types
from mcp.shared.message import SessionMessage

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from herald_errors import ErrorKind, Failure, authentication_failed
from herald_identity import Principal
from herald_sessions import (
    LocalTransport,
    NetworkTransport,
    Session,
    SessionMultiplexer,
    SessionState,
    SessionTable,
    Transport,
    TransportClosed,
)
from herald_tools import MemoryBriefingBackend, ToolDispatcher, create_tool_server

PING = {"jsonrpc": "2.0", "id": 1, "method": "ping"}


class FakeVerifier:
    """Bearer "token-<id>" resolves to principal <id>; anything else fails."""

    def __init__(self):
        self.calls = 0

    async def verify(self, bearer):
        self.calls += 1
        await asyncio.sleep(0)
        if bearer and bearer.startswith("token-"):
            return Principal(id=bearer[len("token-"):])
        return authentication_failed("bad bearer")


@pytest.fixture
def dispatcher():
    return ToolDispatcher(create_tool_server(MemoryBriefingBackend()), rate_limit_enabled=False)


@pytest.fixture
def mux(dispatcher):
    return SessionMultiplexer(SessionTable(), FakeVerifier(), dispatcher)


# ---------------------------------------------------------------------------
# Session creation
# ---------------------------------------------------------------------------

class TestOpenSession:
    @pytest.mark.asyncio
    async def test_bad_bearer_creates_nothing(self, mux):
        result = await mux.open_session("garbage", "conn-1")
        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.AUTHENTICATION
        assert len(mux.table) == 0

    @pytest.mark.asyncio
    async def test_missing_bearer(self, mux):
        result = await mux.open_session(None)
        assert result.kind is ErrorKind.AUTHENTICATION

    @pytest.mark.asyncio
    async def test_creates_active_session(self, mux):
        session = await mux.open_session("token-u1", "conn-1")
        assert isinstance(session, Session)
        assert session.principal.id == "u1"
        assert session.transport.state is SessionState.ACTIVE
        assert len(session.session_id) >= 40
        assert await mux.table.get(session.session_id) is session

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_create_one_session(self, mux):
        results = await asyncio.gather(*[
            mux.handle(PING, bearer="token-u1", connection_key="conn-1") for _ in range(5)
        ])
        session_ids = {session.session_id for session, _ in results}
        assert len(session_ids) == 1
        assert len(mux.table) == 1
        assert all(reply["result"] == {} for _, reply in results)

    @pytest.mark.asyncio
    async def test_later_first_message_gets_new_session(self, mux):
        a = await mux.open_session("token-u1", "conn-1")
        b = await mux.open_session("token-u1", "conn-1")
        assert a.session_id != b.session_id
        assert len(mux.table) == 2

    @pytest.mark.asyncio
    async def test_concurrent_bad_bearer_not_joined(self, mux):
        good, bad = await asyncio.gather(
            mux.open_session("token-u1", "conn-1"),
            mux.open_session("garbage", "conn-1"),
        )
        assert isinstance(good, Session)
        assert bad.kind is ErrorKind.AUTHENTICATION
        assert len(mux.table) == 1

    @pytest.mark.asyncio
    async def test_separate_connections_get_separate_sessions(self, mux):
        a, b = await asyncio.gather(
            mux.open_session("token-u1", "conn-1"),
            mux.open_session("token-u1", "conn-2"),
        )
        assert a.session_id != b.session_id
        assert len(mux.table) == 2

    @pytest.mark.asyncio
    async def test_other_principal_on_same_connection(self, mux):
        a, b = await asyncio.gather(
            mux.open_session("token-u1", "conn-1"),
            mux.open_session("token-u2", "conn-1"),
        )
        assert a.session_id != b.session_id
        assert b.principal.id == "u2"

    @pytest.mark.asyncio
    async def test_in_flight_creations_released(self, mux):
        await asyncio.gather(*[mux.open_session("token-u1", "conn-1") for _ in range(3)])
        assert mux._creations == {}


# ---------------------------------------------------------------------------
# Continuation
# ---------------------------------------------------------------------------

class TestHandle:
    @pytest.mark.asyncio
    async def test_continue_without_reverifying(self, mux):
        session, _ = await mux.handle(PING, bearer="token-u1", connection_key="conn-1")
        calls = mux.verifier.calls
        outcome = await mux.handle(PING, session_id=session.session_id)
        assert outcome[0] is session
        assert mux.verifier.calls == calls

    @pytest.mark.asyncio
    async def test_unknown_session_is_invalid_session(self, mux):
        outcome = await mux.handle(PING, session_id="forged", bearer="token-u1")
        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.INVALID_SESSION
        assert len(mux.table) == 0

    @pytest.mark.asyncio
    async def test_resume_missing_id(self, mux):
        result = await mux.resume(None)
        assert result.kind is ErrorKind.INVALID_SESSION

    @pytest.mark.asyncio
    async def test_resume_touches(self, mux):
        session = await mux.open_session("token-u1", "conn-1")
        session.last_seen = 0
        await mux.resume(session.session_id)
        assert session.last_seen > 0

    @pytest.mark.asyncio
    async def test_tool_call_runs_as_session_principal(self, mux):
        message = {"jsonrpc": "2.0", "id": 7, "method": "tools/call",
                   "params": {"name": "whoami", "arguments": {}}}
        _, reply = await mux.handle(message, bearer="token-carol", connection_key="conn-1")
        assert json.loads(reply["result"]["content"][0]["text"])["id"] == "carol"


# ---------------------------------------------------------------------------
# Termination and push
# ---------------------------------------------------------------------------

class TestTerminate:
    @pytest.mark.asyncio
    async def test_terminate(self, mux):
        session = await mux.open_session("token-u1", "conn-1")
        assert await mux.terminate(session.session_id) is True
        assert session.transport.state is SessionState.CLOSED
        assert len(mux.table) == 0
        result = await mux.resume(session.session_id)
        assert result.kind is ErrorKind.INVALID_SESSION

    @pytest.mark.asyncio
    async def test_terminate_unknown(self, mux):
        assert await mux.terminate("nope") is False
        assert await mux.terminate(None) is False

    @pytest.mark.asyncio
    async def test_new_session_after_terminate(self, mux):
        first = await mux.open_session("token-u1", "conn-1")
        await mux.terminate(first.session_id)
        second = await mux.open_session("token-u1", "conn-1")
        assert second.session_id != first.session_id

    @pytest.mark.asyncio
    async def test_push_to_closed_session_dropped(self, mux):
        session = await mux.open_session("token-u1", "conn-1")
        await mux.terminate(session.session_id)
        assert await session.transport.send({"jsonrpc": "2.0", "method": "x"}) is False

    @pytest.mark.asyncio
    async def test_receive_after_close_raises(self, mux):
        session = await mux.open_session("token-u1", "conn-1")
        await session.transport.close()
        with pytest.raises(TransportClosed):
            await session.transport.receive(PING)


class TestNetworkTransport:
    @pytest.mark.asyncio
    async def test_stream_delivers_then_ends_on_close(self, dispatcher):
        transport = NetworkTransport(dispatcher, Principal(id="u1"), "sid")
        await transport.open()
        received = []

        async def consume():
            async for message in transport.stream(keepalive=0.05):
                if message is not None:
                    received.append(message)

        task = asyncio.create_task(consume())
        assert await transport.send({"n": 1})
        await asyncio.sleep(0.01)
        await transport.close()
        await asyncio.wait_for(task, timeout=1)
        assert received == [{"n": 1}]
        assert transport.streams == 0

    @pytest.mark.asyncio
    async def test_keepalive(self, dispatcher):
        transport = NetworkTransport(dispatcher, Principal(id="u1"), "sid")
        await transport.open()
        stream = transport.stream(keepalive=0.01)
        assert await stream.__anext__() is None
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_pending_pushes_dropped_on_close(self, dispatcher):
        transport = NetworkTransport(dispatcher, Principal(id="u1"), "sid")
        await transport.open()
        await transport.send({"n": 1})
        await transport.send({"n": 2})
        await transport.close()
        assert transport._outbound.empty()

    @pytest.mark.asyncio
    async def test_cancelled_consumer(self, dispatcher):
        transport = NetworkTransport(dispatcher, Principal(id="u1"), "sid")
        await transport.open()

        async def consume():
            async for _ in transport.stream(keepalive=10):
                pass

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        assert transport.streams == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert transport.streams == 0
        assert transport.active

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, dispatcher):
        closed = []

        async def on_close():
            closed.append(True)

        transport = NetworkTransport(dispatcher, Principal(id="u1"), "sid", on_close=on_close)
        await transport.open()
        await transport.close()
        await transport.close()
        assert len(closed) == 1


# ---------------------------------------------------------------------------
# Eviction and shutdown
# ---------------------------------------------------------------------------

class TestEvictIdle:
    @pytest.mark.asyncio
    async def test_evicts_only_idle(self, mux):
        idle = await mux.open_session("token-u1", "conn-1")
        fresh = await mux.open_session("token-u2", "conn-2")
        idle.last_seen = time.time() - 7200
        assert await mux.evict_idle(3600) == 1
        assert await mux.table.get(idle.session_id) is None
        assert await mux.table.get(fresh.session_id) is fresh

    @pytest.mark.asyncio
    async def test_streaming_session_kept(self, mux):
        session = await mux.open_session("token-u1", "conn-1")
        session.last_seen = time.time() - 7200
        session.transport.streams = 1
        assert await mux.evict_idle(3600) == 0

    @pytest.mark.asyncio
    async def test_empty_table(self, mux):
        assert await mux.evict_idle(3600) == 0


class TestShutdown:
    @pytest.mark.asyncio
    async def test_closes_everything_and_stops_accepting(self, mux):
        a = await mux.open_session("token-u1", "conn-1")
        b = await mux.open_session("token-u2", "conn-2")
        await mux.shutdown(grace=1)
        assert len(mux.table) == 0
        assert a.transport.state is SessionState.CLOSED
        assert b.transport.state is SessionState.CLOSED
        result = await mux.open_session("token-u3", "conn-3")
        assert result.kind is ErrorKind.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_forces_stuck_sessions(self, mux):
        session = await mux.open_session("token-u1", "conn-1")

        async def stuck():
            await asyncio.sleep(10)

        session.transport._teardown = stuck
        await mux.shutdown(grace=0.05)
        assert len(mux.table) == 0
        assert session.transport.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_empty(self, mux):
        await mux.shutdown(grace=0.1)
        assert not mux.accepting


# ---------------------------------------------------------------------------
# Local transport
# ---------------------------------------------------------------------------

def _message(payload):
    return SessionMessage(types.JSONRPCMessage.model_validate(payload))


class TestLocalTransport:
    @pytest.mark.asyncio
    async def test_serve(self, dispatcher):
        read_send, read_recv = anyio.create_memory_object_stream(10)
        write_send, write_recv = anyio.create_memory_object_stream(10)
        await read_send.send(_message(PING))
        await read_send.send(ValueError("not JSON-RPC"))
        await read_send.send(_message({"jsonrpc": "2.0", "method": "notifications/initialized"}))
        await read_send.send(_message({"jsonrpc": "2.0", "id": 2, "method": "tools/call",
                                       "params": {"name": "whoami", "arguments": {}}}))
        await read_send.aclose()
        transport = LocalTransport(dispatcher, Principal(id="local-dev", tier="pro"),
                                   read_recv, write_send)

        await transport.serve()

        replies = [m.message.model_dump(by_alias=True, mode="json", exclude_none=True)
                   async for m in write_recv]
        assert [reply["id"] for reply in replies] == [1, 2]
        assert json.loads(replies[1]["result"]["content"][0]["text"])["id"] == "local-dev"
        assert transport.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_send_after_close_dropped(self, dispatcher):
        read_send, read_recv = anyio.create_memory_object_stream(1)
        write_send, write_recv = anyio.create_memory_object_stream(1)
        await read_send.aclose()
        transport = LocalTransport(dispatcher, Principal(id="local-dev"), read_recv, write_send)
        await transport.serve()
        assert await transport.send({"jsonrpc": "2.0", "method": "x"}) is False
        assert [m async for m in write_recv] == []


class TestTransportBase:
    def test_send_must_be_implemented(self, dispatcher):
        class Incomplete(Transport):
            pass

        with pytest.raises(TypeError):
            Incomplete(dispatcher, Principal(id="u1"))
