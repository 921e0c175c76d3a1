"""
herald_tools.py — MCP tools and the JSON-RPC dispatcher shared by both transports.

Tools are registered on a FastMCP instance; the dispatcher answers the MCP
methods itself (initialize, ping, tools/list, tools/call) so the same code
serves the stdio pipe and the network sessions. The caller's Principal is
bound to a ContextVar for the duration of each tool call.

Briefing records and their editions live in an external document store
reached through the narrow BriefingBackend protocol; MemoryBriefingBackend
stands in for it in development and tests.

Tier entitlements (briefing count, daily schedule, edition history) are
checked here, before the backend is touched. A refused entitlement comes back
as a tool error tagged ``forbidden``.
"""

import json
import logging
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Protocol

from mcp import types
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from pydantic import ValidationError

from herald_errors import ErrorKind, Failure
from herald_guard import RateLimiter, audit
from herald_identity import Principal

logger = logging.getLogger("herald-tools")

SERVER_NAME = "herald"
SERVER_VERSION = "1.0.0"
SCHEDULES = ("daily", "weekly", "monthly")
DEFAULT_SCHEDULE = "weekly"

INSTRUCTIONS = (
    "Herald — topic briefings delivered automatically.\n"
    "  create_briefing      — Start tracking a topic.\n"
    "  get_briefings        — List your briefings.\n"
    "  get_briefing_config  — Sources, schedule and stats of one briefing.\n"
    "  update_briefing      — Change schedule, sources, categories or pause.\n"
    "  delete_briefing      — Stop tracking a topic.\n"
    "  get_editions         — Past editions of a briefing.\n"
    "  get_edition_content  — Read one edition, summaries grouped by category.\n"
    "  whoami               — Show the signed-in account.\n"
)

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
RATE_LIMITED = -32000

_current_principal: ContextVar[Principal | None] = ContextVar("herald_principal", default=None)


def current_principal() -> Principal:
    principal = _current_principal.get()
    if principal is None:
        raise ToolError("No authenticated principal for this call")
    return principal


# ---------------------------------------------------------------------------
# Tier entitlements
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Entitlements:
    max_briefings: int | None  # None = unlimited
    max_edition_history: int
    daily_schedule: bool


FREE_ENTITLEMENTS = Entitlements(max_briefings=1, max_edition_history=1, daily_schedule=False)
PRO_ENTITLEMENTS = Entitlements(max_briefings=None, max_edition_history=30, daily_schedule=True)


def entitlements_for(tier: str) -> Entitlements:
    return FREE_ENTITLEMENTS if tier == "free" else PRO_ENTITLEMENTS


class TierLimitError(ToolError):
    """The caller's tier does not include what the tool call asked for."""


# ---------------------------------------------------------------------------
# Briefing backend
# ---------------------------------------------------------------------------

class BriefingBackend(Protocol):
    async def create_briefing(self, principal: Principal, topic: str,
                              description: str = "") -> dict[str, Any]: ...

    async def count_briefings(self, principal: Principal) -> int: ...

    async def list_briefings(self, principal: Principal, limit: int = 10,
                             offset: int = 0) -> list[dict[str, Any]]: ...

    async def get_briefing_config(self, principal: Principal,
                                  briefing_id: str) -> dict[str, Any] | None: ...

    async def update_briefing(self, principal: Principal, briefing_id: str,
                              changes: dict[str, Any]) -> dict[str, Any] | None: ...

    async def delete_briefing(self, principal: Principal, briefing_id: str) -> bool: ...

    async def list_editions(self, principal: Principal, briefing_id: str,
                            limit: int = 10) -> list[dict[str, Any]] | None: ...

    async def get_edition_content(self, principal: Principal,
                                  edition_id: str) -> dict[str, Any] | None: ...


def _edition_summary(edition: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": edition["id"],
        "briefingId": edition["briefingId"],
        "generatedAt": edition["generatedAt"],
        "status": edition["status"],
        "summaryCount": sum(len(c.get("summaries", [])) for c in edition["categories"]),
        "tokenUsage": edition["tokenUsage"],
    }


class MemoryBriefingBackend:
    def __init__(self) -> None:
        self.briefings: dict[str, dict[str, Any]] = {}
        self.editions: dict[str, dict[str, Any]] = {}

    def _owned(self, principal: Principal, briefing_id: str) -> dict[str, Any] | None:
        briefing = self.briefings.get(briefing_id)
        if briefing is None or briefing["userId"] != principal.id:
            return None
        return briefing

    async def create_briefing(self, principal: Principal, topic: str,
                              description: str = "") -> dict[str, Any]:
        now = time.time()
        briefing = {
            "id": str(uuid.uuid4()),
            "userId": principal.id,
            "topic": topic,
            "description": description,
            "schedule": DEFAULT_SCHEDULE,
            "sources": [],
            "categories": [],
            "active": True,
            "createdAt": now,
            "updatedAt": now,
        }
        self.briefings[briefing["id"]] = briefing
        return dict(briefing)

    async def count_briefings(self, principal: Principal) -> int:
        """Active (not paused) briefings owned by ``principal``."""
        return sum(1 for b in self.briefings.values()
                   if b["userId"] == principal.id and b["active"])

    async def list_briefings(self, principal: Principal, limit: int = 10,
                             offset: int = 0) -> list[dict[str, Any]]:
        owned = [b for b in self.briefings.values() if b["userId"] == principal.id]
        owned.sort(key=lambda b: b["createdAt"], reverse=True)
        return [dict(b) for b in owned[offset:offset + limit]]

    async def get_briefing_config(self, principal: Principal,
                                  briefing_id: str) -> dict[str, Any] | None:
        briefing = self._owned(principal, briefing_id)
        if briefing is None:
            return None
        editions = [e for e in self.editions.values() if e["briefingId"] == briefing_id]
        return {
            "briefingId": briefing["id"],
            "topic": briefing["topic"],
            "description": briefing["description"],
            "schedule": briefing["schedule"],
            "sources": list(briefing["sources"]),
            "categories": list(briefing["categories"]),
            "active": briefing["active"],
            "stats": {
                "totalEditions": len(editions),
                "lastEditionDate": max((e["generatedAt"] for e in editions), default=None),
                "totalSummaries": sum(_edition_summary(e)["summaryCount"] for e in editions),
            },
        }

    async def update_briefing(self, principal: Principal, briefing_id: str,
                              changes: dict[str, Any]) -> dict[str, Any] | None:
        briefing = self._owned(principal, briefing_id)
        if briefing is None:
            return None
        briefing.update(changes)
        briefing["updatedAt"] = time.time()
        return dict(briefing)

    async def delete_briefing(self, principal: Principal, briefing_id: str) -> bool:
        if self._owned(principal, briefing_id) is None:
            return False
        del self.briefings[briefing_id]
        for edition_id in [k for k, e in self.editions.items() if e["briefingId"] == briefing_id]:
            del self.editions[edition_id]
        return True

    def add_edition(self, briefing_id: str, categories: list[dict[str, Any]] | None = None,
                    raw_content: str | None = None, status: str = "completed",
                    token_usage: int = 0, generated_at: float | None = None) -> dict[str, Any]:
        """Record a generated edition (the generation workflow itself is external)."""
        briefing = self.briefings[briefing_id]
        edition = {
            "id": str(uuid.uuid4()),
            "briefingId": briefing_id,
            "userId": briefing["userId"],
            "generatedAt": time.time() if generated_at is None else generated_at,
            "status": status,
            "tokenUsage": token_usage,
            "categories": categories or [],
            "rawContent": raw_content,
        }
        self.editions[edition["id"]] = edition
        return edition

    async def list_editions(self, principal: Principal, briefing_id: str,
                            limit: int = 10) -> list[dict[str, Any]] | None:
        if self._owned(principal, briefing_id) is None:
            return None
        editions = [e for e in self.editions.values() if e["briefingId"] == briefing_id]
        editions.sort(key=lambda e: e["generatedAt"], reverse=True)
        return [_edition_summary(e) for e in editions[:limit]]

    async def get_edition_content(self, principal: Principal,
                                  edition_id: str) -> dict[str, Any] | None:
        edition = self.editions.get(edition_id)
        if edition is None or self._owned(principal, edition["briefingId"]) is None:
            return None
        return {
            "id": edition["id"],
            "briefingId": edition["briefingId"],
            "edition": _edition_summary(edition),
            "categories": [
                {
                    "category": c.get("category", ""),
                    "count": len(c.get("summaries", [])),
                    "summaries": list(c.get("summaries", [])),
                }
                for c in edition["categories"]
            ],
            "rawContent": edition["rawContent"],
        }


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

def _check_uuid(value: str, name: str = "briefingId") -> str:
    try:
        return str(uuid.UUID(value))
    except (ValueError, TypeError):
        raise ToolError(f"Invalid {name}")


def create_tool_server(backend: BriefingBackend) -> FastMCP:
    mcp = FastMCP(SERVER_NAME, instructions=INSTRUCTIONS)

    @mcp.tool()
    async def whoami() -> str:
        """Show the account this connection is signed in as."""
        return json.dumps(current_principal().summary())

    @mcp.tool()
    async def create_briefing(topic: str, description: str = "") -> str:
        """Create a briefing that collects content about a topic."""
        topic = topic.strip()
        if not 3 <= len(topic) <= 100:
            raise ToolError("Topic must be between 3 and 100 characters")
        if len(description) > 500:
            raise ToolError("Description too long")
        principal = current_principal()
        allowed = entitlements_for(principal.tier).max_briefings
        if allowed is not None and await backend.count_briefings(principal) >= allowed:
            raise TierLimitError(
                f"The {principal.tier} tier allows only {allowed} briefing(s). "
                "Upgrade to Pro for unlimited briefings."
            )
        briefing = await backend.create_briefing(principal, topic, description)
        return json.dumps({
            "briefing": briefing,
            "message": f'Briefing created! Collecting content about "{topic}".',
        })

    @mcp.tool()
    async def get_briefings(limit: int = 10, offset: int = 0) -> str:
        """List the caller's briefings, newest first."""
        if not 1 <= limit <= 50 or offset < 0:
            raise ToolError("limit must be 1-50 and offset non-negative")
        briefings = await backend.list_briefings(current_principal(), limit, offset)
        return json.dumps({"briefings": briefings, "count": len(briefings)})

    @mcp.tool()
    async def get_briefing_config(briefingId: str) -> str:
        """Show one briefing's sources, schedule, categories and edition statistics."""
        config = await backend.get_briefing_config(current_principal(), _check_uuid(briefingId))
        if config is None:
            raise ToolError("Briefing not found")
        return json.dumps({"config": config})

    @mcp.tool()
    async def update_briefing(
        briefingId: str,
        schedule: str | None = None,
        sources: list[str] | None = None,
        categories: list[str] | None = None,
        active: bool | None = None,
    ) -> str:
        """Update a briefing's schedule, sources, categories or active flag."""
        briefing_id = _check_uuid(briefingId)
        principal = current_principal()
        changes: dict[str, Any] = {}
        if schedule is not None:
            if schedule not in SCHEDULES:
                raise ToolError(f"schedule must be one of: {', '.join(SCHEDULES)}")
            if schedule == "daily" and not entitlements_for(principal.tier).daily_schedule:
                raise TierLimitError("Daily briefings require Pro. Upgrade to access daily schedules.")
            changes["schedule"] = schedule
        if sources is not None:
            if not all(s.startswith(("http://", "https://")) for s in sources):
                raise ToolError("Invalid source URL")
            changes["sources"] = sources
        if categories is not None:
            changes["categories"] = categories
        if active is not None:
            changes["active"] = active
        briefing = await backend.update_briefing(principal, briefing_id, changes)
        if briefing is None:
            raise ToolError("Briefing not found")
        return json.dumps({"briefing": briefing})

    @mcp.tool()
    async def delete_briefing(briefingId: str) -> str:
        """Delete a briefing."""
        briefing_id = _check_uuid(briefingId)
        if not await backend.delete_briefing(current_principal(), briefing_id):
            raise ToolError("Briefing not found")
        return json.dumps({"deleted": briefing_id})

    @mcp.tool()
    async def get_editions(briefingId: str, limit: int = 10) -> str:
        """List past editions of a briefing, newest first."""
        briefing_id = _check_uuid(briefingId)
        if not 1 <= limit <= 30:
            raise ToolError("limit must be 1-30")
        principal = current_principal()
        allowed = entitlements_for(principal.tier).max_edition_history
        if limit > allowed:
            logger.info("edition history for %s capped at %d (%s tier)",
                        principal.id, allowed, principal.tier)
            limit = allowed
        editions = await backend.list_editions(principal, briefing_id, limit)
        if editions is None:
            raise ToolError("Briefing not found")
        return json.dumps({"editions": editions})

    @mcp.tool()
    async def get_edition_content(editionId: str) -> str:
        """Read one edition: its summaries grouped by category."""
        edition_id = _check_uuid(editionId, "editionId")
        content = await backend.get_edition_content(current_principal(), edition_id)
        if content is None:
            raise ToolError("Edition not found")
        return json.dumps({"content": content})

    return mcp


# ---------------------------------------------------------------------------
# JSON-RPC dispatch
# ---------------------------------------------------------------------------

def _error(msg_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}}


def _result(msg_id: Any, result: Any) -> dict[str, Any]:
    if isinstance(result, types.Result):
        result = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    return {"jsonrpc": "2.0", "id": msg_id, "result": result}


def parse_error() -> dict[str, Any]:
    return _error(None, PARSE_ERROR, "Parse error")


class ToolDispatcher:
    """Answer MCP JSON-RPC messages on behalf of an authenticated Principal."""

    def __init__(self, mcp: FastMCP, tier_limits: dict[str, int] | None = None,
                 rate_limit_enabled: bool = True):
        self.mcp = mcp
        self.tier_limits = tier_limits or {}
        self.rate_limit_enabled = rate_limit_enabled
        self.rate_limiter = RateLimiter(window=60)

    def _allowed(self, principal: Principal) -> bool:
        if not self.rate_limit_enabled:
            return True
        limit = self.tier_limits.get(principal.tier, self.tier_limits.get("free", 10))
        return self.rate_limiter.is_allowed(principal.id, limit)

    async def dispatch(self, message: Any, principal: Principal) -> dict[str, Any] | None:
        """Return the reply for ``message``, or None when nothing is owed.

        ``message`` is decoded JSON (network) or an already parsed
        ``types.JSONRPCMessage`` (stdio).
        """
        if not isinstance(message, types.JSONRPCMessage):
            try:
                message = types.JSONRPCMessage.model_validate(message)
            except ValidationError:
                return _error(None, INVALID_REQUEST, "Invalid Request")
        rpc = message.root
        if isinstance(rpc, types.JSONRPCNotification):
            logger.debug("notification %s from %s", rpc.method, principal.id)
            return None
        if not isinstance(rpc, types.JSONRPCRequest):
            # A response from the client (e.g. to a server push); nothing to answer.
            return None
        method, msg_id = rpc.method, rpc.id
        params = rpc.params or {}

        if method == "initialize":
            return _result(msg_id, self._initialize(params))
        if method == "ping":
            return _result(msg_id, {})
        if method == "tools/list":
            tools = await self.mcp.list_tools()
            return _result(msg_id, types.ListToolsResult(tools=tools))
        if method == "tools/call":
            return await self._call_tool(msg_id, params, principal)
        return _error(msg_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    def _initialize(self, params: dict[str, Any]) -> types.InitializeResult:
        requested = params.get("protocolVersion")
        version = (requested if requested in SUPPORTED_PROTOCOL_VERSIONS
                   else types.LATEST_PROTOCOL_VERSION)
        return types.InitializeResult(
            protocolVersion=version,
            capabilities=types.ServerCapabilities(tools=types.ToolsCapability(listChanged=False)),
            serverInfo=types.Implementation(name=SERVER_NAME, version=SERVER_VERSION),
            instructions=INSTRUCTIONS,
        )

    async def _call_tool(self, msg_id: Any, params: dict[str, Any],
                         principal: Principal) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not isinstance(arguments, dict):
            return _error(msg_id, INVALID_PARAMS, "tools/call needs a name and object arguments")
        if not self._allowed(principal):
            audit("rate_limited", principal_id=principal.id, tier=principal.tier, tool=name)
            return _error(msg_id, RATE_LIMITED, "Rate limit exceeded")

        token = _current_principal.set(principal)
        try:
            result = await self.mcp.call_tool(name, arguments)
        except ToolError as e:
            return _result(msg_id, self._tool_failure(name, e, principal))
        finally:
            _current_principal.reset(token)

        structured = None
        if isinstance(result, tuple):
            content, structured = result
        elif isinstance(result, dict):
            content, structured = [types.TextContent(type="text", text=json.dumps(result))], result
        else:
            content = list(result)
        logger.info("tool %s ok for %s", name, principal.id)
        return _result(msg_id, types.CallToolResult(content=content, structuredContent=structured))

    def _tool_failure(self, name: str, error: ToolError, principal: Principal) -> types.CallToolResult:
        structured = None
        # FastMCP re-raises tool exceptions as a plain ToolError chained to the original.
        if isinstance(error, TierLimitError) or isinstance(error.__cause__, TierLimitError):
            refused = Failure(ErrorKind.AUTHORIZATION, str(error.__cause__ or error), "tier_limit")
            audit("tier_limit", principal_id=principal.id, tier=principal.tier, tool=name)
            structured = refused.to_dict()
        logger.info("tool %s failed for %s: %s", name, principal.id, error)
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=str(error))],
            structuredContent=structured, isError=True,
        )
