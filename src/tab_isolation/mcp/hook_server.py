"""MCP server that lets a browser-side bridge drive the isolation engine.

Pattern: Command Outbox
------------------------
The engine needs to remove cookies and update declarative header rules, but
those APIs only exist inside the browser.  The bridge therefore reports each
lifecycle event as an MCP tool call, and every side effect the engine makes
during that call is queued as a command and returned in the tool result::

    {"status": "closed",
     "commands": [
        {"op": "remove_cookie", "url": "https://example.com", "name": "auth"},
        {"op": "update_rules", "add_rules": [], "remove_rule_ids": [7]}]}

The bridge replays the commands in order.  Consecutive rule mutations are
merged into one ``update_rules`` command, which the browser applies
atomically (removals before additions).

The server also tracks what the engine asks the resolver: the foreground
context is the last one reported by ``context_activated``, together with its
URL.

A handler that fails replies ``{"status": "error", "error": ...}``; the
commands queued before the failure are still returned with it.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from tab_isolation.engine import IsolationEngine
from tab_isolation.environment import ContextId, KeyValueStorage
from tab_isolation.rules.header_rule import HeaderRule
from tab_isolation.session.registry import AllocationError
from tab_isolation.settings import IsolationSettings
from tab_isolation.store.credentials import CredentialEntry

logger = logging.getLogger(__name__)

_CONTEXT_ID_SCHEMA = {
    "type": "integer",
    "description": "Browser tab id; also the id of the tab's header rule.",
}


def _context_id(args: dict[str, Any]) -> int:
    """Declarative rule ids are integers, so only integer tab ids are accepted."""
    context_id = args["context_id"]
    if isinstance(context_id, bool) or not isinstance(context_id, int):
        raise ValueError(f"context_id must be an integer tab id, got {context_id!r}")
    return context_id


class BrowserBridge:
    """Browser ports backed by reported state and a command outbox."""

    def __init__(self) -> None:
        self._foreground: ContextId | None = None
        self._urls: dict[ContextId, str] = {}
        self._outbox: list[dict[str, Any]] = []

    # -- state reported by the bridge ----------------------------------------

    def activated(self, context_id: ContextId, url: str | None) -> None:
        self._foreground = context_id
        if url is not None:
            self._urls[context_id] = url

    def closed(self, context_id: ContextId) -> None:
        self._urls.pop(context_id, None)
        if self._foreground == context_id:
            self._foreground = None

    def drain(self) -> list[dict[str, Any]]:
        commands, self._outbox = self._outbox, []
        return commands

    # -- ContextResolver -----------------------------------------------------

    async def current_foreground_context(self) -> ContextId | None:
        return self._foreground

    async def context_url(self, context_id: ContextId) -> str | None:
        return self._urls.get(context_id)

    # -- CredentialRevoker ---------------------------------------------------

    async def revoke_credential(self, url: str, name: str) -> bool:
        self._outbox.append({"op": "remove_cookie", "url": url, "name": name})
        return True

    # -- RuleEngine ----------------------------------------------------------

    def _rules_command(self) -> dict[str, Any]:
        if self._outbox and self._outbox[-1]["op"] == "update_rules":
            return self._outbox[-1]
        command: dict[str, Any] = {"op": "update_rules", "add_rules": [], "remove_rule_ids": []}
        self._outbox.append(command)
        return command

    async def install_header_rule(self, rule: HeaderRule) -> None:
        self._rules_command()["add_rules"].append(rule.to_dict())

    async def remove_header_rule(self, rule_id: ContextId) -> None:
        command = self._rules_command()
        if rule_id not in command["remove_rule_ids"]:
            command["remove_rule_ids"].append(rule_id)


class HookServer:
    """Exposes the engine's entry points as MCP tools over stdio."""

    def __init__(
        self,
        settings: IsolationSettings,
        storage: KeyValueStorage | None = None,
        server_name: str = "tab-isolation",
    ) -> None:
        self._server = Server(server_name)
        self._bridge = BrowserBridge()
        self._engine = IsolationEngine(
            settings,
            resolver=self._bridge,
            revoker=self._bridge,
            rule_engine=self._bridge,
            storage=storage,
        )
        self._tools: dict[str, Tool] = {}
        self._tool_handlers: dict[str, Any] = {}
        self._register_all_tools()

    @property
    def engine(self) -> IsolationEngine:
        return self._engine

    # -- tool registration ---------------------------------------------------

    def _register_tool(
        self,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        handler: Any,
    ) -> None:
        self._tools[name] = Tool(name=name, description=description, inputSchema=input_schema)
        self._tool_handlers[name] = handler

    def _register_all_tools(self) -> None:
        self._register_tool(
            name="context_opened",
            description="A tab was opened for isolated browsing; allocate its session.",
            input_schema={
                "type": "object",
                "properties": {"context_id": _CONTEXT_ID_SCHEMA},
                "required": ["context_id"],
            },
            handler=self._context_opened,
        )
        self._register_tool(
            name="context_activated",
            description="A tab became the foreground tab; refresh its Cookie rule.",
            input_schema={
                "type": "object",
                "properties": {
                    "context_id": _CONTEXT_ID_SCHEMA,
                    "url": {"type": "string", "description": "URL loaded in the tab."},
                },
                "required": ["context_id"],
            },
            handler=self._context_activated,
        )
        self._register_tool(
            name="credential_changed",
            description="The browser reported a cookie change.",
            input_schema={
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "value": {"type": "string"},
                    "domain": {"type": "string"},
                    "removed": {"type": "boolean", "default": False},
                },
                "required": ["name", "value", "domain"],
            },
            handler=self._credential_changed,
        )
        self._register_tool(
            name="context_closed",
            description="A tab was closed; revoke its cookies and drop its rule.",
            input_schema={
                "type": "object",
                "properties": {"context_id": _CONTEXT_ID_SCHEMA},
                "required": ["context_id"],
            },
            handler=self._context_closed,
        )

    # -- tool handlers -------------------------------------------------------

    async def _context_opened(self, args: dict[str, Any]) -> dict[str, Any]:
        context_id = _context_id(args)
        try:
            session_id = await self._engine.on_open(context_id)
        except AllocationError as exc:
            logger.error("Context %s left unmanaged: %s", context_id, exc)
            return {"status": "unmanaged", "error": str(exc)}
        return {"status": "opened", "session_id": session_id}

    async def _context_activated(self, args: dict[str, Any]) -> dict[str, Any]:
        context_id = _context_id(args)
        self._bridge.activated(context_id, args.get("url"))
        rule = await self._engine.on_activate(context_id)
        return {"status": "projected" if rule is not None else "skipped"}

    async def _credential_changed(self, args: dict[str, Any]) -> dict[str, Any]:
        entry = CredentialEntry(name=args["name"], value=args["value"], domain=args["domain"])
        session_id = await self._engine.on_credential_changed(entry, removed=args.get("removed", False))
        if session_id is None:
            return {"status": "ignored"}
        return {"status": "captured", "session_id": session_id}

    async def _context_closed(self, args: dict[str, Any]) -> dict[str, Any]:
        context_id = _context_id(args)
        await self._engine.on_close(context_id)
        self._bridge.closed(context_id)
        return {"status": "closed"}

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> list[TextContent]:
        handler = self._tool_handlers.get(name)
        if handler is None:
            raise ValueError(f"Unknown tool: {name}")
        try:
            result = await handler(arguments)
        except Exception as exc:
            # Commands queued before the failure still have to reach the bridge.
            logger.exception("Tool %s failed", name)
            result = {"status": "error", "error": str(exc)}
        result["commands"] = self._bridge.drain()
        return [TextContent(type="text", text=json.dumps(result))]

    # -- lifecycle -----------------------------------------------------------

    def setup_handlers(self) -> None:
        """Wire up MCP protocol handlers."""
        server = self._server

        @server.list_tools()
        async def list_tools() -> list[Tool]:
            return list(self._tools.values())

        @server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            return await self.dispatch(name, arguments)

    async def run(self) -> None:
        """Start the MCP server on stdio."""
        from mcp.server.stdio import stdio_server

        self.setup_handlers()
        async with stdio_server() as (read_stream, write_stream):
            await self._server.run(
                read_stream,
                write_stream,
                self._server.create_initialization_options(),
            )
