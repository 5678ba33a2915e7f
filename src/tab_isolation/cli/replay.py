"""Replay a scripted sequence of tab events through an in-memory engine.

Pattern: Dry Run
-----------------
Useful for checking exclusion settings or explaining what the bridge will be
asked to do, without a browser.  The script is a YAML list of events::

    - {event: opened, context: 7}
    - {event: activated, context: 7, url: https://example.com/}
    - {event: cookie, name: auth, value: xyz, domain: example.com}
    - {event: activated, context: 7}
    - {event: closed, context: 7}

Events go through the same ``HookServer`` tools the bridge calls, so the
commands printed are exactly the ones a bridge would receive.
"""

from __future__ import annotations

import json
import logging
import pathlib
from typing import Any

import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tab_isolation.mcp.hook_server import HookServer
from tab_isolation.settings import IsolationSettings
from tab_isolation.store.kv import InMemoryKeyValueStorage

logger = logging.getLogger(__name__)
console = Console()

_EVENT_TOOLS = {
    "opened": "context_opened",
    "activated": "context_activated",
    "cookie": "credential_changed",
    "closed": "context_closed",
}


class ReplayError(Exception):
    """Raised when an event script cannot be read or contains a bad event."""


def load_events(path: str | pathlib.Path) -> list[dict[str, Any]]:
    script = pathlib.Path(path)
    if not script.exists():
        raise ReplayError(f"Event script not found: {script}")
    with open(script) as fh:
        events = yaml.safe_load(fh)
    if not isinstance(events, list):
        raise ReplayError("Event script must be a YAML list of events")
    return events


def _tool_call(event: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    if not isinstance(event, dict):
        raise ReplayError(f"Event must be a mapping, got {event!r}")
    kind = event.get("event")
    tool = _EVENT_TOOLS.get(kind)
    if tool is None:
        raise ReplayError(f"Unknown event type: {kind!r}")
    try:
        return tool, _tool_args(kind, event)
    except KeyError as exc:
        raise ReplayError(f"Event {event!r} is missing field {exc}") from exc


def _tool_args(kind: str, event: dict[str, Any]) -> dict[str, Any]:
    if kind == "cookie":
        args = {
            "name": event["name"],
            "value": str(event.get("value", "")),
            "domain": event["domain"],
            "removed": bool(event.get("removed", False)),
        }
    else:
        args = {"context_id": event["context"]}
        if kind == "activated" and "url" in event:
            args["url"] = event["url"]
    return args


async def replay(
    events: list[dict[str, Any]],
    settings: IsolationSettings,
) -> tuple[list[tuple[dict[str, Any], dict[str, Any]]], HookServer]:
    """Run *events* and return ``(event, reply)`` pairs plus the server used."""
    server = HookServer(settings, storage=InMemoryKeyValueStorage())
    results: list[tuple[dict[str, Any], dict[str, Any]]] = []
    for event in events:
        tool, args = _tool_call(event)
        content = await server.dispatch(tool, args)
        results.append((event, json.loads(content[0].text)))
    return results, server


def _describe(command: dict[str, Any]) -> str:
    if command["op"] == "remove_cookie":
        return f"remove cookie {command['name']} @ {command['url']}"
    parts = []
    if command["remove_rule_ids"]:
        parts.append(f"remove rules {command['remove_rule_ids']}")
    for rule in command["add_rules"]:
        value = rule["action"]["requestHeaders"][0]["value"]
        parts.append(f"add rule {rule['id']}: Cookie={value!r}")
    return "; ".join(parts)


def render(results: list[tuple[dict[str, Any], dict[str, Any]]], server: HookServer) -> None:
    console.print(Panel("[bold]Tab isolation replay[/bold]", border_style="blue"))

    table = Table(title="Events")
    table.add_column("#", style="cyan")
    table.add_column("Event", style="bold")
    table.add_column("Status")
    table.add_column("Browser commands", style="green")
    for index, (event, reply) in enumerate(results, start=1):
        label = event.get("event", "?")
        if "context" in event:
            label = f"{label} {event['context']}"
        elif "domain" in event:
            label = f"{label} {event['name']}@{event['domain']}"
        commands = "\n".join(_describe(c) for c in reply["commands"]) or "-"
        table.add_row(str(index), label, reply["status"], commands)
    console.print(table)

    sessions = server.engine.sessions()
    if not sessions:
        console.print("[dim]No live sessions.[/dim]")
        return
    live = Table(title="Live sessions")
    live.add_column("Context", style="cyan")
    live.add_column("Session", style="bold")
    for context_id, session in sessions.items():
        live.add_row(str(context_id), session.session_id)
    console.print(live)
