"""CLI entry point: loads settings and runs the hook server or a replay."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from tab_isolation.settings import DEFAULT_SETTINGS_PATH, SettingsError, load_settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Tab isolation: per-tab cookie sessions with guaranteed cleanup",
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_SETTINGS_PATH),
        help="Path to settings.yaml",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("serve", help="Run the MCP hook server on stdio")
    replay_parser = sub.add_parser("replay", help="Replay a YAML event script in memory")
    replay_parser.add_argument("events", help="Path to the event script")
    args = parser.parse_args(argv)

    # stdout carries the MCP protocol when serving, so logs go to stderr.
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        settings = load_settings(args.config)
    except SettingsError as exc:
        logging.getLogger(__name__).error("%s", exc)
        return 2

    if args.command == "serve":
        from tab_isolation.mcp.hook_server import HookServer

        asyncio.run(HookServer(settings).run())
        return 0

    from tab_isolation.cli.replay import ReplayError, load_events, render, replay

    try:
        events = load_events(args.events)
        results, server = asyncio.run(replay(events, settings))
    except ReplayError as exc:
        logging.getLogger(__name__).error("%s", exc)
        return 2
    render(results, server)
    return 0


if __name__ == "__main__":
    sys.exit(main())
