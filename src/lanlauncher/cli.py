"""Developer commands over the launcher core.

Usage:
    lanlauncher discover                 # Broadcast scan, list servers
    lanlauncher discover --localhost     # Also try localhost:3000/8080
    lanlauncher discover --one           # Auto-connect mode, first server only
    lanlauncher processes                # Normalized process names + Steam app
    lanlauncher processes --catalog games.json
    lanlauncher check http://10.0.0.5:3000
    lanlauncher --json discover          # JSON output for any command
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, List

from lanlauncher import __version__
from lanlauncher.config import LauncherConfig, LauncherConfigError
from lanlauncher.discovery.probe import DiscoveryProbe
from lanlauncher.models import GameRecord
from lanlauncher.server_api import ServerApi
from lanlauncher.watchdog.processes import ProcessWatchdog


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lanlauncher",
        description="LAN launcher core diagnostics",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Output results as JSON",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command")

    discover = sub.add_parser("discover", help="Find launcher servers on the LAN")
    discover.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Scan ceiling when nobody answers (default: 5)",
    )
    discover.add_argument(
        "--localhost",
        action="store_true",
        default=None,
        help="Also check well-known localhost ports",
    )
    discover.add_argument(
        "--one",
        action="store_true",
        help="Stop at the first server (auto-connect mode)",
    )
    discover.add_argument(
        "--preferred",
        default=None,
        metavar="URL",
        help="With --one: the remembered server to wait for",
    )

    processes = sub.add_parser("processes", help="Show what the process watchdog sees")
    processes.add_argument(
        "--catalog",
        default=None,
        metavar="FILE",
        help="JSON list of game records to match against running processes",
    )

    check = sub.add_parser("check", help="Health-check a server URL")
    check.add_argument("url", help="Server base URL, e.g. http://10.0.0.5:3000")
    return parser


def _print(data: Any, as_json: bool, text: str) -> None:
    if as_json:
        print(json.dumps(data, indent=2, ensure_ascii=False))
    else:
        print(text)


async def _discover(args: argparse.Namespace, config: LauncherConfig) -> int:
    probe = DiscoveryProbe(config.discovery)
    if args.one:
        found = await probe.discover_one(
            preferred=args.preferred,
            timeout=args.timeout,
            include_localhost=args.localhost,
        )
        candidates = [found] if found is not None else []
    else:
        candidates = await probe.discover(timeout=args.timeout, include_localhost=args.localhost)

    if not candidates:
        _print([], args.as_json, "No launcher servers found")
        return 1
    lines = [f"Found {len(candidates)} server(s):"]
    for c in candidates:
        detail = c.server_name or "unnamed"
        if c.protocol_version:
            detail += f", v{c.protocol_version}"
        lines.append(f"  • {c.address:<28} {detail}")
    _print([c.to_dict() for c in candidates], args.as_json, "\n".join(lines))
    return 0


def _load_catalog(path: str) -> List[GameRecord]:
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if isinstance(raw, dict):
        raw = raw.get("games") or raw.get("data") or []
    return [GameRecord.from_dict(item) for item in raw]


async def _processes(args: argparse.Namespace, config: LauncherConfig) -> int:
    watchdog = ProcessWatchdog(config.watchdog)
    names = await watchdog.list_running_process_names()
    if names is None:
        print("Process listing failed", file=sys.stderr)
        return 1
    app_id = await watchdog.current_external_app_id()

    data: dict = {"externalAppId": app_id, "processes": sorted(names)}
    lines = [f"Steam app: {app_id or 'none'}", f"{len(names)} running process image(s)"]

    if args.catalog:
        games = _load_catalog(args.catalog)
        running = [g for g in games if watchdog.is_game_running(g, names)]
        data["running"] = [{"id": g.id, "name": g.name} for g in running]
        lines.append("Running catalog games:")
        lines.extend(f"  • [{g.id}] {g.name}" for g in running)
        if not running:
            lines.append("  (none)")
    else:
        lines.extend(f"  {name}" for name in sorted(names))

    _print(data, args.as_json, "\n".join(lines))
    return 0


async def _check(args: argparse.Namespace, config: LauncherConfig) -> int:
    api = ServerApi()
    healthy = await api.check_health(args.url)
    name = await api.get_server_name(args.url) if healthy else None
    data = {"address": args.url.rstrip("/"), "healthy": healthy, "serverName": name}
    status = "healthy" if healthy else "unreachable"
    _print(data, args.as_json, f"{data['address']}: {status}" + (f" ({name})" if name else ""))
    return 0 if healthy else 1


_COMMANDS = {
    "discover": _discover,
    "processes": _processes,
    "check": _check,
}


def main(argv: List[str] | None = None) -> int:
    """Entry point for ``lanlauncher``."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 2

    try:
        config = LauncherConfig.from_env()
    except LauncherConfigError as exc:
        print(f"❌ Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(_COMMANDS[args.command](args, config))
    except (OSError, ValueError) as exc:
        print(f"❌ {args.command} failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
