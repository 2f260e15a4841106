from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys

from .discovery import list_instances
from .shared.config import AppConfig, load_config
from .shared.errors import HostMcpError
from .shared.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="host-mcp", description="Host MCP bridge")
    parser.add_argument("--config", help="path to a JSON config file (default: $HOST_MCP_CONFIG)")
    parser.add_argument("--debug", action="store_true", help="verbose connection and tool-call logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the headless host with the websocket bridge")
    serve.add_argument("--port", type=int, help="base port to try first")
    serve.add_argument("--project", help="project path identifying this instance")
    serve.add_argument("--no-auth", action="store_true", help="do not generate an auth token")
    serve.add_argument("--duration", type=float, help="stop after this many seconds")

    sub.add_parser("proxy", help="run the companion stdio MCP server")

    instances = sub.add_parser("instances", help="list discovered host instances")
    instances.add_argument("--live", action="store_true", help="hide instances with a stale heartbeat")
    return parser


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    server = config.server
    discovery = config.discovery
    if getattr(args, "port", None) is not None:
        server = dataclasses.replace(server, port=args.port)
    if getattr(args, "no_auth", False):
        server = dataclasses.replace(server, use_auth_token=False)
    if getattr(args, "project", None):
        discovery = dataclasses.replace(discovery, project_path=args.project)
    logging_config = config.logging
    if args.debug:
        logging_config = dataclasses.replace(logging_config, debug=True)
    return dataclasses.replace(config, server=server, discovery=discovery, logging=logging_config)


def _serve(config: AppConfig, duration: float | None) -> int:
    from .bridge import HostBridge

    bridge = HostBridge(config)
    bridge.start()
    try:
        bridge.host.run(duration)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        bridge.host.quit()
    return 0


def _instances(config: AppConfig, live: bool) -> int:
    discovery = config.discovery
    records = []
    for status in list_instances(discovery.resolved_directory()):
        stale = status.is_stale(discovery.stale_after)
        if live and stale:
            continue
        record = status.to_dict()
        record["hash"] = status.instance_hash
        record["stale"] = stale
        records.append(record)
    json.dump(records, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = _apply_overrides(load_config(args.config), args)
    configure_logging(config.logging)

    try:
        if args.command == "serve":
            return _serve(config, args.duration)
        if args.command == "proxy":
            from .proxy import run_proxy

            asyncio.run(run_proxy(config))
            return 0
        return _instances(config, args.live)
    except HostMcpError as exc:
        logger.error("%s", exc.message)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
