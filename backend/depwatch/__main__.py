#!/usr/bin/env python3
"""
depwatch command line.

Usage:
    # Run the API with the scheduler:
    python -m depwatch serve --host 0.0.0.0 --port 8080

    # One-shot scan, prints the JSON envelope:
    python -m depwatch scan web
    python -m depwatch scan --all

    # Validate DEPWATCH_CONFIG without starting anything:
    python -m depwatch check-config

Exit codes: 0 ok, 1 scan failed, 2 configuration error.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from depwatch import configure_logging, create_app
from depwatch.config import Settings
from depwatch.errors import ConfigError, DepwatchError
from depwatch.models import STATUS_FAILED
from depwatch.registry import ServiceRegistry
from depwatch.scheduler import build_trigger
from depwatch.service import MonitorService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="depwatch", description="Dependency & vulnerability monitor")
    parser.add_argument("--config", help="path to the JSON config (default: $DEPWATCH_CONFIG)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API and the scheduler")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)

    scan = sub.add_parser("scan", help="scan once and print the result")
    target = scan.add_mutually_exclusive_group(required=True)
    target.add_argument("service", nargs="?", help="registered service name")
    target.add_argument("--all", action="store_true", help="scan every enabled service")
    scan.add_argument("--security-only", action="store_true", help="skip the outdated check")

    sub.add_parser("check-config", help="validate the service registry and schedules")
    return parser


def cmd_serve(settings: Settings, host: str, port: int) -> int:
    app = create_app(settings=settings)
    app.run(host=host, port=port, use_reloader=False)
    return 0


def cmd_scan(settings: Settings, service: Optional[str], scan_all: bool, security_only: bool) -> int:
    monitor = MonitorService(settings)
    monitor.start(scheduler=False)
    options = {"check_outdated": False} if security_only else None
    try:
        if scan_all:
            batch = monitor.orchestrator.scan_all(options=options)
            print(json.dumps(batch.to_dict(), indent=2))
            return 1 if batch.status == STATUS_FAILED else 0

        result = monitor.orchestrator.scan_service(service, wait=True, options=options)
        print(json.dumps(result.to_envelope(), indent=2))
        return 1 if result.status == STATUS_FAILED else 0
    finally:
        monitor.shutdown(wait=True)


def cmd_check_config(settings: Settings) -> int:
    registry = ServiceRegistry.load(settings.services)
    build_trigger(settings.schedule.full_scan, "full_scan")
    build_trigger(settings.schedule.security_scan, "security_scan")

    unknown = [s for s in settings.schedule.security_services if s not in registry]
    if unknown:
        print(f"warning: security_services not in registry: {', '.join(unknown)}")

    for desc in registry.list():
        flag = "" if desc.enabled else " (disabled)"
        print(f"  {desc.name:<24} {desc.ecosystem:<8} {desc.path}{flag}")
    print(f"OK: {len(registry)} service(s)")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging()

    try:
        settings = Settings.from_env(config_path=args.config)
        if args.command == "serve":
            return cmd_serve(settings, args.host, args.port)
        if args.command == "scan":
            return cmd_scan(settings, args.service, args.all, args.security_only)
        return cmd_check_config(settings)
    except DepwatchError as e:
        print(f"error: {e.error_type}: {e.detail}", file=sys.stderr)
        return 2 if isinstance(e, ConfigError) else 1


if __name__ == "__main__":
    sys.exit(main())
