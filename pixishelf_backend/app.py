"""
Application factory and command line entry point.

    python -m pixishelf_backend [--host H] [--port P] [--db PATH]
    python -m pixishelf_backend scan <root> [--force] [--db PATH]
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from aiohttp import web

from .config import DB_PATH, HTTP_HOST, HTTP_PORT
from .deps import build_services, dispose_services
from .features.ingest import ScanProgress, ScanState
from .routes import register_routes
from .routes.core import _build_services, _dispose_services, configure_db_path, set_services
from .shared import get_logger

logger = get_logger(__name__)


def create_app(services: dict[str, Any] | None = None, *, db_path: str | None = None) -> web.Application:
    """
    Build the aiohttp application.

    When `services` is given it is installed as-is and left open on cleanup;
    otherwise services are built on startup (against `db_path` when set) and
    disposed on cleanup.
    """
    configure_db_path(db_path)
    app = web.Application()
    register_routes(app)

    async def _on_startup(_app: web.Application) -> None:
        if services is not None:
            set_services(services)
            return
        if await _build_services() is None:
            logger.error("Services failed to start; API calls will return SERVICE_UNAVAILABLE")

    async def _on_cleanup(_app: web.Application) -> None:
        if services is not None:
            set_services(None)
            return
        await _dispose_services()

    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


def _print_progress(event: ScanProgress) -> None:
    pct = f"{event.percentage:5.1f}%" if event.percentage is not None else "  ?  "
    print(f"[{pct}] {event.phase.value}: {event.message}", file=sys.stderr, flush=True)


async def run_scan_once(scan_root: str, *, force: bool = False, db_path: str | None = None, quiet: bool = False) -> int:
    """Run a single scan, print its result as JSON and return an exit code."""
    services_res = await build_services(db_path)
    if not services_res.ok or services_res.data is None:
        print(json.dumps(services_res.to_dict(), indent=2, default=str))
        return 2
    services = services_res.data
    try:
        result = await services["scan"].run_scan(scan_root, force, on_progress=None if quiet else _print_progress)
    finally:
        await dispose_services(services)
    if not result.ok or result.data is None:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 1
    print(json.dumps(result.data.to_dict(), indent=2, default=str))
    return 0 if result.data.state == ScanState.COMPLETE else 1


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pixishelf_backend", description="PixiShelf library server and scanner.")
    parser.add_argument("--db", type=str, default=DB_PATH, help="SQLite database path")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API (default)")
    serve.add_argument("--host", type=str, default=HTTP_HOST)
    serve.add_argument("--port", type=int, default=HTTP_PORT)

    scan = sub.add_parser("scan", help="Scan a library root once and print the result as JSON")
    scan.add_argument("root", type=str, help="Library root directory")
    scan.add_argument("--force", action="store_true", help="Wipe the library before scanning")
    scan.add_argument("--quiet", action="store_true", help="Do not print progress to stderr")

    parser.set_defaults(command="serve", host=HTTP_HOST, port=HTTP_PORT)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    if args.command == "scan":
        return asyncio.run(run_scan_once(args.root, force=args.force, db_path=args.db, quiet=args.quiet))

    app = create_app(db_path=args.db)
    logger.info("Serving PixiShelf API on http://%s:%s", args.host, args.port)
    web.run_app(app, host=args.host, port=args.port, print=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
