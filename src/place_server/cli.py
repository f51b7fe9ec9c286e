"""
Command-line interface for the place server.

Commands:
- init-db: Create the index schema
- run: Start the read API (and the in-process indexer when enabled)
- index: Run the indexer alone, without the API
- backfill: Run one backfill pass for every ledger source and exit
- stats: Print global counters, or one wallet's counters

Usage:
    place-server init-db
    place-server run [--host HOST] [--port PORT] [--no-indexer]
    place-server index
    place-server backfill [--from-genesis]
    place-server stats [--address WALLET]

Configuration comes from config/server.ini and PLACE_* environment variables
(see place_server.config).
"""

import argparse
import asyncio
import json
import logging
import sys

from place_server.config import config, print_config_summary

LOG_FORMATS = {
    "simple": "%(levelname)s %(message)s",
    "detailed": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
}


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Install a root handler using ``[logging]`` settings unless overridden."""
    level = (level or config.logging.level).upper()
    fmt = fmt or config.logging.format
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(LOG_FORMATS.get(fmt, LOG_FORMATS["detailed"]), "%Y-%m-%d %H:%M:%S")
        )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)


def cmd_init_db(args: argparse.Namespace) -> int:
    """
    Initialize the index schema.

    Returns:
        0 on success, 1 on error
    """
    from place_server.db.errors import DatabaseError
    from place_server.db.schema import init_database

    try:
        init_database()
        print(f"Database initialized at {config.database.absolute_path}")
        return 0
    except (DatabaseError, OSError) as e:
        print(f"Error initializing database: {e}", file=sys.stderr)
        return 1


def cmd_run(args: argparse.Namespace) -> int:
    """Start the API server. Blocks until interrupted."""
    from place_server.api.server import start_server

    if args.no_indexer:
        config.indexer.enabled = False
    print_config_summary()
    try:
        start_server(host=args.host, port=args.port)
        return 0
    except KeyboardInterrupt:
        return 0
    except OSError as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        return 1


async def _run_indexer() -> None:
    from place_server.indexer.service import IndexerService

    async with IndexerService.from_config(config) as service:
        service.start()
        await service.wait()


def cmd_index(args: argparse.Namespace) -> int:
    """Run live ingestion and periodic backfill until interrupted."""
    from place_server.db.schema import init_database

    init_database()
    try:
        asyncio.run(_run_indexer())
    except KeyboardInterrupt:
        print("Indexer stopped.")
    return 0


async def _backfill(from_genesis: bool) -> list:
    from place_server.indexer.service import IndexerService

    async with IndexerService.from_config(config) as service:
        return await service.backfill_once(from_genesis=from_genesis)


def cmd_backfill(args: argparse.Namespace) -> int:
    """
    Run one backfill pass per source.

    Returns:
        0 when every pass completed, 1 when any was interrupted
    """
    from place_server.db.schema import init_database

    init_database()
    reports = asyncio.run(_backfill(args.from_genesis))
    status = 0
    for report in reports:
        state = "interrupted" if report.interrupted else "complete"
        print(
            f"{report.source}: {state}, {report.pages} pages, {report.seen} entries seen, "
            f"{report.applied} applied, {report.already_processed} already processed, "
            f"{report.malformed} malformed"
        )
        if report.interrupted:
            status = 1
    return status


def cmd_stats(args: argparse.Namespace) -> int:
    """Print global counters, or one wallet's counters with --address."""
    from place_server.db import feed_repo
    from place_server.db.errors import DatabaseError

    try:
        if args.address:
            stats = feed_repo.get_user_stats(args.address)
        else:
            stats = feed_repo.get_global_stats()
    except DatabaseError as e:
        print(f"Error reading stats: {e}", file=sys.stderr)
        return 1
    print(json.dumps(stats, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="place-server",
        description="Place Server - shared pixel canvas indexer and read API",
    )
    parser.add_argument("--log-level", help="Override [logging] level")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init-db", help="Initialize the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    run_parser = subparsers.add_parser(
        "run",
        help="Run the read API",
        description="Start the read API. The indexer runs in-process unless disabled.",
    )
    run_parser.add_argument("--host", type=str, help="Host to bind (default from config)")
    run_parser.add_argument("--port", "-p", type=int, help="Port to bind (default from config)")
    run_parser.add_argument(
        "--no-indexer",
        action="store_true",
        help="Serve the index without running ingestion",
    )
    run_parser.set_defaults(func=cmd_run)

    index_parser = subparsers.add_parser("index", help="Run the indexer without the API")
    index_parser.set_defaults(func=cmd_index)

    backfill_parser = subparsers.add_parser(
        "backfill",
        help="Run one backfill pass and exit",
        description="Walk ledger history back to each source's cursor and apply what is missing.",
    )
    backfill_parser.add_argument(
        "--from-genesis",
        action="store_true",
        help="Ignore stored cursors and walk the full history",
    )
    backfill_parser.set_defaults(func=cmd_backfill)

    stats_parser = subparsers.add_parser("stats", help="Print index counters")
    stats_parser.add_argument("--address", help="Main wallet to report on")
    stats_parser.set_defaults(func=cmd_stats)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging(level=args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
