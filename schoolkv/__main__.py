"""CLI entry point for schoolkv."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .broadcast import ChangeBroadcaster
from .config import load_config
from .sync import Outbox, RemoteStoreClient


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the remote store service."""
    config = load_config(args.config)

    import uvicorn

    from .server import RemoteTable, create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    table = RemoteTable(config.server.db_path)
    table.connect()

    broadcaster = None
    if config.broadcast.enabled:
        broadcaster = ChangeBroadcaster(
            config.broadcast,
            "remote-store",
            extra_sensitive_keys=config.extra_sensitive_keys,
        )
        if not await broadcaster.connect():
            print("Warning: MQTT broker not reachable, changes will not be broadcast")

    print("Starting schoolkv remote store")
    print(f"Database: {config.server.db_path}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, table, broadcaster=broadcaster)

    try:
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level="info" if args.verbose else "warning",
            )
        )
        await server.serve()
    finally:
        if broadcaster is not None and broadcaster.is_connected:
            await broadcaster.disconnect()
        table.close()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Check remote store, broker and outbox state."""
    config = load_config(args.config)

    status_data: dict = {
        "timestamp": datetime.now().isoformat(),
        "context": config.context.name,
    }

    remote_status = {"url": config.remote.url or None, "reachable": False}
    if config.remote.url:
        client = RemoteStoreClient(config.remote.url, timeout=config.remote.timeout_seconds)
        remote_status["reachable"] = await client.health_check()
        await client.close()
    status_data["remote"] = remote_status

    broadcaster = ChangeBroadcaster(config.broadcast, config.context.name)
    status_data["broker"] = {
        "enabled": config.broadcast.enabled,
        "broker": config.broadcast.broker,
        "port": config.broadcast.port,
        "reachable": (
            await broadcaster.check_connection() if config.broadcast.enabled else False
        ),
    }

    outbox = Outbox(config.cache.outbox_db_path, config.context.name)
    status_data["outbox"] = outbox.get_stats()
    outbox.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("schoolkv Status Check")
    print("=====================")
    print(f"Context: {status_data['context']}")
    print()

    print("Remote store:")
    if not remote_status["url"]:
        print("  Not configured (local-only)")
    else:
        print(f"  URL: {remote_status['url']}")
        print(f"  Status: {'Reachable' if remote_status['reachable'] else 'Not reachable'}")
    print()

    broker = status_data["broker"]
    print(f"MQTT ({broker['broker']}:{broker['port']}):")
    if not broker["enabled"]:
        print("  Disabled")
    else:
        print(f"  Status: {'Reachable' if broker['reachable'] else 'Not reachable'}")
    print()

    stats = status_data["outbox"]
    print("Outbox:")
    print(f"  Pending writes: {stats['pending_entries']}")
    print(f"  Retrying: {stats['retrying_entries']}")
    print(f"  Rejected: {stats['rejected_entries']}")
    print(f"  Synced: {stats['synced_entries']}")

    return 0


async def cmd_flush(args: argparse.Namespace) -> int:
    """Push pending writes to the remote store once."""
    config = load_config(args.config)

    if not config.remote.url:
        print("Error: no remote URL configured", file=sys.stderr)
        return 1

    outbox = Outbox(config.cache.outbox_db_path, config.context.name)
    client = RemoteStoreClient(
        config.remote.url,
        timeout=config.remote.timeout_seconds,
        max_retries=config.remote.max_retries,
    )

    try:
        result = await client.push_outbox(outbox, limit=config.remote.batch_size)
        removed = outbox.cleanup(config.cache.outbox_retention_days)
    finally:
        await client.close()
        outbox.close()

    print(
        f"Flush: {result.status.value}, pushed={result.pushed}, "
        f"failed={result.failed}, rejected={result.rejected}"
    )
    if removed:
        print(f"Removed {removed} old outbox entries")
    if result.error:
        print(f"Last error: {result.error}", file=sys.stderr)

    return 0 if result.failed == 0 else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="schoolkv",
        description="Synchronized key-value storage for school administration data",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the remote store service")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    serve_parser.set_defaults(func=cmd_serve)

    status_parser = subparsers.add_parser("status", help="Check connectivity and outbox")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    flush_parser = subparsers.add_parser("flush", help="Push pending writes now")
    flush_parser.set_defaults(func=cmd_flush)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
