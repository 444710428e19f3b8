"""CLI entry point for localsync."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from .config import load_config
from .errors import LocalSyncError
from .node import SyncNode, run_node
from .store import open_store


class JSONFormatter(logging.Formatter):
    """One JSON object per log line, tagged with the node name."""

    def __init__(self, node_name: str | None = None):
        super().__init__()
        self.node_name = node_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "node": self.node_name,
            "logger": record.name,
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    verbose: bool = False,
    log_level: str | None = None,
    json_output: bool = False,
    node_name: str | None = None,
) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
        node_name: Node name added to JSON log lines.
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
        handler.setFormatter(JSONFormatter(node_name))
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_get(args: argparse.Namespace) -> int:
    """Print a record."""
    config = load_config(args.config)
    store = open_store(config.store.db_path)
    try:
        record = store.get(args.id)
        if record is None:
            print(f"Record not found: {args.id}", file=sys.stderr)
            return 1
        _print_json(record.to_dict())
    finally:
        store.table.db.close()
    return 0


def cmd_put(args: argparse.Namespace) -> int:
    """Create or update a record locally."""
    config = load_config(args.config)
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        print(f"Invalid JSON payload: {e}", file=sys.stderr)
        return 1

    store = open_store(config.store.db_path)
    try:
        record = store.put(args.id, payload)
        _print_json(record.to_dict())
    finally:
        store.table.db.close()
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a record locally."""
    config = load_config(args.config)
    store = open_store(config.store.db_path)
    try:
        tombstone = store.delete(args.id)
        if tombstone is None:
            print(f"Record not found: {args.id}", file=sys.stderr)
            return 1
        print(f"Deleted {args.id}")
    finally:
        store.table.db.close()
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """List live records."""
    config = load_config(args.config)
    store = open_store(config.store.db_path)
    try:
        for record in store.scan():
            print(f"{record.id}\tv{record.version}\t{record.updated_at.isoformat()}")
    finally:
        store.table.db.close()
    return 0


def cmd_dead_letters(args: argparse.Namespace) -> int:
    """List dead-lettered changes, or requeue one."""
    config = load_config(args.config)
    store = open_store(config.store.db_path)
    try:
        if args.requeue is not None:
            entry = store.log.requeue_dead_letter(args.requeue)
            if entry is None:
                print(f"No dead letter with sequence {args.requeue}", file=sys.stderr)
                return 1
            print(f"Requeued as entry {entry.sequence_no}")
            return 0

        letters = store.log.list_dead_letters()
        if not letters:
            print("No dead letters")
        for letter in letters:
            print(
                f"{letter.sequence_no}\t{letter.operation.value}\t"
                f"{letter.record_id}\t{letter.reason}"
            )
    finally:
        store.table.db.close()
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync pass against the remote."""
    config = load_config(args.config)
    node = SyncNode(config)
    node.open()
    node.monitor.settle_window = 0
    node.monitor.report(True)

    try:
        session = await node.coordinator.sync_now()
        if session is None:
            print("Nothing to sync")
        else:
            _print_json(session.to_dict())
    except LocalSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await node.stop()
    return 0


async def cmd_pull(args: argparse.Namespace) -> int:
    """Fetch remote changes into the local store."""
    config = load_config(args.config)
    node = SyncNode(config)
    node.open()

    try:
        applied = await node.coordinator.pull(since=args.since)
        print(f"Applied {applied} remote records")
    except LocalSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await node.stop()
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local store and sync status."""
    config = load_config(args.config)
    store = open_store(config.store.db_path)

    try:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "node": {"name": config.node.name},
            "store": {
                "db_path": config.store.db_path,
                "records": store.table.count(),
                "tombstones": store.table.count(include_deleted=True) - store.table.count(),
            },
            "change_log": store.log.get_stats(),
            "remote": {"base_url": config.remote.base_url or None},
        }
    finally:
        store.table.db.close()

    if config.remote.base_url:
        from .sync import HttpGateway

        gateway = HttpGateway(config.remote.base_url, timeout=5.0, token=config.remote.token)
        try:
            status_data["remote"]["reachable"] = await gateway.health()
        finally:
            await gateway.close()

    if args.json:
        _print_json(status_data)
        return 0

    print(f"Node: {status_data['node']['name']}")
    print(f"Store: {status_data['store']['db_path']}")
    print(f"  Records: {status_data['store']['records']} "
          f"(+{status_data['store']['tombstones']} tombstones)")
    log_stats = status_data["change_log"]
    print(f"Change log: {log_stats['pending']} pending, "
          f"{log_stats['in_flight']} in flight, "
          f"{log_stats['dead_letters']} dead letters")
    remote = status_data["remote"]
    if remote["base_url"]:
        print(f"Remote: {remote['base_url']} "
              f"({'reachable' if remote.get('reachable') else 'unreachable'})")
    else:
        print("Remote: not configured")
    return 0


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the background sync daemon."""
    config = load_config(args.config)

    print(f"Starting localsync node: {config.node.name}")
    print(f"Store: {config.store.db_path}")
    print(f"Remote: {config.remote.base_url or '(not configured)'}")

    try:
        await run_node(config)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except (LocalSyncError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="localsync",
        description="Offline-first local store with background sync",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
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

    run_parser = subparsers.add_parser("run", help="Run the background sync daemon")
    run_parser.set_defaults(func=cmd_run)

    status_parser = subparsers.add_parser("status", help="Show store and sync status")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    sync_parser = subparsers.add_parser("sync", help="Push pending changes once")
    sync_parser.set_defaults(func=cmd_sync)

    pull_parser = subparsers.add_parser("pull", help="Fetch remote changes")
    pull_parser.add_argument(
        "--since", type=int, default=None, help="Remote version cursor (default: stored)"
    )
    pull_parser.set_defaults(func=cmd_pull)

    get_parser = subparsers.add_parser("get", help="Print a record")
    get_parser.add_argument("id", help="Record id")
    get_parser.set_defaults(func=cmd_get)

    put_parser = subparsers.add_parser("put", help="Create or update a record")
    put_parser.add_argument("id", help="Record id")
    put_parser.add_argument("payload", help="Record payload as JSON")
    put_parser.set_defaults(func=cmd_put)

    delete_parser = subparsers.add_parser("delete", help="Delete a record")
    delete_parser.add_argument("id", help="Record id")
    delete_parser.set_defaults(func=cmd_delete)

    list_parser = subparsers.add_parser("list", help="List records")
    list_parser.set_defaults(func=cmd_list)

    dead_parser = subparsers.add_parser("dead-letters", help="List or requeue rejected changes")
    dead_parser.add_argument(
        "--requeue", type=int, default=None, metavar="SEQ",
        help="Requeue the dead letter with this sequence number",
    )
    dead_parser.set_defaults(func=cmd_dead_letters)

    args = parser.parse_args()

    node_name = load_config(args.config).node.name if args.json_logs else None
    setup_logging(args.verbose, args.log_level, args.json_logs, node_name)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    try:
        if asyncio.iscoroutinefunction(func):
            return asyncio.run(func(args))
        return func(args)
    except (LocalSyncError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
