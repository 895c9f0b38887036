#!/usr/bin/env python3
"""Command-line interface for datasync.

This module provides CLI commands for working with locally mirrored datasets.
Record commands work offline against the local snapshot; they are sent to
the cloud endpoint on the next sync.

Commands:
    list <dataset>                    List all records
    read <dataset> <uid>              Show one record
    create <dataset> [json]           Create a record
    update <dataset> <uid> [json]     Replace a record's payload
    delete <dataset> <uid>            Delete a record
    sync <dataset>                    Run one sync round now
    status <dataset>                  Show pending changes and sync times
    collisions <dataset>              List collisions recorded by the endpoint
    resolve-collision <dataset> <hash> Discard a recorded collision
    set-url <url>                     Set the cloud endpoint URL
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from datasync.core.config import Config
from datasync.core.network import HttpNetworkClient, NetworkClient, OfflineNetworkClient
from datasync.core.storage import FileStorage
from datasync.core.sync_client import DatasetNotFound, SyncClient
from datasync.core.timestamp_utils import format_millis
from datasync.core.validation import ValidationError


def format_record(record: Dict[str, Any], format_type: str = "text") -> str:
    """Format a single record for display.

    Args:
        record: {"uid": ..., "data": ...}
        format_type: Output format (text, json)

    Returns:
        Formatted record string
    """
    if format_type == "json":
        return json.dumps(record, indent=2, ensure_ascii=False)
    data = json.dumps(record["data"], ensure_ascii=False, sort_keys=True)
    return f"UID: {record['uid']}\n{data}"


def read_payload(text: Optional[str]) -> Any:
    """Parse a JSON payload from an argument, or from stdin if piped.

    Raises:
        ValidationError: If there is no payload or it is not valid JSON
    """
    if text is None:
        if sys.stdin.isatty():
            raise ValidationError("payload", "no JSON payload given")
        text = sys.stdin.read()
    try:
        return json.loads(text)
    except ValueError as e:
        raise ValidationError("payload", f"not valid JSON: {e}") from e


def build_network_client(config: Config, cloud_url: Optional[str] = None) -> NetworkClient:
    url = cloud_url or config.get_cloud_url()
    if not url:
        return OfflineNetworkClient()
    return HttpNetworkClient(
        url,
        client_id=config.get_client_id_hex(),
        timeout=config.get_request_timeout(),
    )


def build_client(config: Config, args: argparse.Namespace) -> SyncClient:
    """Create a SyncClient backed by the configured storage directory."""
    return SyncClient(
        FileStorage(config.get_storage_dir()),
        build_network_client(config, getattr(args, "cloud_url", None)),
        config=config.get_sync_config(),
    )


def cmd_list(client: SyncClient, args: argparse.Namespace) -> int:
    """List all records of a dataset.

    Args:
        client: SyncClient instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    records = client.list(args.dataset_id)

    if args.format == "json":
        print(json.dumps(records, indent=2, ensure_ascii=False))
        return 0

    if not records:
        print("No records found.")
        return 0
    for i, uid in enumerate(sorted(records)):
        if i > 0:
            print("\n" + "=" * 60 + "\n")
        print(format_record(records[uid]))
    return 0


def cmd_read(client: SyncClient, args: argparse.Namespace) -> int:
    """Show one record.

    Returns:
        Exit code (0 for success, 1 for not found)
    """
    record = client.read(args.dataset_id, args.uid)
    if record is None:
        print(f"Error: Record {args.uid} not found.", file=sys.stderr)
        return 1
    print(format_record(record, args.format))
    return 0


def cmd_create(client: SyncClient, args: argparse.Namespace) -> int:
    """Create a record from a JSON payload."""
    payload = read_payload(args.payload)
    record = client.create(args.dataset_id, payload)
    if args.format == "json":
        print(json.dumps(record, ensure_ascii=False))
    else:
        print(f"Created record {record['uid']}")
    return 0


def cmd_update(client: SyncClient, args: argparse.Namespace) -> int:
    """Replace a record's payload."""
    payload = read_payload(args.payload)
    record = client.update(args.dataset_id, args.uid, payload)
    if record is None:
        print(f"Error: Record {args.uid} not found.", file=sys.stderr)
        return 1
    if args.format == "json":
        print(json.dumps(record, ensure_ascii=False))
    else:
        print(f"Updated record {record['uid']}")
    return 0


def cmd_delete(client: SyncClient, args: argparse.Namespace) -> int:
    record = client.delete(args.dataset_id, args.uid)
    if record is None:
        print(f"Error: Record {args.uid} not found.", file=sys.stderr)
        return 1
    if args.format == "json":
        print(json.dumps(record, ensure_ascii=False))
    else:
        print(f"Deleted record {record['uid']}")
    return 0


def cmd_sync(client: SyncClient, args: argparse.Namespace) -> int:
    """Run one sync round for a dataset.

    Returns:
        Exit code (0 when the round completed online, 1 otherwise)
    """
    status = client.sync_now(args.dataset_id)
    summary = client.get_status(args.dataset_id)

    if args.format == "json":
        print(json.dumps({"status": status, **summary}, indent=2))
    else:
        print(f"Sync of {args.dataset_id} finished: {status}")
        print(f"  Records: {summary['records']}")
        print(f"  Pending: {summary['pending']}")
    return 0 if status == "online" else 1


def cmd_status(client: SyncClient, args: argparse.Namespace) -> int:
    """Show pending changes and sync times of a dataset."""
    summary = client.get_status(args.dataset_id)

    if args.format == "json":
        print(json.dumps(summary, indent=2))
        return 0

    print(f"Dataset: {summary['dataset_id']}")
    print(f"Records: {summary['records']}")
    print(
        f"Pending Changes: {summary['pending']} "
        f"(in flight {summary['in_flight']}, crashed {summary['crashed']}, "
        f"delayed {summary['delayed']})"
    )
    print(f"Global Hash: {summary['global_hash'] or 'unknown'}")
    print(f"Last Sync Start: {format_millis(summary['last_sync_start'])}")
    print(f"Last Sync End: {format_millis(summary['last_sync_end'])}")
    return 0


def cmd_collisions(client: SyncClient, args: argparse.Namespace) -> int:
    """List collisions recorded by the endpoint."""
    response = client.list_collisions(args.dataset_id)
    if not response.ok:
        print(f"Error: {response.error}", file=sys.stderr)
        return 1

    collisions = response.data or {}
    if args.format == "json":
        print(json.dumps(collisions, indent=2, ensure_ascii=False))
        return 0

    if not collisions:
        print("No collisions.")
        return 0
    for collision_hash, collision in collisions.items():
        print(f"Hash: {collision_hash}")
        print(f"  Record: {collision.get('uid')}")
        print(f"  Action: {collision.get('action')}")
        print(f"  Local: {json.dumps(collision.get('post'), ensure_ascii=False)}")
    return 0


def cmd_resolve_collision(client: SyncClient, args: argparse.Namespace) -> int:
    """Discard a collision recorded by the endpoint."""
    response = client.remove_collision(args.dataset_id, args.hash)
    if not response.ok:
        print(f"Error: {response.error}", file=sys.stderr)
        return 1
    if args.format == "json":
        print(json.dumps(response.data))
    else:
        print(f"Removed collision {args.hash}")
    return 0


def cmd_set_url(config: Config, args: argparse.Namespace) -> int:
    config.set_cloud_url(args.url)
    print(f"Cloud URL set to {config.get_cloud_url()}")
    return 0


def add_cli_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add CLI subparser and its nested subcommands.

    Args:
        subparsers: Parent subparsers object to add CLI parser to
    """
    cli_parser = subparsers.add_parser(
        "cli",
        help="Command-line interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    cli_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    cli_parser.add_argument(
        "--cloud-url",
        type=str,
        default=None,
        help="Cloud endpoint URL (default: from config)"
    )

    cli_subparsers = cli_parser.add_subparsers(dest="cli_command", help="CLI commands")

    list_parser = cli_subparsers.add_parser("list", help="List all records")
    list_parser.add_argument("dataset_id", type=str, help="Dataset name")

    read_parser = cli_subparsers.add_parser("read", help="Show one record")
    read_parser.add_argument("dataset_id", type=str, help="Dataset name")
    read_parser.add_argument("uid", type=str, help="Record uid")

    create_parser = cli_subparsers.add_parser("create", help="Create a record")
    create_parser.add_argument("dataset_id", type=str, help="Dataset name")
    create_parser.add_argument(
        "payload",
        type=str,
        nargs="?",
        default=None,
        help="JSON payload (reads from stdin if not provided)"
    )

    update_parser = cli_subparsers.add_parser("update", help="Replace a record's payload")
    update_parser.add_argument("dataset_id", type=str, help="Dataset name")
    update_parser.add_argument("uid", type=str, help="Record uid")
    update_parser.add_argument(
        "payload",
        type=str,
        nargs="?",
        default=None,
        help="JSON payload (reads from stdin if not provided)"
    )

    delete_parser = cli_subparsers.add_parser("delete", help="Delete a record")
    delete_parser.add_argument("dataset_id", type=str, help="Dataset name")
    delete_parser.add_argument("uid", type=str, help="Record uid")

    sync_parser = cli_subparsers.add_parser("sync", help="Run one sync round now")
    sync_parser.add_argument("dataset_id", type=str, help="Dataset name")

    status_parser = cli_subparsers.add_parser("status", help="Show dataset sync status")
    status_parser.add_argument("dataset_id", type=str, help="Dataset name")

    collisions_parser = cli_subparsers.add_parser(
        "collisions", help="List collisions recorded by the endpoint"
    )
    collisions_parser.add_argument("dataset_id", type=str, help="Dataset name")

    resolve_parser = cli_subparsers.add_parser(
        "resolve-collision", help="Discard a recorded collision"
    )
    resolve_parser.add_argument("dataset_id", type=str, help="Dataset name")
    resolve_parser.add_argument("hash", type=str, help="Collision hash")

    set_url_parser = cli_subparsers.add_parser("set-url", help="Set the cloud endpoint URL")
    set_url_parser.add_argument("url", type=str, help="URL, e.g. http://host:8384/sync")


DATASET_COMMANDS = {
    "list": cmd_list,
    "read": cmd_read,
    "create": cmd_create,
    "update": cmd_update,
    "delete": cmd_delete,
    "sync": cmd_sync,
    "status": cmd_status,
    "collisions": cmd_collisions,
    "resolve-collision": cmd_resolve_collision,
}

# Commands that only look at stored records; they never create a dataset
READ_ONLY_COMMANDS = ("list", "read", "status")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not hasattr(args, 'cli_command') or not args.cli_command:
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)

    try:
        if args.cli_command == "set-url":
            return cmd_set_url(config, args)

        command = DATASET_COMMANDS.get(args.cli_command)
        if command is None:
            print(f"Error: Unknown command '{args.cli_command}'", file=sys.stderr)
            return 1

        client = build_client(config, args)
        try:
            if args.cli_command in READ_ONLY_COMMANDS:
                client.open(args.dataset_id)
            else:
                client.manage(args.dataset_id)
            return command(client, args)
        finally:
            client.destroy()
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    except DatasetNotFound as e:
        print(f"Error: Dataset {e.dataset_id} not found", file=sys.stderr)
        return 1
