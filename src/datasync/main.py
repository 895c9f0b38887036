#!/usr/bin/env python3
"""datasync application entry point.

This module provides a unified entry point for all interfaces:
- CLI: Command-line access to locally mirrored datasets
- Serve: Reference sync endpoint for development and testing

Usage:
    datasync cli list tasks                  # List records of the "tasks" dataset
    datasync cli create tasks '{"a": 1}'     # Create a record offline
    datasync cli sync tasks                  # Run one sync round
    datasync serve [--port 8384]             # Start the reference endpoint
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def add_serve_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add serve subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add serve parser to
    """
    serve_parser = subparsers.add_parser(
        "serve",
        help="Start the reference sync endpoint",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    serve_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )

    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: server_port from config, 8384)"
    )

    serve_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )


def run_serve(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run the reference sync endpoint.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have host, port, debug attributes)

    Returns:
        Exit code (0 for success)
    """
    from datasync.core.config import Config
    from datasync.core.sync_server import create_sync_server

    config = Config(config_dir=config_dir)
    port = args.port or config.get_server_port()

    logger.info(f"Starting sync endpoint on http://{args.host}:{port}/sync")
    app = create_sync_server()
    app.run(host=args.host, port=port, debug=args.debug)
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="datasync",
        description="datasync - offline-first dataset synchronization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  datasync cli set-url http://127.0.0.1:8384/sync   Configure the endpoint
  datasync cli create tasks '{"title": "milk"}'     Create a record offline
  datasync cli sync tasks                            Sync the "tasks" dataset
  datasync serve --port 8384                         Start the reference endpoint
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/datasync/)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")

    from datasync.cli import add_cli_subparser
    add_cli_subparser(subparsers)

    add_serve_subparser(subparsers)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for datasync.

    Parses arguments and dispatches to the appropriate interface.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT
    )

    if args.interface == "cli":
        from datasync.cli import run as run_cli
        exit_code = run_cli(args.config_dir, args)
    elif args.interface == "serve":
        exit_code = run_serve(args.config_dir, args)
    else:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
