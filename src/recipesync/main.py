#!/usr/bin/env python3
"""recipesync application entry point.

Usage:
    recipesync login alice@example.com     # Log in and claim unowned records
    recipesync sync                        # Run one sync cycle
    recipesync watch                       # Sync in the background
    recipesync -d /tmp/rs serve --port 8385
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import NoReturn

from recipesync.cli import add_cli_arguments, run

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description="recipesync - offline-first recipe synchronization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  recipesync login alice@example.com    Log in
  recipesync status                     Show pending changes and last sync
  recipesync conflicts                  List conflicts
  recipesync resolve 0192ab keep-local  Keep the local version
""",
    )
    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/recipesync/)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    add_cli_arguments(parser)
    return parser


def main() -> NoReturn:
    """Main entry point for recipesync."""
    parser = create_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    if args.config_dir:
        logger.info(f"Using custom config directory: {args.config_dir}")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    sys.exit(run(args.config_dir, args))


if __name__ == "__main__":
    main()
