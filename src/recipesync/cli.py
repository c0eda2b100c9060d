"""Command-line interface for recipesync.

Commands:
    login <user>            Log in (and claim unowned records)
    logout                  Log out
    status                  Show session, cursor and pending counts
    sync                    Run one sync cycle
    watch                   Sync in the background until interrupted
    conflicts               List unresolved sync conflicts
    resolve <id> <choice>   Resolve a conflict (keep-local or keep-remote)
    compact                 Remove old synced tombstones and stale staging files
    serve                   Run the in-memory reference sync server
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from recipesync.core.config import Config
from recipesync.core.conflicts import ConflictManager, ResolutionChoice
from recipesync.core.cursor_store import CursorStore
from recipesync.core.database import Database
from recipesync.core.errors import RecipeSyncError
from recipesync.core.image_client import RemoteImageClient
from recipesync.core.image_pipeline import ImagePipeline
from recipesync.core.models import SYNC_MODELS
from recipesync.core.recipes import RecipeBook
from recipesync.core.records import RecordStore
from recipesync.core.sync import SyncOrchestrator, SyncResult
from recipesync.core.sync_client import HttpSyncApi
from recipesync.core.sync_server import create_sync_server
from recipesync.core.timestamp_utils import EPOCH, format_timestamp, to_iso, utc_now
from recipesync.core.validation import ValidationError


@dataclass
class Services:
    """Everything a command needs, wired from the configuration."""

    config: Config
    db: Database
    store: RecordStore
    pipeline: ImagePipeline
    book: RecipeBook
    cursors: CursorStore
    conflicts: ConflictManager

    def orchestrator(self) -> SyncOrchestrator:
        server_url = self.config.get_server_url()
        token = self.config.get_auth_token()
        timeout = self.config.get_timeout()
        return SyncOrchestrator(
            store=self.store,
            cursors=self.cursors,
            api=HttpSyncApi(server_url, token, timeout),
            images=RemoteImageClient(server_url, token, timeout),
            pipeline=self.pipeline,
            active_user_provider=self.config.get_active_user,
            interval=self.config.get_sync_interval(),
            batch_size=self.config.get_batch_size(),
        )


def open_services(config: Config) -> Services:
    db = Database(config.get_database_file())
    store = RecordStore(db)
    pipeline = ImagePipeline(config.get_images_directory())
    return Services(
        config=config,
        db=db,
        store=store,
        pipeline=pipeline,
        book=RecipeBook(store, pipeline),
        cursors=CursorStore(db),
        conflicts=ConflictManager(store),
    )


def print_result(result: SyncResult, output_format: str) -> None:
    if output_format == "json":
        print(json.dumps({
            "success": result.success,
            "pulled": result.pulled,
            "pushed": result.pushed,
            "conflicts": result.conflicts,
            "errors": result.errors,
        }, indent=2))
        return

    print(f"Sync {'completed' if result.success else 'failed'}:")
    print(f"  Pushed: {result.pushed}")
    print(f"  Pulled: {result.pulled}")
    if result.conflicts:
        print(f"  Conflicts: {result.conflicts}")
    for error in result.errors:
        print(f"  - {error}")


def require_user(config: Config) -> Optional[str]:
    user = config.get_active_user()
    if not user:
        print("Error: Not logged in. Use 'login <user>' first.", file=sys.stderr)
    return user


# ============================================================================
# Commands
# ============================================================================


def cmd_login(services: Services, args: argparse.Namespace) -> int:
    """Log in a user and claim the records created while logged out.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    try:
        services.config.set_active_user(args.user)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    services.config.set_auth_token(args.token)
    user = services.config.get_active_user()

    claimed = 0 if args.no_claim else services.book.claim_unowned(user)
    print(f"Logged in as {user}")
    if claimed:
        print(f"Claimed {claimed} unowned record(s)")
    return 0


def cmd_logout(services: Services, args: argparse.Namespace) -> int:
    user = services.config.get_active_user()
    services.config.clear_active_user()
    print(f"Logged out {user}" if user else "Not logged in.")
    return 0


def cmd_status(services: Services, args: argparse.Namespace) -> int:
    """Show session, cursor, pending and conflict counts."""
    config = services.config
    user = config.get_active_user()
    pending = {m.TABLE: len(services.store.pending(m, user)) for m in SYNC_MODELS} if user else {}
    cursor = services.cursors.get_cursor(user) if user else EPOCH
    conflicts = services.conflicts.get_unresolved_count(user) if user else 0

    if args.format == "json":
        print(json.dumps({
            "user": user,
            "server_url": config.get_server_url(),
            "last_sync": to_iso(cursor) if cursor != EPOCH else None,
            "pending": pending,
            "conflicts": conflicts,
        }, indent=2))
        return 0

    print(f"User: {user or '(not logged in)'}")
    print(f"Server: {config.get_server_url()}")
    print(f"Last Sync: {format_timestamp(to_iso(cursor)) if cursor != EPOCH else 'never'}")
    if user:
        print(f"Pending Changes: {sum(pending.values())}")
        for table, count in pending.items():
            if count:
                print(f"  - {table}: {count}")
        if conflicts:
            print(f"\nUnresolved Conflicts: {conflicts}")
    return 0


def cmd_sync(services: Services, args: argparse.Namespace) -> int:
    """Run one sync cycle.

    Returns:
        Exit code (0 for success, 1 for any failure)
    """
    user = require_user(services.config)
    if not user:
        return 1
    result = services.orchestrator().sync_once(user)
    print_result(result, args.format)
    return 0 if result.success else 1


def cmd_watch(services: Services, args: argparse.Namespace) -> int:
    """Sync in the background until interrupted with Ctrl+C."""
    user = require_user(services.config)
    if not user:
        return 1
    orchestrator = services.orchestrator()
    print(f"Syncing {user} every {orchestrator.interval}s. Press Ctrl+C to stop.")
    orchestrator.start(user)
    try:
        while orchestrator.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        print()
    finally:
        orchestrator.stop()
    if orchestrator.last_result is not None:
        print_result(orchestrator.last_result, args.format)
    return 0


def cmd_conflicts(services: Services, args: argparse.Namespace) -> int:
    """List unresolved sync conflicts."""
    user = require_user(services.config)
    if not user:
        return 1
    conflicts = services.conflicts.list_conflicts(user)

    if args.format == "json":
        print(json.dumps([
            {
                "id": c.id,
                "table": c.table,
                "sync_id": c.sync_id,
                "reason": c.reason,
                "local": c.local.to_row() if c.local else None,
                "remote": c.remote_payload,
                "created_at": c.created_at,
            }
            for c in conflicts
        ], indent=2))
        return 0

    if not conflicts:
        print("No unresolved conflicts.")
        return 0

    print(f"Unresolved Conflicts ({len(conflicts)}):\n")
    for c in conflicts:
        remote = "remote version stored" if c.has_remote_version else "rejected by server"
        print(f"  [{c.id[:8]}] {c.table} {c.sync_id[:8]} - {c.reason} ({remote})")
    return 0


def cmd_resolve(services: Services, args: argparse.Namespace) -> int:
    """Resolve a conflict by full id or unique id prefix."""
    user = require_user(services.config)
    if not user:
        return 1

    choice_map = {
        "keep-local": ResolutionChoice.KEEP_LOCAL,
        "keep-remote": ResolutionChoice.KEEP_REMOTE,
    }
    choice = choice_map[args.choice]

    matches = [c for c in services.conflicts.list_conflicts(user) if c.id.startswith(args.conflict_id)]
    if not matches:
        print(f"Error: Conflict not found: {args.conflict_id}", file=sys.stderr)
        return 1
    if len(matches) > 1:
        print(f"Error: Ambiguous conflict id prefix: {args.conflict_id}", file=sys.stderr)
        return 1

    try:
        services.conflicts.resolve(matches[0].id, choice)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Resolved {matches[0].table} conflict with {args.choice}")
    return 0


def cmd_compact(services: Services, args: argparse.Namespace) -> int:
    """Remove synced tombstones past the retention period and stale staging files."""
    days = args.days if args.days is not None else services.config.get_tombstone_retention_days()
    cutoff = utc_now() - timedelta(days=days)
    removed = sum(services.store.compact(model, cutoff) for model in SYNC_MODELS)
    staging = services.pipeline.cleanup_staging()
    print(f"Removed {removed} tombstone(s) older than {days} day(s)")
    print(f"Removed {staging} stale staging file(s)")
    return 0


def cmd_serve(config: Config, args: argparse.Namespace) -> int:
    """Start the in-memory reference sync server."""
    app = create_sync_server(auth_token=args.token)
    print(f"Serving reference sync API on http://{args.host}:{args.port}")
    print("Press Ctrl+C to stop.")
    print()
    app.run(host=args.host, port=args.port)
    return 0


# ============================================================================
# Parser
# ============================================================================


def add_cli_arguments(parser: argparse.ArgumentParser) -> None:
    """Add the CLI commands and their arguments to a parser."""
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    login_parser = subparsers.add_parser("login", help="Log in as a user")
    login_parser.add_argument("user", type=str, help="User identifier (e-mail)")
    login_parser.add_argument("--token", type=str, default=None, help="Bearer token for the sync server")
    login_parser.add_argument(
        "--no-claim",
        action="store_true",
        help="Do not assign records created while logged out to this user",
    )

    subparsers.add_parser("logout", help="Log out")
    subparsers.add_parser("status", help="Show sync status")
    subparsers.add_parser("sync", help="Run one sync cycle")
    subparsers.add_parser("watch", help="Sync in the background until interrupted")
    subparsers.add_parser("conflicts", help="List unresolved sync conflicts")

    resolve_parser = subparsers.add_parser("resolve", help="Resolve a sync conflict")
    resolve_parser.add_argument("conflict_id", type=str, help="Conflict ID (or unique prefix)")
    resolve_parser.add_argument(
        "choice", choices=["keep-local", "keep-remote"], help="Version to keep"
    )

    compact_parser = subparsers.add_parser("compact", help="Remove old tombstones")
    compact_parser.add_argument(
        "--days", type=int, default=None, help="Retention in days (default: from config)"
    )

    serve_parser = subparsers.add_parser("serve", help="Run the reference sync server")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8385, help="Port to listen on")
    serve_parser.add_argument("--token", type=str, default=None, help="Require this bearer token")


COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "status": cmd_status,
    "sync": cmd_sync,
    "watch": cmd_watch,
    "conflicts": cmd_conflicts,
    "resolve": cmd_resolve,
    "compact": cmd_compact,
}


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not getattr(args, "command", None):
        print("Error: No command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)
    if args.command == "serve":
        return cmd_serve(config, args)

    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"Error: Unknown command '{args.command}'", file=sys.stderr)
        return 1

    services = open_services(config)
    try:
        return handler(services, args)
    except RecipeSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.db.close()
