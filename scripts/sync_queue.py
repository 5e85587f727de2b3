#!/usr/bin/env python3
"""
Operator tool for the POS offline sync queue.

Inspects the local store and drains the operation queue without starting
the companion API.

Usage:
    python scripts/sync_queue.py status
    python scripts/sync_queue.py pending [--kind category]
    python scripts/sync_queue.py sync
    python scripts/sync_queue.py retry-failed
    python scripts/sync_queue.py discard <operation_id>
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
project_root = Path(__file__).parent.parent
env_path = project_root / ".env"
load_dotenv(dotenv_path=env_path)

# Add project root to path
sys.path.insert(0, str(project_root))

from pos_sync.core.config import Settings
from pos_sync.core.exceptions import OperationInFlightError, StorageUnavailableError
from pos_sync.schemas.sync import EntityKind
from pos_sync.services.coordinator import SyncCoordinator

logger = logging.getLogger("sync_queue")

# ANSI color codes
class Colors:
    GREEN = '\033[92m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    CYAN = '\033[96m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


def print_header(message: str):
    """Print a formatted header."""
    print(f"\n{Colors.BOLD}{Colors.CYAN}{'='*80}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}{message}{Colors.RESET}")
    print(f"{Colors.CYAN}{'='*80}{Colors.RESET}\n")


async def show_status(coordinator: SyncCoordinator) -> int:
    status = await coordinator.status()
    print_header("Sync Status")
    print(f"State:              {status.state.value}")
    print(f"Last sync:          {status.last_sync or 'never'}")
    print(f"Pending operations: {status.pending_operations}")
    print(f"Parked operations:  {status.parked_operations}")
    if status.errors:
        print(f"\n{Colors.BOLD}Recent errors{Colors.RESET}")
        for error in status.errors:
            print(f"{Colors.RED}✗{Colors.RESET} {error.get('operationId', '-')}: {error.get('message')}")

    history = await coordinator.history()
    if history:
        print(f"\n{Colors.BOLD}Recent passes{Colors.RESET}")
        for entry in history[:5]:
            mark = f"{Colors.GREEN}✓{Colors.RESET}" if entry.success else f"{Colors.RED}✗{Colors.RESET}"
            print(
                f"{mark} {entry.end_time:%Y-%m-%d %H:%M:%S} "
                f"{entry.completed}/{entry.total} completed, {entry.failed} failed, "
                f"{entry.retrying} retrying, {entry.conflicts} conflicts"
            )
    return 0


async def show_pending(coordinator: SyncCoordinator, kind: str = None) -> int:
    operations = await coordinator.pending_operations(EntityKind(kind) if kind else None)
    failed = {record.operation.operation_id for record in await coordinator.failed_operations()}
    print_header(f"Pending Operations ({len(operations)})")
    for operation in operations:
        flag = f" {Colors.RED}[parked]{Colors.RESET}" if operation.operation_id in failed else ""
        print(
            f"{operation.timestamp:%Y-%m-%d %H:%M:%S} {operation.operation_id} "
            f"{operation.type:<28} {operation.method:<6} {operation.endpoint} "
            f"(attempts: {operation.attempts}){flag}"
        )
    return 0


async def run_sync(coordinator: SyncCoordinator) -> int:
    print_header("Sync")
    if not await coordinator.probe():
        print(f"{Colors.YELLOW}ℹ{Colors.RESET} Server unreachable, nothing replayed")
        return 1

    result = await coordinator.initialize_sync()
    print(f"{Colors.GREEN}✓{Colors.RESET} Completed: {result.processed}")
    print(f"{Colors.YELLOW}ℹ{Colors.RESET} Retrying:  {result.retrying}")
    print(f"{Colors.YELLOW}ℹ{Colors.RESET} Deferred:  {result.deferred}")
    print(f"{Colors.YELLOW}ℹ{Colors.RESET} Conflicts: {result.conflicts}")
    print(f"{Colors.RED}✗{Colors.RESET} Failed:    {result.failed}")
    for conflict in coordinator.active_conflicts():
        print(f"  conflict {conflict.conflict_id} {conflict.type}: {', '.join(conflict.fields)}")
    return 0 if result.success else 1


async def retry_failed(coordinator: SyncCoordinator) -> int:
    count = await coordinator.retry_failed_operations()
    print(f"{Colors.GREEN}✓{Colors.RESET} {count} operations will be retried on the next sync")
    return 0


async def discard(coordinator: SyncCoordinator, operation_id: str) -> int:
    try:
        discarded = await coordinator.discard_operation(operation_id)
    except OperationInFlightError:
        print(f"{Colors.YELLOW}ℹ{Colors.RESET} Operation {operation_id} is being synced, try again shortly")
        return 1
    if discarded:
        print(f"{Colors.GREEN}✓{Colors.RESET} Discarded {operation_id}")
        return 0
    print(f"{Colors.RED}✗{Colors.RESET} Operation {operation_id} not found")
    return 1


async def run(args: argparse.Namespace) -> int:
    coordinator = SyncCoordinator.from_settings(Settings())
    try:
        await coordinator.initialize(release_claims=False)
        if args.command == "status":
            return await show_status(coordinator)
        if args.command == "pending":
            return await show_pending(coordinator, args.kind)
        if args.command == "sync":
            return await run_sync(coordinator)
        if args.command == "retry-failed":
            return await retry_failed(coordinator)
        return await discard(coordinator, args.operation_id)
    except StorageUnavailableError as e:
        print(f"{Colors.RED}✗{Colors.RESET} Local store unavailable: {e}")
        return 2
    finally:
        await coordinator.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Inspect and drain the POS offline sync queue"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="Show sync status and recent passes")
    pending = subparsers.add_parser("pending", help="List pending operations")
    pending.add_argument("--kind", choices=[kind.value for kind in EntityKind], help="Only this entity kind")
    subparsers.add_parser("sync", help="Run a sync pass and refresh the cache")
    subparsers.add_parser("retry-failed", help="Un-park permanently failed operations")
    discard_parser = subparsers.add_parser("discard", help="Discard a queued operation")
    discard_parser.add_argument("operation_id")

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
