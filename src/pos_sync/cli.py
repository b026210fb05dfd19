"""
Command-line interface for POS Sync manual operations.

Runs syncs in-process (bypassing the worker queue), inspects connection
state and SyncLog history, and manages pending field conflicts.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict

from pos_sync.core.models import Direction, Scope
from pos_sync.database.connection import get_db_context, init_db
from pos_sync.database.platform_store import PlatformProductStore
from pos_sync.database.repository import IntegrationRepository
from pos_sync.providers.factory import ADAPTERS
from pos_sync.security.encryption import get_encryptor
from pos_sync.services.sync_orchestrator import SyncOrchestrator
from pos_sync.utils.config import configuration_summary, get_config
from pos_sync.utils.exceptions import PosSyncError
from pos_sync.utils.logger import get_logger, setup_logging

cli_logger = get_logger(__name__)


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


class PosSyncCLI:
    """Command-line interface for POS Sync operations."""

    def __init__(self):
        self.config = get_config()

    async def cmd_init_db(self, args) -> int:
        """Create all tables."""
        init_db()
        print("✅ Database tables created")
        return 0

    async def cmd_config(self, args) -> int:
        print("📋 Current configuration:")
        _print_json(configuration_summary(self.config))
        return 0

    async def cmd_sync(self, args) -> int:
        """Run one sync to completion in this process."""
        def progress(stage: str, completed: int, total: int) -> None:
            print(f"  [{completed + 1}/{total}] {stage}")

        with get_db_context() as db:
            repository = IntegrationRepository(db, get_encryptor())
            orchestrator = SyncOrchestrator(repository, PlatformProductStore(db), config=self.config)

            print(f"🔄 Syncing tenant {args.tenant} ({args.direction}, {args.scope}"
                  f"{', dry run' if args.dry_run else ''})")
            sync_log = await orchestrator.run(
                tenant_id=args.tenant,
                direction=Direction(args.direction),
                scope=Scope(args.scope),
                dry_run=args.dry_run,
                provider=args.provider,
                progress=progress,
            )

            data = sync_log.to_dict(include_items=args.verbose)
            _print_json(data)
            if sync_log.status == "success":
                print("✅ Sync completed")
                return 0
            print(f"❌ Sync finished with status {sync_log.status}: {sync_log.error_summary}")
            return 1

    async def cmd_logs(self, args) -> int:
        with get_db_context() as db:
            repository = IntegrationRepository(db)
            logs, total = repository.list_sync_logs(args.tenant, page=args.page,
                                                    page_size=args.page_size,
                                                    provider=args.provider)
            print(f"📊 {total} sync run(s) for tenant {args.tenant}, page {args.page}")
            for log in logs:
                counts = log.counts
                print(f"  {log.created_at:%Y-%m-%d %H:%M:%S}  {log.id}  {log.provider:<7} "
                      f"{log.direction:<13} {log.scope:<9} {log.status:<15} "
                      f"created={counts['created']} updated={counts['updated']} "
                      f"skipped={counts['skipped']} conflicted={counts['conflicted']} "
                      f"failed={counts['failed']}")
        return 0

    async def cmd_status(self, args) -> int:
        with get_db_context() as db:
            repository = IntegrationRepository(db)
            integrations = repository.list_active_integrations(args.tenant)
            if not integrations:
                print(f"No active integrations for tenant {args.tenant}")
                return 0
            for integration in integrations:
                _print_json(integration.to_dict())
        return 0

    async def cmd_conflicts(self, args) -> int:
        with get_db_context() as db:
            repository = IntegrationRepository(db)
            integration = repository.get_active_integration(args.tenant, args.provider)
            if integration is None:
                print(f"❌ No active {args.provider} integration for tenant {args.tenant}")
                return 1

            if args.resolve:
                value = json.loads(args.value) if args.value is not None else None
                conflict = repository.resolve_conflict(args.resolve, value)
                if conflict is None or str(conflict.integration_id) != str(integration.id):
                    print(f"❌ Conflict {args.resolve} not found")
                    return 1
                print(f"✅ Conflict {conflict.id} resolved")
                return 0

            conflicts = repository.list_pending_conflicts(integration.id)
            print(f"⚠️  {len(conflicts)} conflict(s) pending review")
            for conflict in conflicts:
                _print_json(conflict.to_dict())
        return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pos-sync",
        description="POS Sync - manual operations",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("config", help="Show sanitized configuration")

    sync_parser = subparsers.add_parser("sync", help="Run a sync in-process")
    sync_parser.add_argument("--tenant", required=True, help="Tenant id")
    sync_parser.add_argument("--provider", choices=sorted(ADAPTERS), help="Provider (if several connected)")
    sync_parser.add_argument("--direction", choices=[d.value for d in Direction],
                             default=Direction.IMPORT.value)
    sync_parser.add_argument("--scope", choices=[s.value for s in Scope], default=Scope.FULL.value)
    sync_parser.add_argument("--dry-run", action="store_true", help="Compute outcomes without writing")
    sync_parser.add_argument("--verbose", "-v", action="store_true", help="Print per-item results")

    logs_parser = subparsers.add_parser("logs", help="Show sync history")
    logs_parser.add_argument("--tenant", required=True)
    logs_parser.add_argument("--provider", choices=sorted(ADAPTERS))
    logs_parser.add_argument("--page", type=int, default=1)
    logs_parser.add_argument("--page-size", type=int, default=20)

    status_parser = subparsers.add_parser("status", help="Show active integrations")
    status_parser.add_argument("--tenant", required=True)

    conflicts_parser = subparsers.add_parser("conflicts", help="List or resolve pending conflicts")
    conflicts_parser.add_argument("--tenant", required=True)
    conflicts_parser.add_argument("--provider", required=True, choices=sorted(ADAPTERS))
    conflicts_parser.add_argument("--resolve", metavar="CONFLICT_ID", help="Mark a conflict resolved")
    conflicts_parser.add_argument("--value", help="Chosen value as JSON, e.g. '\"12.00\"'")

    return parser


COMMANDS = {
    "init-db": "cmd_init_db",
    "config": "cmd_config",
    "sync": "cmd_sync",
    "logs": "cmd_logs",
    "status": "cmd_status",
    "conflicts": "cmd_conflicts",
}


async def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging()

    if not args.command:
        parser.print_help()
        return 1

    cli = PosSyncCLI()
    try:
        return await getattr(cli, COMMANDS[args.command])(args)
    except PosSyncError as e:
        cli_logger.error(f"{args.command} failed: {e}")
        print(f"❌ {e.code}: {e.message}")
        return 1
    except KeyboardInterrupt:
        print("\n⏹️  Operation cancelled by user")
        return 130


def cli_entry_point():
    """Entry point for console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli_entry_point()
