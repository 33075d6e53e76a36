"""
Lattice Shield administration CLI.

Usage:
    lattice-shield status
    lattice-shield init-keys --security-level high
    lattice-shield backup
    lattice-shield migrate --security-level high --batch-size 100
    lattice-shield rollback

Or run directly:
    python -m lattice_shield.cli status

PostgreSQL setup:
    Set DATABASE_URL in the environment or a .env file; tables are created
    on first use.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncpg

from .client import HttpCryptoService
from .config import Settings
from .errors import ConfigError, ShieldError
from .executor import RemoteOperationExecutor, RetryPolicy
from .identity import IdentityManager
from .log import configure_logging
from .migration import MigrationOrchestrator
from .models import MigrationStatus
from .postgres_storage import PostgresEntryStore, PostgresKeyValueStore, create_schema
from .reporter import AuditReporter
from .service import ShieldService


@dataclass
class App:
    """Wired components for one CLI invocation."""

    settings: Settings
    service: ShieldService
    orchestrator: MigrationOrchestrator
    reporter: AuditReporter


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lattice-shield",
        description="Post-quantum field encryption key management",
    )
    parser.add_argument("--env-file", help="Load settings from this .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show keys, migration state and service health")

    init = sub.add_parser("init-keys", help="Generate and install a key pair")
    init.add_argument("--security-level", default="standard", choices=["standard", "high"])

    sub.add_parser("backup", help="Back up the current keys")
    sub.add_parser("remove-backup", help="Discard the key backup")

    for name, help_text in (
        ("start", "Start a migration without processing entries"),
        ("migrate", "Start a migration and run batches until it finishes"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--security-level", default="standard", choices=["standard", "high"])
        p.add_argument("--batch-size", type=int, default=None)
        p.add_argument(
            "--no-verify",
            dest="verify_integrity",
            action="store_false",
            help="Skip per-entry integrity verification",
        )

    sub.add_parser("batch", help="Process one batch of the running migration")
    sub.add_parser("rollback", help="Roll back the most recent migration")

    verify = sub.add_parser("verify", help="Check stored envelopes decrypt with current keys")
    verify.add_argument("--sample-size", type=int, default=1000)

    log = sub.add_parser("log", help="Show the migration audit log")
    log.add_argument("--limit", type=int, default=50)
    log.add_argument("--offset", type=int, default=0)
    log.add_argument("--event-type", default=None)

    return parser


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _status(app: App, args: argparse.Namespace) -> int:
    status = await app.orchestrator.get_status()
    run = await app.orchestrator.get_run()
    checkpoint = await app.orchestrator.get_checkpoint()
    health = await app.service.service_status()
    try:
        current = await app.service.current_keys()
        key_info: Optional[Dict[str, Any]] = {
            "algorithm": current.algorithm,
            "security_level": current.security_level.value,
            "generated_at": current.generated_at,
        }
    except ShieldError:
        key_info = None
    _print(
        {
            "site_id": await app.service.identity.get_or_create_identity(),
            "keys": key_info,
            "migration_status": status.value,
            "run": run.to_dict() if run else None,
            "checkpoint": {
                "run_id": checkpoint.run_id,
                "encrypted_entry_count": checkpoint.encrypted_entry_count,
                "timestamp": checkpoint.timestamp,
            }
            if checkpoint
            else None,
            "service": asdict(health) if health else None,
            "notices": await app.reporter.active_notices(),
        }
    )
    return 0


async def _init_keys(app: App, args: argparse.Namespace) -> int:
    keys = await app.orchestrator.initialize_keys(args.security_level)
    print(f"Generated {keys.algorithm} key pair")
    return 0


async def _backup(app: App, args: argparse.Namespace) -> int:
    backup = await app.orchestrator.backup_keys()
    print(f"Backed up {backup.key_material.algorithm} keys at {backup.created_at.isoformat()}")
    return 0


async def _remove_backup(app: App, args: argparse.Namespace) -> int:
    removed = await app.orchestrator.remove_backup()
    print("Backup removed" if removed else "No backup to remove")
    return 0


async def _start(app: App, args: argparse.Namespace) -> int:
    run = await app.orchestrator.start(
        args.security_level, args.batch_size, args.verify_integrity
    )
    print(f"Migration {run.run_id} started ({run.target_keys.algorithm})")
    return 0


async def _batch(app: App, args: argparse.Namespace) -> int:
    run = await app.orchestrator.run_batch()
    _print(dict(run.to_dict(), target_keys=None))
    return 0 if run.status is not MigrationStatus.FAILED else 1


async def _migrate(app: App, args: argparse.Namespace) -> int:
    run = await app.orchestrator.start(
        args.security_level, args.batch_size, args.verify_integrity
    )
    print(f"Migration {run.run_id} started ({run.target_keys.algorithm})")
    while run.status is MigrationStatus.IN_PROGRESS:
        run = await app.orchestrator.run_batch()
        print(
            f"  processed={run.processed_count} migrated={run.migrated_count} "
            f"failed={run.failed_count}"
        )
    print(f"Migration {run.status}")
    return 0 if run.status is MigrationStatus.COMPLETED else 1


async def _rollback(app: App, args: argparse.Namespace) -> int:
    result = await app.orchestrator.rollback()
    print(f"Rolled back: {result}")
    return 0


async def _verify(app: App, args: argparse.Namespace) -> int:
    report = await app.orchestrator.verify_integrity(args.sample_size)
    _print(report.to_dict())
    return 0 if report.failed == 0 else 1


async def _log(app: App, args: argparse.Namespace) -> int:
    _print(await app.orchestrator.migration_log(args.limit, args.offset, args.event_type))
    return 0


COMMANDS: Dict[str, Callable[[App, argparse.Namespace], Awaitable[int]]] = {
    "status": _status,
    "init-keys": _init_keys,
    "backup": _backup,
    "remove-backup": _remove_backup,
    "start": _start,
    "batch": _batch,
    "migrate": _migrate,
    "rollback": _rollback,
    "verify": _verify,
    "log": _log,
}


async def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, wire components against PostgreSQL and run one command."""
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env(args.env_file)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level, settings.log_json)

    if not settings.database_url:
        print("ERROR: DATABASE_URL must be set in environment or .env file", file=sys.stderr)
        return 2

    pool = await asyncpg.create_pool(settings.database_url)
    try:
        await create_schema(pool)
        store = PostgresKeyValueStore(pool)
        reporter = AuditReporter(store)
        async with HttpCryptoService(settings.service_url, settings.api_key) as crypto:
            executor = RemoteOperationExecutor(
                crypto,
                reporter,
                RetryPolicy(
                    settings.max_attempts, settings.retry_delay, settings.backoff_multiplier
                ),
            )
            identity = IdentityManager(store, settings.site_origin, settings.install_path)
            service = ShieldService(store, executor, identity, reporter)
            app = App(
                settings=settings,
                service=service,
                orchestrator=MigrationOrchestrator(
                    store, PostgresEntryStore(pool), service, reporter, settings
                ),
                reporter=reporter,
            )
            try:
                return await COMMANDS[args.command](app, args)
            except (ShieldError, ValueError) as e:
                print(f"ERROR: {e}", file=sys.stderr)
                return 1
    finally:
        await pool.close()


def main() -> None:
    """Entry point for CLI."""
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
