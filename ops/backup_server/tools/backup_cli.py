"""
Operator CLI for the backup server.

Runs the same operations as the HTTP API in-process, for disaster
recovery when the service is down or for scripted use. Configuration
comes from the same environment variables as the server.

Usage:
    backup-cli list [--kind full|incremental]
    backup-cli tables <artifact-id>
    backup-cli diff <artifact-id>
    backup-cli backup
    backup-cli export
    backup-cli restore <artifact-id> [--tables a b ...] [--dry-run]
    backup-cli recover [--until 2026-10-18T09:30:00Z]

Invariants:
    - Output is JSON on stdout; logs go to stderr
    - Exit status is 0 on success, 1 on a BackupError, 2 on bad usage
    - Job slots are per process: do not run a restore here while the
      server is running one against the same database

How to change safely:
    - Add new subcommands additively; scripts parse the JSON output
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from datetime import datetime
from typing import Any

from ..config import ServerConfig
from ..errors import BackupError, InvalidArgumentError
from ..service import BackupService

logger = logging.getLogger(__name__)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; a trailing Z means UTC."""
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise InvalidArgumentError(f"Invalid timestamp: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="backup-cli",
        description="Create, inspect and restore database backups",
    )
    parser.add_argument("--database", help="Database path (overrides DATABASE_PATH)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    commands = parser.add_subparsers(dest="command", required=True)

    list_parser = commands.add_parser("list", help="List stored backups, newest first")
    list_parser.add_argument("--kind", choices=["full", "incremental"], help="Filter by kind")

    tables_parser = commands.add_parser("tables", help="List the tables in a backup")
    tables_parser.add_argument("artifact_id", help="Artifact id")

    diff_parser = commands.add_parser("diff", help="Compare a backup with the live database")
    diff_parser.add_argument("artifact_id", help="Artifact id")

    commands.add_parser("backup", help="Create a full backup")
    commands.add_parser("export", help="Export pending changes as an incremental backup")

    restore_parser = commands.add_parser("restore", help="Restore tables from a full backup")
    restore_parser.add_argument("artifact_id", help="Artifact id")
    restore_parser.add_argument("--tables", nargs="+", help="Tables to restore (default: all)")
    restore_parser.add_argument("--dry-run", action="store_true", help="Don't make changes")

    recover_parser = commands.add_parser(
        "recover", help="Restore the latest full backup and replay later exports"
    )
    recover_parser.add_argument("--until", help="Recover to this ISO 8601 instant (default: now)")

    return parser


async def run_command(args: argparse.Namespace, service: BackupService) -> Any:
    """Run one subcommand against a started service.

    Returns:
        JSON-serializable result

    Raises:
        BackupError: If the operation fails
    """
    if args.command == "list":
        return [artifact.to_dict() for artifact in await service.list_backups(args.kind)]

    if args.command == "tables":
        return {"artifact_id": args.artifact_id, "tables": await service.list_tables(args.artifact_id)}

    if args.command == "diff":
        diffs = await service.diff_backup(args.artifact_id)
        return {"artifact_id": args.artifact_id, "tables": [d.to_dict() for d in diffs]}

    if args.command == "backup":
        artifact = await service.run_backup()
        return {"artifact": artifact.to_dict() if artifact else None}

    if args.command == "export":
        artifact = await service.run_incremental_export()
        return {"artifact": artifact.to_dict() if artifact else None}

    if args.command == "restore":
        result = await service.run_restore(args.artifact_id, args.tables, args.dry_run)
        return result.to_dict()

    if args.command == "recover":
        until = parse_timestamp(args.until) if args.until else None
        result = await service.run_recovery(until)
        return result.to_dict()

    raise InvalidArgumentError(f"Unknown command: {args.command}")


async def _run(args: argparse.Namespace, config: ServerConfig) -> Any:
    service = BackupService.from_config(config)
    await service.start()
    try:
        return await run_command(args, service)
    finally:
        await service.shutdown()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.database:
        config = dataclasses.replace(
            config, database=dataclasses.replace(config.database, path=args.database)
        )

    try:
        result = asyncio.run(_run(args, config))
    except BackupError as e:
        print(json.dumps({"error": e.to_dict()}, indent=2))
        sys.exit(1)

    print(json.dumps(result, indent=2))
    sys.exit(0)


if __name__ == "__main__":
    main()
