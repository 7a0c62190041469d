"""
Snapshot CLI tool for SchemaVault.

Operator commands against the application database:
- create: Take a manual snapshot
- list: List snapshots, newest first
- show: Show one snapshot
- restore: Restore a snapshot (a pre-change snapshot is taken first)
- prune: Delete old snapshots
- diff: Compare two snapshots
- changed: Report whether the schema changed since the latest snapshot

Usage:
    schemavault create --name before-migration
    schemavault list --limit 10
    schemavault restore 3f1c...
    schemavault prune --keep 20 --delete-payloads
    schemavault diff <old-id> <new-id> --format json

Configuration comes from the environment (see config.py); --db-path
overrides DB_PATH.

Invariants:
    - Exit code 0 on success, 1 on any failure (including partial restores)
    - Machine-readable output with --format json
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any, List, Optional

import json_log_formatter

from ..config import EngineConfig
from ..engine import SchemaEngine
from ..errors import SchemaVaultError
from ..snapshot.manager import SnapshotType

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig, verbose: bool = False) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
        verbose: Force DEBUG level
    """
    level_name = "DEBUG" if verbose else config.observability.log_level
    level = getattr(logging, level_name.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class SnapshotCLI:
    """Snapshot commands over a SchemaEngine.

    Each method returns a JSON-serializable result; printing is done by main.

    Example:
        >>> cli = SnapshotCLI(engine)
        >>> snapshot_id = await cli.create(name="nightly")
    """

    def __init__(self, engine: SchemaEngine) -> None:
        self.engine = engine

    async def create(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        snapshot_type: str = SnapshotType.MANUAL.value,
    ) -> dict[str, Any]:
        snapshot_id = await self.engine.snapshots.create_snapshot(
            name=name,
            description=description,
            created_by=created_by,
            snapshot_type=snapshot_type,
        )
        snapshot = await self.engine.snapshots.get_snapshot(snapshot_id)
        return snapshot.to_dict()

    async def list_snapshots(self, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        page = await self.engine.snapshots.get_snapshots(limit=limit, offset=offset)
        return {"total": page.total, "snapshots": [s.to_dict() for s in page.snapshots]}

    async def show(self, snapshot_id: str, include_schema: bool = False) -> Optional[dict[str, Any]]:
        snapshot = await self.engine.snapshots.get_snapshot(snapshot_id)
        if snapshot is None:
            return None
        result = snapshot.to_dict()
        result["tables"] = [t.name for t in snapshot.tables]
        if include_schema:
            result["full_schema"] = snapshot.full_schema
        return result

    async def restore(self, snapshot_id: str) -> dict[str, Any]:
        result = await self.engine.restore_snapshot(snapshot_id)
        return dataclasses.asdict(result)

    async def prune(self, keep: Optional[int] = None, delete_payloads: bool = False) -> dict[str, Any]:
        deleted = await self.engine.prune_snapshots(keep, delete_payloads=delete_payloads)
        return {"deleted": deleted}

    async def diff(self, old_id: str, new_id: str) -> dict[str, Any]:
        comparison = await self.engine.snapshots.compare_snapshots(old_id, new_id)
        return comparison.to_dict()

    async def changed(self) -> dict[str, Any]:
        return {"changed": await self.engine.snapshots.has_schema_changed()}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SchemaVault snapshot management tool")
    parser.add_argument("--db-path", help="SQLite database path (overrides DB_PATH)")
    parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # create command
    create_parser = subparsers.add_parser("create", help="Take a snapshot")
    create_parser.add_argument("--name", help="Snapshot name")
    create_parser.add_argument("--description", help="Snapshot description")
    create_parser.add_argument("--created-by", help="Actor recorded on the snapshot")
    create_parser.add_argument(
        "--type",
        dest="snapshot_type",
        choices=[t.value for t in SnapshotType],
        default=SnapshotType.MANUAL.value,
        help="Snapshot type",
    )

    # list command
    list_parser = subparsers.add_parser("list", help="List snapshots, newest first")
    list_parser.add_argument("--limit", type=int, default=20, help="Page size")
    list_parser.add_argument("--offset", type=int, default=0, help="Page offset")

    # show command
    show_parser = subparsers.add_parser("show", help="Show a snapshot")
    show_parser.add_argument("snapshot_id", help="Snapshot ID")
    show_parser.add_argument("--schema", action="store_true", help="Include full DDL")

    # restore command
    restore_parser = subparsers.add_parser("restore", help="Restore a snapshot")
    restore_parser.add_argument("snapshot_id", help="Snapshot ID")

    # prune command
    prune_parser = subparsers.add_parser("prune", help="Delete old snapshots")
    prune_parser.add_argument("--keep", type=int, help="Snapshots to keep (default: SNAPSHOT_KEEP_COUNT)")
    prune_parser.add_argument(
        "--delete-payloads", action="store_true", help="Also delete blob-store payloads"
    )

    # diff command
    diff_parser = subparsers.add_parser("diff", help="Compare two snapshots")
    diff_parser.add_argument("old_id", help="Baseline snapshot ID")
    diff_parser.add_argument("new_id", help="Snapshot ID to compare")

    # changed command
    subparsers.add_parser("changed", help="Has the schema changed since the latest snapshot?")

    return parser


def _print_text(command: str, result: Any) -> None:
    if command == "list":
        print(f"{result['total']} snapshot(s)")
        for s in result["snapshots"]:
            backup = "data" if s["has_data_backup"] else "schema-only"
            print(f"  v{s['version']:<5} {s['id']}  {s['snapshot_type']:<10} {backup:<11} {s['name']}")
    elif command == "restore":
        print(f"Restored snapshot {result['snapshot_id']} (v{result['version']})")
        print(f"  tables: {', '.join(result['restored_tables']) or '-'}")
        print(f"  data restored: {result['data_restored']}")
        for table, error in result["failed_tables"].items():
            print(f"  FAILED {table}: {error}")
        print(f"  recorded as snapshot {result['new_snapshot_id']}")
    elif command == "prune":
        print(f"Deleted {result['deleted']} snapshot(s)")
    elif command == "diff":
        if not result["changes"]:
            print("No changes detected")
        else:
            print(f"Found {len(result['changes'])} change(s):")
            for change in result["changes"]:
                print(f"  {change['kind'].upper()}: {change['table']} - {change['message']}")
    elif command == "changed":
        print("Schema changed" if result["changed"] else "Schema unchanged")
    else:
        print(json.dumps(result, indent=2, default=str))


async def _run_command(args: argparse.Namespace, engine: SchemaEngine) -> Any:
    cli = SnapshotCLI(engine)
    await engine.initialize()
    try:
        if args.command == "create":
            return await cli.create(args.name, args.description, args.created_by, args.snapshot_type)
        elif args.command == "list":
            return await cli.list_snapshots(args.limit, args.offset)
        elif args.command == "show":
            return await cli.show(args.snapshot_id, include_schema=args.schema)
        elif args.command == "restore":
            return await cli.restore(args.snapshot_id)
        elif args.command == "prune":
            return await cli.prune(args.keep, delete_payloads=args.delete_payloads)
        elif args.command == "diff":
            return await cli.diff(args.old_id, args.new_id)
        elif args.command == "changed":
            return await cli.changed()
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await engine.close()


def run(argv: Optional[List[str]] = None, config: Optional[EngineConfig] = None) -> int:
    """Run the CLI and return the exit code."""
    args = build_parser().parse_args(argv)

    try:
        config = config or EngineConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.db_path:
        config = dataclasses.replace(
            config, storage=dataclasses.replace(config.storage, db_path=args.db_path)
        )

    setup_logging(config, verbose=args.verbose)

    engine = SchemaEngine.from_config(config)
    try:
        result = asyncio.run(_run_command(args, engine))
    except SchemaVaultError as e:
        logger.error("Command failed", extra={"command": args.command, "code": e.code})
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if result is None:
        print(f"Snapshot not found: {args.snapshot_id}", file=sys.stderr)
        return 1

    if args.format == "json":
        print(json.dumps(result, indent=2, default=str))
    else:
        _print_text(args.command, result)

    if args.command == "restore" and result["failed_tables"]:
        return 1
    return 0


def main() -> None:
    """CLI entry point for the snapshot tool."""
    sys.exit(run())

