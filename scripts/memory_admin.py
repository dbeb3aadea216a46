#!/usr/bin/env python3
"""Administer memory projects: backups, restores, cleanup and maintenance.

Reads configuration from MEMORY_* environment variables (see
memory_lifecycle.config); --root overrides MEMORY_ROOT.

Usage:
    python scripts/memory_admin.py backup demo [--force]
    python scripts/memory_admin.py restore memory-banks/backups/demo/demo_2025-01-01_12-00-00-000000.json
    python scripts/memory_admin.py list-backups [demo]
    python scripts/memory_admin.py cleanup [--orphaned] [--corrupted] [--project demo --keep 10]
    python scripts/memory_admin.py maintain demo [--dry-run] [--no-prune] [--threshold 0.9]
    python scripts/memory_admin.py stats [demo]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from memory_lifecycle.config import PathSettings, Settings  # noqa: E402
from memory_lifecycle.errors import MemoryEngineError  # noqa: E402
from memory_lifecycle.logging_config import configure_logging  # noqa: E402
from memory_lifecycle.models import MaintenancePolicy  # noqa: E402
from memory_lifecycle.services import MemoryService  # noqa: E402

logger = logging.getLogger(__name__)


async def cmd_backup(service: MemoryService, args: argparse.Namespace) -> int:
    path = await service.backup_now(args.project, force=args.force)
    print(f"Backup created: {path}")
    return 0


async def cmd_restore(service: MemoryService, args: argparse.Namespace) -> int:
    project = await service.restore(Path(args.backup_path), args.project)
    print(f"Restored project '{project}' from {args.backup_path}")
    return 0


async def cmd_list_backups(service: MemoryService, args: argparse.Namespace) -> int:
    backups = await service.backups.list_backups(args.project)
    if not backups:
        print("No backups found")
        return 0
    for backup in backups:
        print(f"  {backup.timestamp}  {backup.project_name:<24} {backup.file_size:>10} bytes  {backup.file_path}")
    print(f"\n{len(backups)} backups")
    return 0


async def cmd_cleanup(service: MemoryService, args: argparse.Namespace) -> int:
    stats = {"old": 0, "orphaned": 0, "corrupted": 0}
    if args.project:
        stats["old"] = await service.backups.cleanup_old_backups(args.project, max_backups=args.keep)
    if args.orphaned:
        stats["orphaned"] = await service.backups.cleanup_orphaned()
    if args.corrupted:
        stats["corrupted"] = await service.backups.cleanup_corrupted()

    print("Cleanup complete:")
    print(f"  Old backups removed: {stats['old']}")
    print(f"  Orphaned backups removed: {stats['orphaned']}")
    print(f"  Corrupted backups removed: {stats['corrupted']}")
    return 0


async def cmd_maintain(service: MemoryService, args: argparse.Namespace) -> int:
    policy = MaintenancePolicy.from_settings(service.config.maintenance)
    if args.threshold is not None:
        policy.similarity_threshold = args.threshold
    if args.max_entries is not None:
        policy.max_entries = args.max_entries
    policy.prune = not args.no_prune
    policy.consolidate = not args.no_consolidate

    if args.dry_run:
        # read() hands out a private copy, so the preview never reaches disk
        scratch = await service.storage.read(args.project)
        before = len(scratch.memories)
        consolidation = service.engine.consolidate(scratch, policy.similarity_threshold, policy.min_cluster_size)
        pruning = service.engine.prune(scratch, policy.max_entries, policy.min_importance, policy.max_age)
        print(f"[DRY RUN] Maintenance preview for '{args.project}':")
        print(f"  Memories: {before} -> {len(scratch.memories)}")
        print(f"  Would merge: {consolidation.merged_count} ({consolidation.cluster_count} clusters)")
        for reason in pruning.reasons:
            print(f"  Would prune {reason}")
        return 0

    report = await service.run_maintenance(args.project, policy)
    print(json.dumps(report.to_dict(), indent=2))
    return 0


async def cmd_stats(service: MemoryService, args: argparse.Namespace) -> int:
    stats = await service.get_stats(args.project)
    print(json.dumps(stats, indent=2, default=str))
    return 0


COMMANDS = {
    "backup": cmd_backup,
    "restore": cmd_restore,
    "list-backups": cmd_list_backups,
    "cleanup": cmd_cleanup,
    "maintain": cmd_maintain,
    "stats": cmd_stats,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Administer memory projects and their backups")
    parser.add_argument("--root", help="Memory bank directory (overrides MEMORY_ROOT)")
    parser.add_argument("--log-level", help="Logging level (overrides MEMORY_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("backup", help="Back up a project now")
    p.add_argument("project")
    p.add_argument("--force", action="store_true", help="Ignore the backup cooldown")

    p = sub.add_parser("restore", help="Restore a project from a backup file")
    p.add_argument("backup_path")
    p.add_argument("--project", help="Target project (default: derived from the file name)")

    p = sub.add_parser("list-backups", help="List backups, newest first")
    p.add_argument("project", nargs="?")

    p = sub.add_parser("cleanup", help="Remove old, orphaned or corrupted backups")
    p.add_argument("--project", help="Apply the retention cap to this project")
    p.add_argument("--keep", type=int, help="Backups to keep for --project (default: configured cap)")
    p.add_argument("--orphaned", action="store_true", help="Remove backups of deleted projects")
    p.add_argument("--corrupted", action="store_true", help="Remove backups that fail validation")

    p = sub.add_parser("maintain", help="Consolidate, adjust and prune a project")
    p.add_argument("project")
    p.add_argument("--dry-run", action="store_true", help="Preview without writing")
    p.add_argument("--threshold", type=float, help="Similarity threshold for consolidation")
    p.add_argument("--max-entries", type=int, help="Capacity cap for pruning")
    p.add_argument("--no-prune", action="store_true", help="Skip pruning")
    p.add_argument("--no-consolidate", action="store_true", help="Skip consolidation")

    p = sub.add_parser("stats", help="Show storage, cache and backup statistics")
    p.add_argument("project", nargs="?")

    return parser


def main() -> int:
    args = build_parser().parse_args()

    config = Settings()
    if args.root:
        config.paths = PathSettings(root=Path(args.root))
    configure_logging(args.log_level or config.log_level)

    service = MemoryService.from_settings(config)
    try:
        return asyncio.run(COMMANDS[args.command](service, args))
    except MemoryEngineError as e:
        logger.error(e.user_message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
