#!/usr/bin/env python3
"""
Migration script: legacy (node, frame_type) heads -> (node, agent) heads

Reads a legacy head dump and writes the agent-keyed head index of a store.
The legacy frame type is dropped. When several legacy heads map to the same
(node, agent) pair, the most recently committed one wins.

Legacy file format (JSON), either a list or {"heads": [...]} of:
    {"node_id": "<hex>", "frame_type": "context-docs", "frame_id": "<hex>",
     "agent_id": "docs", "committed_at": "2025-01-01T00:00:00"}

Usage:
    python scripts/migrate_heads.py LEGACY_FILE [options]

Options:
    --store DIR     Store root (default: from config)
    --dry-run       Show what would be migrated without making changes
    --backup        Back up heads.json before migration (default: True)
    --no-backup     Skip backup
    --rollback FILE Restore heads.json from a backup
"""

from __future__ import annotations

import argparse
import json
import shutil
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from merkle_context.config import ContextConfig, configure_logging
from merkle_context.heads import HeadIndex, MigrationReport, migrate_legacy_heads

HEADS_FILE = "heads.json"


def load_legacy_entries(path: Path) -> list[dict[str, Any]]:
    """Load legacy head entries from a JSON dump."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("heads", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of legacy heads")
    return [entry for entry in data if isinstance(entry, dict)]


def create_backup(heads_path: Path) -> Path:
    """Copy heads.json next to itself with a timestamp suffix."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_path = heads_path.with_name(f"{heads_path.name}.backup_{timestamp}")
    shutil.copy2(heads_path, backup_path)
    return backup_path


def rollback_to_backup(backup_path: Path, heads_path: Path) -> None:
    """Restore heads.json from a backup."""
    shutil.copy2(backup_path, heads_path)


def migrate(legacy_file: Path, store_root: Path, dry_run: bool = False, backup: bool = True) -> MigrationReport:
    """
    Migrate legacy heads into the store's head index.

    In dry-run mode the conversion runs against an in-memory index and
    nothing is written.
    """
    heads_path = store_root / HEADS_FILE
    entries = load_legacy_entries(legacy_file)
    print(f"Found {len(entries)} legacy heads in {legacy_file}")

    if dry_run:
        return migrate_legacy_heads(entries, HeadIndex())

    if backup and heads_path.exists():
        backup_path = create_backup(heads_path)
        print(f"  Backup created: {backup_path}")

    store_root.mkdir(parents=True, exist_ok=True)
    return migrate_legacy_heads(entries, HeadIndex(heads_path))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Migrate legacy frame-type heads to agent-keyed heads")
    parser.add_argument("legacy_file", type=Path, nargs="?", help="Legacy head dump (JSON)")
    parser.add_argument("--store", type=Path, help="Store root (default: from config)")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be migrated")
    parser.add_argument("--backup", action="store_true", default=True, help="Back up heads.json")
    parser.add_argument("--no-backup", action="store_false", dest="backup", help="Skip backup")
    parser.add_argument("--rollback", type=Path, help="Restore heads.json from this backup")
    args = parser.parse_args(argv)

    config = ContextConfig.load()
    configure_logging(config.log_level)
    store_root = args.store or config.store_root

    # Handle rollback
    if args.rollback:
        print(f"Rolling back {store_root / HEADS_FILE} from {args.rollback}")
        rollback_to_backup(args.rollback, store_root / HEADS_FILE)
        print("Rollback complete")
        return 0

    if args.legacy_file is None:
        parser.error("legacy_file is required unless --rollback is given")

    if not args.legacy_file.exists():
        print(f"Legacy file not found: {args.legacy_file}", file=sys.stderr)
        return 1

    report = migrate(args.legacy_file, store_root, dry_run=args.dry_run, backup=args.backup)

    print(f"\nMigrated: {report.migrated} heads")
    print(f"Conflicts resolved: {report.conflicts}")
    if report.skipped:
        print(f"Skipped (no agent): {len(report.skipped)}")
        for item in report.skipped:
            print(f"  {item}")
    if args.dry_run:
        print("(dry run - no changes made)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
