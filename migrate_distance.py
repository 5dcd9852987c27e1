#!/usr/bin/env python3
"""
Run or inspect the one-time distance-metric migration.

The server runs this automatically at startup; the script is for checking
state or forcing a run by hand.

Usage:
    python migrate_distance.py --status   # Marker state, metric and size
    python migrate_distance.py --dry-run  # Preview what a run would do
    python migrate_distance.py            # Apply migration
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from chroma_store import ChromaStore
from config import CONFIG
from migration import DistanceMigrator, MigrationStatus
from sidecar import SidecarSupervisor


def describe(migrator: DistanceMigrator) -> list[str]:
    """Human-readable migration plan for the current state."""
    lines = [
        f"Data directory: {CONFIG.data_dir}",
        f"Marker: {migrator.marker.path} ({migrator.marker.status().value})",
    ]
    if migrator.marker.status() is MigrationStatus.DONE:
        lines.append(f"Completed at: {migrator.marker.completed_at() or 'unknown'}")
        lines.append("Nothing to do.")
        return lines

    if migrator.snapshot_path.exists():
        lines.append(f"Snapshot found: {migrator.snapshot_path}")
        lines.append(f"Plan: recreate '{migrator.collection_name}' ({migrator.metric}) from snapshot")
        return lines

    collection = migrator.store.get_collection(migrator.collection_name)
    if collection is None:
        lines.append(f"Collection '{migrator.collection_name}' does not exist.")
        lines.append("Plan: write marker only")
        return lines

    total = collection.count()
    lines.append(f"Collection '{collection.name}': {total} records, metric {collection.distance_metric}")
    if collection.distance_metric == migrator.metric:
        lines.append("Plan: already on target metric, write marker only")
    elif total == 0:
        lines.append(f"Plan: recreate empty collection with metric {migrator.metric}")
    else:
        batches = -(-total // migrator.batch_size)
        lines.append(
            f"Plan: copy {total} records in {batches} batch(es) of {migrator.batch_size}, "
            f"recreate with metric {migrator.metric}, re-insert with stored embeddings"
        )
    return lines


async def run(dry_run: bool, status_only: bool) -> int:
    supervisor = SidecarSupervisor()
    if status_only or dry_run:
        # Inspection never launches the sidecar.
        if not await supervisor.is_live():
            print(f"Error: Chroma is not reachable at {CONFIG.base_url}")
            return 1
    else:
        readiness = await supervisor.ensure_running()
        if not readiness.ready:
            print(f"Error: Chroma sidecar {readiness.reason}")
            return 1

    migrator = DistanceMigrator(ChromaStore())
    print("\n".join(describe(migrator)))

    if status_only:
        return 0
    if dry_run:
        print("\nDRY RUN MODE - No changes applied")
        print("Run without --dry-run to apply migration")
        return 0

    status = await migrator.migrate_if_needed()
    if status is MigrationStatus.DONE:
        print("\nMigration complete")
        return 0
    print("\nMigration failed; see errors above. It will be retried on next server start.")
    return 1


def main():
    parser = argparse.ArgumentParser(
        description="Migrate the memories collection to the configured distance metric",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python migrate_distance.py --status   # Show marker and collection state
  python migrate_distance.py --dry-run  # Preview changes
  python migrate_distance.py            # Apply migration
        """,
    )
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without applying them")
    parser.add_argument("--status", action="store_true", help="Only report current migration state")
    args = parser.parse_args()

    try:
        code = asyncio.run(run(dry_run=args.dry_run, status_only=args.status))
    except KeyboardInterrupt:
        print("\n\nMigration cancelled")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
