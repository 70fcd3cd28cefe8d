#!/usr/bin/env python3
"""Copy every record from the file backend into PostgreSQL.

Records keep their (org_id, user_id, content_hash) keys, so running the
migration twice converges on the same rows.

Usage:
    python scripts/migrate_files_to_postgres.py --fs-root /srv/hostgate \\
        --database-url postgresql://hostgate_app@db/hostgate

Environment Variables:
    SHARED_FS_ROOT: Root of the file backend
    DATABASE_URL: PostgreSQL connection string (must not be a superuser or
                  BYPASSRLS role)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def migrate(fs_root: str, database_url: str, *, dry_run: bool = False) -> dict:
    """Copy all file-backed records.

    Returns:
        dict with migrated, failed and total counts
    """
    from hostgate.storage.file_store import FileTenantStore
    from hostgate.storage.postgres import PostgresTenantStore

    source = FileTenantStore(fs_root)
    target = None if dry_run else PostgresTenantStore(database_url)
    counts = {"total": 0, "migrated": 0, "failed": 0}
    try:
        for record in source.iter_all():
            counts["total"] += 1
            if target is None:
                continue
            try:
                target.upsert(record.org_id, record.user_id, record.content_hash, record.payload)
            except Exception as e:
                counts["failed"] += 1
                print(f"failed {record.org_id}/{record.user_id}/{record.content_hash}: {e}")
                continue
            counts["migrated"] += 1
    finally:
        if target is not None:
            target.close()
    return counts


def main():
    parser = argparse.ArgumentParser(
        description="Migrate hostgate records from files to PostgreSQL",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--fs-root", default=os.environ.get("SHARED_FS_ROOT"))
    parser.add_argument("--database-url", default=os.environ.get("DATABASE_URL"))
    parser.add_argument(
        "--dry-run", action="store_true", help="Count records without writing"
    )
    args = parser.parse_args()

    if not args.fs_root:
        print("Error: --fs-root or SHARED_FS_ROOT environment variable required")
        sys.exit(1)
    if not args.database_url and not args.dry_run:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        result = migrate(args.fs_root, args.database_url, dry_run=args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"total={result['total']} migrated={result['migrated']} failed={result['failed']}")
    if result["failed"]:
        sys.exit(2)


if __name__ == "__main__":
    main()
