#!/usr/bin/env python3
"""Create or verify the Postgres schema ahead of a deploy.

Usage:
    # Using environment variables:
    DATABASE_URL=postgresql://app:secret@db:5432/habla python scripts/migrate.py

    # Or with command line args:
    python scripts/migrate.py --database-url postgresql://app:secret@db:5432/habla

    # Print the DDL without connecting:
    python scripts/migrate.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def migrate(database_url: str, dry_run: bool = False) -> dict:
    """Apply every schema statement; all of them are idempotent.

    Returns:
        dict with the statement count and status ('applied' or 'dry_run')
    """
    from habla.storage.postgres import SCHEMA_STATEMENTS, PostgresStore

    if dry_run:
        for statement in SCHEMA_STATEMENTS:
            print(f"{statement.strip()};\n")
        return {"statements": len(SCHEMA_STATEMENTS), "status": "dry_run"}

    store = PostgresStore(database_url, min_size=1, max_size=1, ensure_schema=False)
    try:
        store.verify_connection()
        store.ensure_schema()
    finally:
        store.close()
    return {"statements": len(SCHEMA_STATEMENTS), "status": "applied"}


def main():
    parser = argparse.ArgumentParser(
        description="Create or verify the Habla database schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the DDL without connecting",
    )

    args = parser.parse_args()

    if not args.database_url and not args.dry_run:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)

    from habla.service.runtime import _mask_url_password

    print(f"Starting database migration on {_mask_url_password(args.database_url) or '(dry run)'}")
    try:
        result = migrate(args.database_url, args.dry_run)
    except Exception as e:
        print(f"Migration failed: {e}")
        sys.exit(1)

    if result["status"] == "applied":
        print(f"Database migration completed ({result['statements']} statements)")
        print("Tables created/verified: app_user, conversation, message, audit_log")


if __name__ == "__main__":
    main()
