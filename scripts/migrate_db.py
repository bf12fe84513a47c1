#!/usr/bin/env python3
"""
Database Migration — Create missing dispatch tables from the ORM models.

Usage:
    python scripts/migrate_db.py
    python scripts/migrate_db.py --check              # report only, no changes
    python scripts/migrate_db.py --config prod.yaml

The conversation, message and assignment procedures are installed by the
platform's own migrations; this script only covers the mapped tables.
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
from sqlalchemy import inspect


async def existing_tables(engine) -> list[str]:
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(check_only: bool = False, config_path: str = None) -> int:
    from config.settings import load_settings
    load_settings(config_path)

    from database.models import Base
    from database.session import close_db, get_engine, init_db

    engine = get_engine()
    defined = list(Base.metadata.tables.keys())
    url = str(engine.url)
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url.split('@')[-1] if '@' in url else url}")

    try:
        if check_only:
            existing = await existing_tables(engine)
            print(f"Tables defined: {', '.join(defined)}")
            print(f"Tables existing: {', '.join(existing) or '(none)'}")
            missing = sorted(set(defined) - set(existing))
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print("Running database migration...")
        await init_db(engine)
        existing = await existing_tables(engine)
        print(f"Tables created/verified: {', '.join(t for t in defined if t in existing)}")
        print("Migration complete. ✓")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    load_dotenv()
    sys.exit(asyncio.run(run_migration(check_only=args.check, config_path=args.config)))


if __name__ == "__main__":
    main()
