#!/usr/bin/env python3
"""
Import settings files written by the file-based deployment into the database.

  data/account-settings.json  ->  app_documents["account_settings"]
  data/metric-mapping.json    ->  app_documents["metric_mapping"]

Documents are copied as-is; the single-account credentials layout and the
flat metric mapping are upgraded by the app when it reads them.

Run from backend directory:
  python scripts/import_legacy_settings.py --data-dir ../data

Options:
  --data-dir DIR   Directory holding the JSON files (default: ./data)
  --overwrite      Replace documents that already exist in the database
  --dry-run        Show what would be imported without writing
"""

import asyncio
import argparse
import json
import sys
from pathlib import Path

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from app.database import async_session, init_db
from app.models import ACCOUNT_SETTINGS_KEY, METRIC_MAPPING_KEY
from app.services.document_store import DocumentStore

LEGACY_FILES = {
    ACCOUNT_SETTINGS_KEY: "account-settings.json",
    METRIC_MAPPING_KEY: "metric-mapping.json",
}


def read_legacy_file(path: Path):
    """Parsed JSON object, or None when the file is missing, unreadable or not an object."""
    if not path.is_file():
        return None
    try:
        value = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        print(f"  Skipping {path.name}: {e}")
        return None
    if not isinstance(value, dict):
        print(f"  Skipping {path.name}: expected a JSON object")
        return None
    return value


async def import_legacy_settings(data_dir: Path, overwrite: bool = False, dry_run: bool = False) -> int:
    await init_db()
    imported = 0
    async with async_session() as db:
        documents = DocumentStore(db)
        for key, filename in LEGACY_FILES.items():
            value = read_legacy_file(data_dir / filename)
            if value is None:
                print(f"  {filename}: nothing to import")
                continue
            if await documents.get(key) is not None and not overwrite:
                print(f"  {key}: already in database, skipped (use --overwrite)")
                continue
            if dry_run:
                print(f"  [DRY-RUN] Would import {filename} -> {key}")
                continue
            await documents.set(key, value)
            imported += 1
            print(f"  Imported {filename} -> {key}")
        await db.commit()
    return imported


async def main():
    parser = argparse.ArgumentParser(description="Import file-based settings into the database")
    parser.add_argument("--data-dir", type=Path, default=Path("data"), help="Directory with the JSON files")
    parser.add_argument("--overwrite", action="store_true", help="Replace existing documents")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be imported without writing")
    args = parser.parse_args()

    print(f"Importing legacy settings from {args.data_dir.resolve()}...")
    if args.dry_run:
        print("  Mode: DRY RUN (no changes will be made)")

    imported = await import_legacy_settings(args.data_dir, overwrite=args.overwrite, dry_run=args.dry_run)
    print(f"\nDone. {imported} document(s) imported.")


if __name__ == "__main__":
    asyncio.run(main())
