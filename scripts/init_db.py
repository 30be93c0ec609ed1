#!/usr/bin/env python3
"""
Create the SQLite schema and optionally seed portfolios for local runs.

Seed file format (JSON list):
    [{"id": "p1", "display_name": "Demo", "visibility": "public",
      "holdings": [{"ticker": "AAPL", "shares": "10", "cost_basis": "1200"},
                   {"ticker": "CASH", "is_static": true, "static_value": "500"}]}]

Usage:
    python scripts/init_db.py                    # schema only
    python scripts/init_db.py --seed seed.json   # schema + portfolios/holdings
"""
from pathlib import Path
import asyncio
import json
import os
import sys

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from marketsnap.config import settings
from marketsnap.db import SqliteStore
from marketsnap.models import Holding


async def seed(store: SqliteStore, path: Path) -> int:
    records = json.loads(path.read_text(encoding="utf-8"))
    for record in records:
        holdings = [Holding(**h) for h in record.pop("holdings", [])]
        await store.save_portfolio(record, holdings)
    return len(records)


def main():
    import argparse
    p = argparse.ArgumentParser(description="Create the marketsnap schema.")
    p.add_argument("--seed", type=Path, help="JSON file with portfolios and holdings to load")
    args = p.parse_args()

    store = SqliteStore(settings.db_path)
    store.migrate()
    seeded = asyncio.run(seed(store, args.seed)) if args.seed else 0
    count = len(asyncio.run(store.list_portfolio_ids()))
    print('DB ready at', settings.db_path, '| seeded:', seeded, '| portfolios:', count)


if __name__ == '__main__':
    main()
