#!/usr/bin/env python3
"""
Run one refresh cycle from the command line (cron / scheduler entry point).

Usage:
    python scripts/refresh_snapshots.py               # every portfolio
    python scripts/refresh_snapshots.py --portfolio p1
"""
from pathlib import Path
import asyncio
import os
import sys

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from marketsnap.config import settings
from marketsnap.errors import CacheTierUnavailable, PricesUnavailable
from marketsnap.logging import setup_logging
from marketsnap.pipeline.orchestrator import Runtime, refresh_all
from marketsnap.utils import now_utc


async def run(portfolio_id: str | None):
    runtime = Runtime.from_settings(settings)
    try:
        if portfolio_id:
            try:
                snap = await runtime.builder.refresh_portfolio(portfolio_id)
            except (CacheTierUnavailable, PricesUnavailable) as e:
                await runtime.cache.record_error(portfolio_id, f"{type(e).__name__}: {e}", now_utc())
                print('Refresh failed:', e)
                return 1
            print('Refreshed', snap.portfolio_id, '| total_value:', snap.total_value, '| phase:', snap.market_phase)
            return 0
        summary = await refresh_all(runtime)
        print('Run', summary.run_id, summary.status,
              '| refreshed:', summary.portfolios_refreshed,
              '| failed:', ','.join(summary.portfolios_failed) or '-',
              '| quoted:', f'{summary.tickers_quoted}/{summary.tickers_requested}',
              '| elapsed:', summary.elapsed_sec)
        return 1 if summary.status == 'failed' or summary.portfolios_failed else 0
    finally:
        await runtime.aclose()


def main():
    import argparse
    p = argparse.ArgumentParser(description="Refresh portfolio snapshots.")
    p.add_argument("--portfolio", help="Refresh only this portfolio id")
    args = p.parse_args()
    setup_logging()
    sys.exit(asyncio.run(run(args.portfolio)))


if __name__ == '__main__':
    main()
