from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime

import httpx
import structlog

from ..cache_layer import SnapshotCache
from ..db import SqliteStore
from ..errors import CacheTierUnavailable, PricesUnavailable
from ..fast_tier import RedisFastTier
from ..models import RefreshSummary
from ..providers.registry import build_providers
from ..session import phase
from ..utils import RetryPolicy, ensure_utc, now_utc
from .locking import release, try_acquire
from .market import QuoteFetcher
from .snapshots import SnapshotBuilder

log = structlog.get_logger()

REFRESH_LOCK = "refresh"


@dataclass
class Runtime:
    """Everything a refresh or a read needs, wired from one Settings object."""

    settings: object
    store: SqliteStore
    cache: SnapshotCache
    fetcher: QuoteFetcher
    builder: SnapshotBuilder
    http_client: httpx.AsyncClient | None = None
    fast_tier: RedisFastTier | None = None

    @classmethod
    def from_settings(cls, cfg, http_client: httpx.AsyncClient | None = None, fast_tier=None) -> "Runtime":
        store = SqliteStore(cfg.db_path)
        store.migrate()
        if fast_tier is None and cfg.fast_tier_enabled:
            fast_tier = RedisFastTier(cfg.redis_url)
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=cfg.http_timeout_seconds, follow_redirects=True)
        cache = SnapshotCache(fast_tier, store, stale_after_seconds=cfg.stale_after_seconds)
        fetcher = QuoteFetcher(
            build_providers(cfg, client=http_client),
            retry_policy=RetryPolicy(
                attempts=cfg.http_retry_attempts,
                base_delay=cfg.http_retry_backoff_seconds,
                max_delay=cfg.http_retry_max_delay_seconds,
            ),
            max_concurrency=cfg.fetch_max_concurrency,
        )
        builder = SnapshotBuilder.from_settings(fetcher, cache, store, cfg)
        return cls(cfg, store, cache, fetcher, builder, http_client=http_client, fast_tier=fast_tier)

    async def aclose(self):
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.fast_tier is not None:
            await self.fast_tier.aclose()


def trigger_refresh(background, runtime: Runtime) -> str:
    run_id = str(uuid.uuid4())
    background.add_task(refresh_all, runtime, None, run_id)
    return run_id


async def refresh_all(runtime: Runtime, now: datetime | None = None, run_id: str | None = None) -> RefreshSummary:
    """One refresh cycle over every portfolio. Skipped when another run holds the lock."""
    now = ensure_utc(now or now_utc())
    run_id = run_id or str(uuid.uuid4())
    cfg = runtime.settings
    started = time.monotonic()
    summary = RefreshSummary(run_id=run_id)

    try:
        acquired = await try_acquire(cfg.db_path, REFRESH_LOCK, run_id, cfg.refresh_lock_ttl_seconds, now)
    except CacheTierUnavailable as exc:
        log.error("refresh_failed", run_id=run_id, step="acquire_lock", err=str(exc))
        summary.status = "failed"
        return summary
    if not acquired:
        log.info("refresh_skipped", run_id=run_id, reason="lock_held")
        summary.status = "skipped"
        return summary

    log.info("refresh_started", run_id=run_id, market_phase=phase(now, cfg.exchange_tz).value)
    try:
        try:
            portfolio_ids = await runtime.store.list_portfolio_ids()
        except CacheTierUnavailable as exc:
            log.error("refresh_failed", run_id=run_id, step="list_portfolios", err=str(exc))
            summary.status = "failed"
            return summary

        holdings_by_id = {}
        tickers = {runtime.builder.benchmark_ticker}
        for pid in portfolio_ids:
            try:
                holdings = await runtime.store.get_holdings(pid)
            except CacheTierUnavailable as exc:
                log.error("holdings_read_failed", run_id=run_id, portfolio_id=pid, err=str(exc))
                summary.portfolios_failed.append(pid)
                continue
            holdings_by_id[pid] = holdings
            tickers.update(h.ticker for h in holdings if not h.is_static)

        summary.tickers_requested = len(tickers)
        quotes = await runtime.fetcher.get_quotes(sorted(tickers))
        summary.tickers_quoted = len(quotes)
        if not quotes:
            # every provider is down; existing snapshots are kept and age into stale
            err = PricesUnavailable(tickers)
            log.error("refresh_failed", run_id=run_id, step="quotes", err=str(err))
            summary.status = "failed"
            for pid in holdings_by_id:
                summary.portfolios_failed.append(pid)
                await runtime.cache.record_error(pid, f"{type(err).__name__}: {err}", now)
            return summary
        await runtime.builder.store_quotes(quotes, now)
        quotes = await runtime.builder.fill_from_price_cache(tickers, quotes)
        closes = await runtime.builder.load_daily_closes(tickers, now)

        for pid, holdings in holdings_by_id.items():
            try:
                prior = await runtime.cache.get(pid)
                snapshot = runtime.builder.build(pid, holdings, quotes, closes, prior, now)
                await runtime.cache.put(pid, snapshot)
                summary.portfolios_refreshed += 1
            except Exception as exc:
                # one bad portfolio must not stop the rest of the run
                log.error("portfolio_refresh_failed", run_id=run_id, portfolio_id=pid, err=repr(exc))
                summary.portfolios_failed.append(pid)
                await runtime.cache.record_error(pid, f"{type(exc).__name__}: {exc}", now)
        return summary
    finally:
        try:
            await release(cfg.db_path, REFRESH_LOCK, run_id)
        except CacheTierUnavailable as exc:
            # the lease still expires after refresh_lock_ttl_seconds
            log.error("lock_release_failed", run_id=run_id, err=str(exc))
        summary.elapsed_sec = round(time.monotonic() - started, 2)
        log.info(
            "refresh_finished",
            run_id=run_id,
            status=summary.status,
            portfolios_refreshed=summary.portfolios_refreshed,
            portfolios_failed=summary.portfolios_failed,
            tickers_requested=summary.tickers_requested,
            tickers_quoted=summary.tickers_quoted,
            elapsed_sec=summary.elapsed_sec,
        )
