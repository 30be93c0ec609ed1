import time

import structlog
from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, Response

from .schemas import BenchmarkQuote, MarketStatus, PortfolioRefreshResponse, RefreshRun, SnapshotResponse
from ..errors import CacheTierUnavailable, PricesUnavailable
from ..pipeline.orchestrator import trigger_refresh
from ..session import cache_ttl, is_trading_session, phase, start_of_trading_day, to_exchange_time
from ..utils import now_utc

log = structlog.get_logger()

router = APIRouter()

def _runtime(request: Request):
    return request.app.state.runtime

@router.get(
    '/health',
    summary="Health check",
    description="Returns service and durable store connectivity.",
    tags=["Health"],
)
async def health(request: Request):
    runtime = _runtime(request)
    try:
        ids = await runtime.store.list_portfolio_ids()
    except CacheTierUnavailable as e:
        raise HTTPException(503, f'db_error: {e}')
    return {
        'ok': True,
        'db': 'ok',
        'portfolios': len(ids),
        'fast_tier': 'enabled' if runtime.cache.fast is not None else 'disabled',
        'providers': [p.name for p in runtime.fetcher.providers],
    }

@router.get(
    '/market/status',
    response_model=MarketStatus,
    summary="Market phase",
    description="Current exchange session phase and the cache TTL that goes with it.",
    tags=["Market"],
)
def market_status(request: Request, response: Response):
    tz_name = _runtime(request).settings.exchange_tz
    now = now_utc()
    ttl = int(cache_ttl(now, tz_name).total_seconds())
    response.headers['Cache-Control'] = f'public, max-age={min(ttl, 60)}'
    return MarketStatus(
        phase=phase(now, tz_name).value,
        is_trading_session=is_trading_session(now, tz_name),
        exchange_time=to_exchange_time(now, tz_name).isoformat(),
        start_of_trading_day_utc=start_of_trading_day(now, tz_name).isoformat(),
        cache_ttl_seconds=ttl,
    )

@router.get(
    '/portfolios/{portfolio_id}/snapshot',
    response_model=SnapshotResponse,
    summary="Portfolio snapshot",
    description=(
        "Returns the precomputed valuation for a portfolio. "
        "Never triggers a refresh; is_stale tells the caller whether one is due."
    ),
    tags=["Snapshots"],
)
async def portfolio_snapshot(portfolio_id: str, request: Request, response: Response):
    runtime = _runtime(request)
    pid = portfolio_id.strip().lower()
    try:
        meta = await runtime.cache.get_meta(pid)
    except CacheTierUnavailable:
        # visibility is unknown, so no snapshot data goes out
        return SnapshotResponse(
            portfolio_id=pid,
            message='Snapshot temporarily unavailable. Please try again shortly.',
        )
    if meta is None:
        raise HTTPException(404, 'portfolio not found')
    now = now_utc()
    view = await runtime.cache.read(pid, now)
    base = dict(
        portfolio_id=pid,
        display_name=meta.display_name,
        visibility=meta.visibility,
        is_private=meta.visibility == 'private' or meta.is_private,
    )
    snap = view.snapshot
    if snap is None:
        return SnapshotResponse(
            **base,
            message='Snapshot not yet available. Please wait for the next refresh cycle.',
        )

    benchmark = None
    bench_ticker = runtime.builder.benchmark_ticker
    prices = await runtime.cache.get_prices([bench_ticker])
    if bench_ticker in prices:
        benchmark = BenchmarkQuote(ticker=bench_ticker, day_change_percent=prices[bench_ticker].change_percent)

    ttl = int(cache_ttl(now, runtime.settings.exchange_tz).total_seconds())
    response.headers['Cache-Control'] = f'public, max-age=30, s-maxage={ttl}'
    return SnapshotResponse(
        **base,
        total_value=snap.total_value,
        day_change=snap.day_change,
        day_change_percent=snap.day_change_percent,
        total_gain=snap.total_gain,
        total_gain_percent=snap.total_gain_percent,
        holdings=list(snap.holdings),
        intraday_1d=list(view.intraday_1d),
        daily_30d=list(view.daily_30d),
        benchmark_30d=list(view.benchmark_30d),
        benchmark=benchmark,
        market_status=snap.market_phase,
        last_updated=snap.updated_at.isoformat(),
        is_stale=view.is_stale,
        age_seconds=view.age_seconds,
        last_error=snap.last_error,
    )

@router.post(
    '/refresh',
    response_model=RefreshRun,
    status_code=202,
    summary="Trigger refresh",
    description="Starts a refresh of every portfolio snapshot in the background and returns the run_id.",
    tags=["Refresh"],
)
def refresh(request: Request, background: BackgroundTasks):
    state = request.app.state
    min_interval = _runtime(request).settings.refresh_min_interval_seconds
    now = time.monotonic()
    last = getattr(state, 'last_refresh_at', None)
    if last is not None and now - last < min_interval:
        wait = int(min_interval - (now - last)) + 1
        raise HTTPException(429, f'Rate limit exceeded. Please wait {wait} seconds before refreshing again')
    state.last_refresh_at = now
    run_id = trigger_refresh(background, _runtime(request))
    log.info("refresh_triggered", run_id=run_id)
    return RefreshRun(run_id=run_id)

@router.post(
    '/portfolios/{portfolio_id}/refresh',
    response_model=PortfolioRefreshResponse,
    summary="Refresh one portfolio",
    description="Rebuilds a single portfolio snapshot synchronously, e.g. after its holdings were edited.",
    tags=["Refresh"],
)
async def refresh_portfolio(portfolio_id: str, request: Request):
    runtime = _runtime(request)
    pid = portfolio_id.strip().lower()
    try:
        meta = await runtime.cache.get_meta(pid)
    except CacheTierUnavailable as e:
        raise HTTPException(503, f'db_error: {e}')
    if meta is None:
        raise HTTPException(404, 'portfolio not found')
    try:
        snap = await runtime.builder.refresh_portfolio(pid)
    except (CacheTierUnavailable, PricesUnavailable) as e:
        log.error("portfolio_refresh_failed", portfolio_id=pid, err=str(e))
        await runtime.cache.record_error(pid, f"{type(e).__name__}: {e}", now_utc())
        raise HTTPException(503, f'snapshot not refreshed: {e}')
    return PortfolioRefreshResponse(
        portfolio_id=snap.portfolio_id,
        total_value=snap.total_value,
        market_status=snap.market_phase,
        updated_at=snap.updated_at.isoformat(),
    )
