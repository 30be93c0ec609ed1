from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Mapping

import pandas as pd
import structlog

from ..errors import CacheTierUnavailable, PricesUnavailable
from ..models import (
    BenchmarkPoint,
    Granularity,
    Holding,
    HoldingValuation,
    PortfolioSnapshot,
    PriceRecord,
    SeriesPoint,
    percent_change,
)
from ..session import MarketPhase, phase, start_of_trading_day
from ..utils import ensure_utc, now_utc, truncate_to_minute

log = structlog.get_logger()

ZERO = Decimal("0")
_ALLOC_QUANT = Decimal("0.0001")


def value_holdings(holdings: Iterable[Holding], quotes: Mapping) -> dict:
    """Value each holding against ``quotes`` (anything with current_price/previous_close).

    Static holdings are carried at static_value with no day change. Holdings
    without a quote are left out.
    """
    rows: list[dict] = []
    total_value = ZERO
    day_change = ZERO
    cost_total = ZERO
    value_with_cost = ZERO
    for h in holdings:
        if h.is_static:
            value = h.static_value or ZERO
            current = previous = value
        else:
            quote = quotes.get(h.ticker)
            if quote is None:
                log.warning("holding_price_missing", ticker=h.ticker)
                continue
            current, previous = quote.current_price, quote.previous_close
            value = h.shares * current
        prev_value = value if h.is_static else h.shares * previous
        change = value - prev_value
        profit = None
        profit_pct = None
        if h.cost_basis is not None:
            profit = value - h.cost_basis
            profit_pct = percent_change(value, h.cost_basis) if h.cost_basis > 0 else None
            cost_total += h.cost_basis
            value_with_cost += value
        rows.append(
            dict(
                ticker=h.ticker,
                name=h.name or h.ticker,
                shares=h.shares,
                current_price=current,
                previous_close=previous,
                value=value,
                day_change=change,
                day_change_percent=percent_change(value, prev_value),
                is_static=h.is_static,
                instrument_kind=h.instrument_kind,
                cost_basis=h.cost_basis,
                profit_loss=profit,
                profit_loss_percent=profit_pct,
            )
        )
        total_value += value
        day_change += change

    valuations = [
        HoldingValuation(
            allocation=(r["value"] / total_value * 100).quantize(_ALLOC_QUANT) if total_value > 0 else ZERO,
            **r,
        )
        for r in rows
    ]
    valuations.sort(key=lambda v: v.value, reverse=True)
    has_cost = cost_total > 0
    return {
        "holdings": tuple(valuations),
        "total_value": total_value,
        "day_change": day_change,
        "day_change_percent": percent_change(total_value, total_value - day_change),
        "total_gain": value_with_cost - cost_total if has_cost else None,
        "total_gain_percent": percent_change(value_with_cost, cost_total) if has_cost else None,
    }


def _aligned_closes(closes: Mapping[str, Mapping[str, Decimal]]) -> pd.DataFrame:
    """Date-indexed frame, one column per ticker, gaps carried forward."""
    series = {t: pd.Series(dict(v), dtype=object) for t, v in closes.items() if v}
    if not series:
        return pd.DataFrame()
    return pd.DataFrame(series).sort_index().ffill()


def daily_series(holdings: Iterable[Holding], closes: Mapping[str, Mapping[str, Decimal]],
                 window: int = 30) -> list[SeriesPoint]:
    holdings = list(holdings)
    static_total = sum((h.static_value or ZERO for h in holdings if h.is_static), ZERO)
    tradeable = [h for h in holdings if not h.is_static]
    frame = _aligned_closes({h.ticker: closes.get(h.ticker) or {} for h in tradeable})
    if frame.empty:
        return []
    out = []
    for day, row in frame.iterrows():
        total = static_total
        for h in tradeable:
            price = row.get(h.ticker)
            if price is not None and not pd.isna(price):
                total += h.shares * price
        if total > 0:
            out.append(SeriesPoint(date=str(day), value=total))
    return out[-window:]


def benchmark_series(closes: Mapping[str, Decimal] | None, window: int = 30) -> list[BenchmarkPoint]:
    ordered = sorted((closes or {}).items())[-window:]
    if not ordered:
        return []
    start = ordered[0][1]
    return [BenchmarkPoint(date=day, percent_change=percent_change(close, start)) for day, close in ordered]


def merge_by_date(prior: Iterable[SeriesPoint], fresh: Iterable[SeriesPoint], window: int) -> tuple[SeriesPoint, ...]:
    merged = {p.date: p for p in prior}
    merged.update({p.date: p for p in fresh})
    return tuple(merged[d] for d in sorted(merged)[-window:])


def intraday_series(prior: Iterable[SeriesPoint], total_value: Decimal, now: datetime,
                    tz_name: str | None = None, add_point: bool = True) -> tuple[SeriesPoint, ...]:
    """Today's prior points plus, while the market is open, one point for this minute.

    ``add_point=False`` only carries today's points forward; used when the
    total is known to be incomplete.
    """
    day_start = start_of_trading_day(now, tz_name)
    points = {}
    for p in prior:
        try:
            stamp = ensure_utc(datetime.fromisoformat(p.date))
        except ValueError:
            continue
        if stamp >= day_start:
            points[stamp] = p.value
    if add_point and phase(now, tz_name) is MarketPhase.OPEN:
        points[truncate_to_minute(now)] = total_value
    return tuple(SeriesPoint(date=ts.isoformat(), value=points[ts]) for ts in sorted(points))


class SnapshotBuilder:
    """Turns holdings, quotes and daily closes into a PortfolioSnapshot and stores it."""

    def __init__(self, fetcher, cache, store, benchmark_ticker: str = "SPY", lookback_days: int = 35,
                 window_days: int = 30, tz_name: str | None = None):
        self.fetcher = fetcher
        self.cache = cache
        self.store = store
        self.benchmark_ticker = benchmark_ticker.upper()
        self.lookback_days = int(lookback_days)
        self.window_days = int(window_days)
        self.tz_name = tz_name

    @classmethod
    def from_settings(cls, fetcher, cache, store, cfg) -> "SnapshotBuilder":
        return cls(
            fetcher,
            cache,
            store,
            benchmark_ticker=cfg.benchmark_ticker,
            lookback_days=cfg.history_lookback_days,
            window_days=cfg.history_window_days,
            tz_name=cfg.exchange_tz,
        )

    def build(
        self,
        portfolio_id: str,
        holdings: list[Holding],
        quotes: Mapping,
        daily_closes: Mapping[str, Mapping[str, Decimal]],
        prior: PortfolioSnapshot | None,
        now: datetime,
    ) -> PortfolioSnapshot:
        """Pure valuation. Raises PricesUnavailable rather than drop a holding the prior snapshot priced.

        Holdings that were never priced are left out; the snapshot then
        carries ``last_error`` and gets no intraday point.
        """
        now = ensure_utc(now)
        unpriced = sorted({h.ticker for h in holdings if not h.is_static and h.ticker not in quotes})
        if unpriced and prior is not None:
            lost = {h.ticker for h in prior.holdings} & set(unpriced)
            if lost:
                raise PricesUnavailable(lost, portfolio_id)
        valued = value_holdings(holdings, quotes)
        fresh_daily = daily_series(holdings, daily_closes, self.window_days)
        return PortfolioSnapshot(
            portfolio_id=portfolio_id,
            **valued,
            intraday_1d=intraday_series(prior.intraday_1d if prior else (), valued["total_value"], now,
                                        self.tz_name, add_point=not unpriced),
            daily_30d=merge_by_date(prior.daily_30d if prior else (), fresh_daily, self.window_days),
            benchmark_30d=tuple(benchmark_series(daily_closes.get(self.benchmark_ticker), self.window_days)),
            market_phase=phase(now, self.tz_name).value,
            updated_at=now,
            last_error=f"no price for {', '.join(unpriced)}" if unpriced else None,
            last_error_at=now if unpriced else None,
        )

    async def load_daily_closes(self, tickers: Iterable[str], now: datetime) -> dict[str, dict[str, Decimal]]:
        """Stored closes for the lookback window; tickers with nothing newer than yesterday are refetched."""
        now = ensure_utc(now)
        tickers = sorted({t.upper() for t in tickers})
        since = (now - timedelta(days=self.lookback_days)).date()
        yesterday = (now - timedelta(days=1)).date().isoformat()
        try:
            closes = await self.store.get_daily_prices(tickers, since)
        except CacheTierUnavailable as exc:
            log.error("daily_prices_read_failed", err=str(exc))
            closes = {}
        stale = [t for t in tickers if not closes.get(t) or max(closes[t]) < yesterday]
        if not stale:
            return closes
        start = now - timedelta(days=self.lookback_days)
        fetched = await self.fetcher.get_histories(stale, start, now, Granularity.DAILY)
        rows = []
        for ticker, points in fetched.items():
            bucket = closes.setdefault(ticker, {})
            for p in points:
                day = ensure_utc(p.timestamp).date().isoformat()
                if bucket.get(day) != p.close:
                    rows.append((ticker, day, p.close))
                bucket[day] = p.close
        try:
            await self.store.upsert_daily_prices(rows)
        except CacheTierUnavailable as exc:
            log.warning("daily_prices_write_failed", rows=len(rows), err=str(exc))
        log.info("daily_closes_refreshed", stale=len(stale), fetched=len(fetched), rows=len(rows))
        return closes

    async def store_quotes(self, quotes: Mapping, now: datetime) -> int:
        records = [PriceRecord.from_quote(t, q, ensure_utc(now)) for t, q in quotes.items()]
        try:
            return await self.cache.put_prices(records)
        except CacheTierUnavailable as exc:
            log.warning("price_cache_write_failed", tickers=len(records), err=str(exc))
            return 0

    async def fill_from_price_cache(self, tickers: Iterable[str], quotes: Mapping) -> dict:
        """``quotes`` plus the last cached price for any ticker that got no fresh quote."""
        missing = sorted({t.upper() for t in tickers} - set(quotes))
        cached = await self.cache.get_prices(missing) if missing else {}
        if cached:
            log.warning("quotes_from_price_cache", tickers=sorted(cached),
                        oldest=min(r.updated_at for r in cached.values()).isoformat())
        return {**cached, **quotes}

    async def resolve_quotes(self, tickers: Iterable[str], now: datetime) -> dict:
        """Fresh quotes for ``tickers``, persisted, with cached prices standing in for any that failed.

        Raises PricesUnavailable when no provider answered for any ticker.
        """
        tickers = sorted({t.upper() for t in tickers})
        quotes = await self.fetcher.get_quotes(tickers)
        if tickers and not quotes:
            raise PricesUnavailable(tickers)
        await self.store_quotes(quotes, now)
        return await self.fill_from_price_cache(tickers, quotes)

    async def refresh_portfolio(self, portfolio_id: str, now: datetime | None = None) -> PortfolioSnapshot:
        """Rebuild one portfolio end to end, e.g. right after its holdings changed."""
        now = ensure_utc(now or now_utc())
        pid = portfolio_id.strip().lower()
        holdings = await self.store.get_holdings(pid)
        tickers = sorted({h.ticker for h in holdings if not h.is_static} | {self.benchmark_ticker})
        quotes = await self.resolve_quotes(tickers, now)
        closes = await self.load_daily_closes(tickers, now)
        prior = await self.cache.get(pid)
        snapshot = self.build(pid, holdings, quotes, closes, prior, now)
        await self.cache.put(pid, snapshot)
        log.info("portfolio_refreshed", portfolio_id=pid, holdings=len(snapshot.holdings),
                 total_value=str(snapshot.total_value), market_phase=snapshot.market_phase)
        return snapshot
