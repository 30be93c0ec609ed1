from __future__ import annotations

from datetime import datetime

from ..errors import MalformedResponse
from ..models import NOT_FOUND, Granularity, InstrumentKind, Quote, SymbolInfo
from ..utils import ensure_utc, to_decimal
from .common import BROWSER_HEADERS, HttpProvider, epoch_to_utc, normalize_history, require_decimal

_KIND_BY_TYPE = {
    "EQUITY": InstrumentKind.COMMON_STOCK,
    "ETF": InstrumentKind.ETF,
    "MUTUALFUND": InstrumentKind.MUTUAL_FUND,
    "CRYPTOCURRENCY": InstrumentKind.CRYPTO,
    "MONEYMARKET": InstrumentKind.MONEY_MARKET,
}


def map_instrument_type(instrument_type: str | None, name: str) -> InstrumentKind:
    # sweep/cash funds often report as MUTUALFUND
    if instrument_type == "MONEYMARKET" or name.lower().startswith("cash"):
        return InstrumentKind.MONEY_MARKET
    return _KIND_BY_TYPE.get(instrument_type or "", InstrumentKind.OTHER)


class YahooChartAdapter(HttpProvider):
    """Yahoo Finance v8 chart endpoint. No API key."""

    name = "yahoo"

    def __init__(self, base_url: str = "https://query1.finance.yahoo.com", timeout: float = 10.0, client=None):
        super().__init__(base_url, timeout=timeout, client=client, headers=BROWSER_HEADERS)

    def _chart_url(self, symbol: str) -> str:
        return f"{self.base_url}/v8/finance/chart/{symbol}"

    async def _chart(self, symbol: str, params: dict):
        payload = await self.get_json(symbol, self._chart_url(symbol), params=params)
        if payload is NOT_FOUND:
            return NOT_FOUND
        if not isinstance(payload, dict) or "chart" not in payload:
            raise MalformedResponse(self.name, symbol, "missing chart")
        results = (payload.get("chart") or {}).get("result") or []
        if not results:
            return NOT_FOUND
        return results[0]

    async def fetch_quote(self, symbol: str):
        result = await self._chart(symbol, {"interval": "1d", "range": "1d"})
        if result is NOT_FOUND:
            return NOT_FOUND
        meta = result.get("meta") or {}
        current = require_decimal(self.name, symbol, meta, "regularMarketPrice")
        previous = to_decimal(meta.get("chartPreviousClose"))
        return Quote(current_price=current, previous_close=previous if previous is not None else current)

    async def fetch_symbol_info(self, symbol: str):
        result = await self._chart(symbol, {"interval": "1d", "range": "1d"})
        if result is NOT_FOUND:
            return NOT_FOUND
        meta = result.get("meta")
        if not meta:
            return NOT_FOUND
        name = meta.get("longName") or meta.get("shortName") or symbol
        return SymbolInfo(display_name=name, instrument_kind=map_instrument_type(meta.get("instrumentType"), name))

    async def fetch_history(self, symbol: str, start: datetime, end: datetime, granularity: Granularity):
        params = {
            "period1": int(ensure_utc(start).timestamp()),
            "period2": int(ensure_utc(end).timestamp()),
            "interval": "1m" if granularity is Granularity.INTRADAY else "1d",
        }
        result = await self._chart(symbol, params)
        if result is NOT_FOUND:
            return NOT_FOUND
        timestamps = result.get("timestamp")
        quotes = ((result.get("indicators") or {}).get("quote") or [{}])
        closes = (quotes[0] or {}).get("close") if quotes else None
        if not timestamps or not closes:
            return NOT_FOUND
        if len(timestamps) != len(closes):
            raise MalformedResponse(self.name, symbol, "timestamp/close length mismatch")
        rows = []
        for ts, close in zip(timestamps, closes):
            at = epoch_to_utc(ts)
            if granularity is Granularity.DAILY:
                at = at.replace(hour=0, minute=0, second=0, microsecond=0)
            rows.append((at, close))
        return normalize_history(rows)
