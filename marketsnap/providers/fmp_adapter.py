from __future__ import annotations

from datetime import datetime

from dateutil import tz

from ..errors import MalformedResponse
from ..models import NOT_FOUND, Granularity, InstrumentKind, Quote, SymbolInfo
from ..utils import ensure_utc
from .common import HttpProvider, normalize_history, parse_vendor_datetime, require_decimal

# FMP intraday bars are stamped in exchange time without an offset
_FMP_INTRADAY_TZ = tz.gettz("America/New_York")


def infer_instrument_kind(exchange: str | None, industry: str | None) -> InstrumentKind:
    if industry == "Asset Management":
        if exchange == "AMEX":
            return InstrumentKind.ETF
        if exchange == "NASDAQ":
            return InstrumentKind.MUTUAL_FUND
    return InstrumentKind.COMMON_STOCK


class FmpAdapter(HttpProvider):
    """Financial Modeling Prep stable API."""

    name = "fmp"

    def __init__(self, api_key: str, base_url: str = "https://financialmodelingprep.com/stable",
                 timeout: float = 10.0, client=None):
        super().__init__(base_url, timeout=timeout, client=client)
        self.api_key = api_key

    def _params(self, **extra) -> dict:
        return {**extra, "apikey": self.api_key}

    async def _rows(self, symbol: str, path: str, /, **params):
        payload = await self.get_json(symbol, f"{self.base_url}/{path}", params=self._params(**params))
        if payload is NOT_FOUND:
            return NOT_FOUND
        if isinstance(payload, dict) and payload.get("Error Message"):
            raise MalformedResponse(self.name, symbol, str(payload["Error Message"])[:200])
        if not isinstance(payload, list):
            raise MalformedResponse(self.name, symbol, f"{path} returned {type(payload).__name__}")
        return payload or NOT_FOUND

    async def fetch_quote(self, symbol: str):
        rows = await self._rows(symbol, "quote", symbol=symbol)
        if rows is NOT_FOUND:
            return NOT_FOUND
        row = rows[0]
        if not row.get("price"):
            return NOT_FOUND
        return Quote(
            current_price=require_decimal(self.name, symbol, row, "price"),
            previous_close=require_decimal(self.name, symbol, row, "previousClose"),
        )

    async def fetch_symbol_info(self, symbol: str):
        rows = await self._rows(symbol, "profile", symbol=symbol)
        if rows is NOT_FOUND:
            return NOT_FOUND
        profile = rows[0]
        return SymbolInfo(
            display_name=profile.get("companyName") or symbol,
            instrument_kind=infer_instrument_kind(profile.get("exchange"), profile.get("industry")),
        )

    async def fetch_history(self, symbol: str, start: datetime, end: datetime, granularity: Granularity):
        if granularity is Granularity.INTRADAY:
            rows = await self._rows(symbol, "historical-chart/1min", symbol=symbol)
            if rows is NOT_FOUND:
                return NOT_FOUND
            return normalize_history(
                ((self._stamp(symbol, r, _FMP_INTRADAY_TZ), r.get("close")) for r in rows),
                start=start,
                end=end,
            )
        rows = await self._rows(
            symbol,
            "historical-price-eod/full",
            symbol=symbol,
            **{"from": ensure_utc(start).date().isoformat(), "to": ensure_utc(end).date().isoformat()},
        )
        if rows is NOT_FOUND:
            return NOT_FOUND
        # newest first on the wire
        return normalize_history((self._stamp(symbol, r), r.get("close")) for r in reversed(rows))

    def _stamp(self, symbol: str, row: dict, tzinfo=None) -> datetime:
        if not row.get("date"):
            raise MalformedResponse(self.name, symbol, "history row without date")
        try:
            return parse_vendor_datetime(row["date"], tzinfo)
        except ValueError as exc:
            raise MalformedResponse(self.name, symbol, f"bad date {row['date']!r}") from exc
