from __future__ import annotations

from decimal import Decimal

from ..errors import MalformedResponse
from ..models import NOT_FOUND, Quote
from ..utils import to_decimal
from .common import BROWSER_HEADERS, HttpProvider


def _parse_formatted(value) -> Decimal | None:
    if value is None:
        return None
    text = str(value).strip()
    if text.upper() == "UNCH":
        return Decimal("0")
    return to_decimal(text)


class CnbcAdapter(HttpProvider):
    """CNBC quote service. Covers mutual funds the chart APIs price late; no history."""

    name = "cnbc"

    def __init__(self, base_url: str, timeout: float = 10.0, client=None):
        super().__init__(base_url, timeout=timeout, client=client, headers=BROWSER_HEADERS)

    async def fetch_quote(self, symbol: str):
        payload = await self.get_json(
            symbol,
            self.base_url,
            params={"symbols": symbol, "requestMethod": "itv", "noform": 1, "output": "json"},
        )
        if payload is NOT_FOUND:
            return NOT_FOUND
        if not isinstance(payload, dict):
            raise MalformedResponse(self.name, symbol, "expected object")
        rows = (payload.get("FormattedQuoteResult") or {}).get("FormattedQuote") or []
        if not rows or not rows[0].get("last"):
            return NOT_FOUND
        row = rows[0]
        price = _parse_formatted(row.get("last"))
        change = _parse_formatted(row.get("change"))
        if price is None or change is None:
            raise MalformedResponse(self.name, symbol, "unparseable last/change")
        return Quote(current_price=price, previous_close=price - change)

    async def fetch_symbol_info(self, symbol: str):
        return NOT_FOUND

    async def fetch_history(self, symbol, start, end, granularity):
        return NOT_FOUND
