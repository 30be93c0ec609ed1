from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

import httpx

from ..errors import MalformedResponse, RetryableProviderError, TerminalProviderError
from ..models import NOT_FOUND, Granularity, HistoricalPoint, Quote, SymbolInfo
from ..utils import ensure_utc, to_decimal

BROWSER_HEADERS = {"User-Agent": "Mozilla/5.0"}


class QuoteProvider(Protocol):
    name: str

    async def fetch_quote(self, symbol: str) -> Quote | Any: ...

    async def fetch_symbol_info(self, symbol: str) -> SymbolInfo | Any: ...

    async def fetch_history(
        self, symbol: str, start: datetime, end: datetime, granularity: Granularity
    ) -> tuple[HistoricalPoint, ...] | Any: ...


class HttpProvider:
    """Shared HTTP plumbing: one GET, failures sorted into retryable/terminal."""

    name = "http"

    def __init__(self, base_url: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None,
                 headers: dict[str, str] | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._client = client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _client_or_new(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=self.headers)
        return self._client

    async def get_json(self, symbol: str, url: str, params: dict | None = None):
        """GET ``url`` and decode JSON. Returns NOT_FOUND on 404."""
        client = self._client_or_new()
        try:
            resp = await client.get(url, params=params, timeout=self.timeout, headers=self.headers)
        except httpx.TimeoutException as exc:
            raise RetryableProviderError(self.name, symbol, f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise RetryableProviderError(self.name, symbol, f"transport: {exc}") from exc
        classify_status(self.name, symbol, resp.status_code)
        if resp.status_code == 404:
            return NOT_FOUND
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedResponse(self.name, symbol, "body is not JSON", resp.status_code) from exc


def classify_status(provider: str, symbol: str, status_code: int) -> None:
    if status_code == 429 or status_code >= 500:
        raise RetryableProviderError(provider, symbol, f"status_{status_code}", status_code)
    if status_code == 404:
        return
    if status_code >= 400:
        raise TerminalProviderError(provider, symbol, f"status_{status_code}", status_code)


def require_decimal(provider: str, symbol: str, payload: dict, key: str):
    value = to_decimal(payload.get(key))
    if value is None:
        raise MalformedResponse(provider, symbol, f"missing field {key}")
    return value


def epoch_to_utc(ts: int | float) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def parse_vendor_datetime(text: str, tzinfo=None) -> datetime:
    """``2024-01-02`` or ``2024-01-02 15:59:00``; naive values get ``tzinfo`` (UTC by default)."""
    value = datetime.fromisoformat(str(text).strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=tzinfo or timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_history(rows: Iterable[tuple[datetime, Any]], start: datetime | None = None,
                      end: datetime | None = None) -> tuple[HistoricalPoint, ...]:
    """Drop null closes and out-of-window points, sort ascending."""
    lo = ensure_utc(start) if start else None
    hi = ensure_utc(end) if end else None
    points = []
    for ts, close in rows:
        price = to_decimal(close)
        if price is None:
            continue
        ts = ensure_utc(ts)
        if lo is not None and ts < lo:
            continue
        if hi is not None and ts > hi:
            continue
        points.append(HistoricalPoint(timestamp=ts, close=price))
    points.sort(key=lambda p: p.timestamp)
    return tuple(points)
