from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

import structlog

from ..errors import ProviderUnavailable, SymbolNotFound, TerminalProviderError
from ..models import NOT_FOUND, Granularity, HistoricalPoint, Quote, SymbolInfo
from ..providers.common import QuoteProvider
from ..utils import RetryPolicy, RetryState, retry_async

log = structlog.get_logger()


def _unique_symbols(symbols: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for symbol in symbols:
        value = str(symbol or "").strip().upper()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


class QuoteFetcher:
    """Ordered provider fallback with per-provider retries. Holds no cache.

    For each request the providers are tried in order. A provider that
    answers NOT_FOUND, fails terminally, or exhausts its retries hands over
    to the next one; the first real answer wins.
    """

    def __init__(
        self,
        providers: list[QuoteProvider],
        retry_policy: RetryPolicy | None = None,
        max_concurrency: int = 16,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.providers = list(providers)
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrency = max(1, int(max_concurrency))
        self._sleep = sleep

    async def _first_answer(self, key: str, call: Callable[[Any], Awaitable[Any]]):
        """Walk the providers for ``key``. Raises SymbolNotFound when none answers."""
        for provider in self.providers:
            outcome = await retry_async(lambda: call(provider), self.retry_policy, sleep=self._sleep)
            if outcome.state is RetryState.SUCCEEDED:
                if outcome.result is NOT_FOUND:
                    log.debug("provider_not_found", provider=provider.name, key=key)
                    continue
                log.debug("provider_answered", provider=provider.name, key=key, attempts=outcome.attempts)
                return outcome.result
            if outcome.state is RetryState.EXHAUSTED:
                err = ProviderUnavailable(provider.name, key, outcome.attempts, outcome.error)
                log.warning("provider_unavailable", provider=provider.name, key=key,
                            attempts=outcome.attempts, delays=outcome.delays, err=str(err.last_error))
                continue
            if isinstance(outcome.error, TerminalProviderError):
                log.warning("provider_terminal_error", provider=provider.name, key=key, err=str(outcome.error))
            else:
                log.error("provider_unexpected_error", provider=provider.name, key=key,
                          err=repr(outcome.error))
        raise SymbolNotFound(key)

    async def get_quote(self, symbol: str) -> Quote | None:
        symbol = symbol.strip().upper()
        try:
            return await self._first_answer(symbol, lambda p: p.fetch_quote(symbol))
        except SymbolNotFound:
            log.info("quote_unresolved", symbol=symbol, providers=len(self.providers))
            return None

    async def get_symbol_info(self, symbol: str) -> SymbolInfo | None:
        symbol = symbol.strip().upper()
        try:
            return await self._first_answer(f"info:{symbol}", lambda p: p.fetch_symbol_info(symbol))
        except SymbolNotFound:
            return None

    async def get_history(
        self, symbol: str, start: datetime, end: datetime, granularity: Granularity = Granularity.DAILY
    ) -> tuple[HistoricalPoint, ...]:
        symbol = symbol.strip().upper()
        key = f"history:{granularity.value}:{symbol}"
        try:
            return tuple(await self._first_answer(key, lambda p: p.fetch_history(symbol, start, end, granularity)))
        except SymbolNotFound:
            log.info("history_unresolved", symbol=symbol, granularity=granularity.value)
            return ()

    async def _fan_out(self, symbols: list[str], fn) -> dict[str, Any]:
        gate = asyncio.Semaphore(self.max_concurrency)

        async def _one(sym: str):
            async with gate:
                return await fn(sym)

        results = await asyncio.gather(*(_one(s) for s in symbols), return_exceptions=True)
        out: dict[str, Any] = {}
        for sym, res in zip(symbols, results):
            if isinstance(res, BaseException):
                log.error("batch_item_failed", symbol=sym, err=repr(res))
                continue
            if res:
                out[sym] = res
        return out

    async def get_quotes(self, symbols: Iterable[str]) -> dict[str, Quote]:
        unique = _unique_symbols(symbols)
        if not unique:
            return {}
        quotes = await self._fan_out(unique, self.get_quote)
        log.info("batch_quotes_resolved", target_count=len(unique), resolved_count=len(quotes),
                 missing=[s for s in unique if s not in quotes])
        return quotes

    async def get_histories(
        self, symbols: Iterable[str], start: datetime, end: datetime, granularity: Granularity = Granularity.DAILY
    ) -> dict[str, tuple[HistoricalPoint, ...]]:
        unique = _unique_symbols(symbols)
        if not unique:
            return {}
        return await self._fan_out(unique, lambda s: self.get_history(s, start, end, granularity))
