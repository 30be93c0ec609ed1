"""Failure taxonomy shared by providers, the fetcher and the cache tiers."""


class MarketSnapError(Exception):
    pass


class ProviderError(MarketSnapError):
    def __init__(self, provider: str, symbol: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider}:{symbol}: {message}")
        self.provider = provider
        self.symbol = symbol
        self.status_code = status_code


class RetryableProviderError(ProviderError):
    """429, 5xx, timeouts and connection failures. Worth another attempt."""


class TerminalProviderError(ProviderError):
    """Any 4xx other than 429 and unusable payloads. Never retried."""


class MalformedResponse(TerminalProviderError):
    pass


class ProviderUnavailable(MarketSnapError):
    def __init__(self, provider: str, symbol: str, attempts: int, last_error: Exception | None = None):
        super().__init__(f"{provider}:{symbol}: unavailable after {attempts} attempts")
        self.provider = provider
        self.symbol = symbol
        self.attempts = attempts
        self.last_error = last_error


class SymbolNotFound(MarketSnapError):
    def __init__(self, symbol: str):
        super().__init__(f"no provider has data for {symbol}")
        self.symbol = symbol


class CacheTierUnavailable(MarketSnapError):
    def __init__(self, tier: str, operation: str, cause: Exception | None = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{tier} tier {operation} failed{detail}")
        self.tier = tier
        self.operation = operation


class PricesUnavailable(MarketSnapError):
    """No usable price for holdings a snapshot depends on. The prior snapshot stays."""

    def __init__(self, tickers, portfolio_id: str | None = None):
        tickers = sorted(tickers)
        scope = f"{portfolio_id}: " if portfolio_id else ""
        super().__init__(f"{scope}no price for {', '.join(tickers)}")
        self.tickers = tickers
        self.portfolio_id = portfolio_id
