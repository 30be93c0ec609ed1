from decimal import Decimal
from pydantic import BaseModel
from typing import Optional, Literal

from ..models import BenchmarkPoint, HoldingValuation, SeriesPoint

class RefreshRun(BaseModel):
    run_id: str

class MarketStatus(BaseModel):
    phase: Literal['open', 'pre-market', 'after-hours', 'closed']
    is_trading_session: bool
    exchange_time: str
    start_of_trading_day_utc: str
    cache_ttl_seconds: int

class BenchmarkQuote(BaseModel):
    ticker: str
    day_change_percent: Decimal

class SnapshotResponse(BaseModel):
    portfolio_id: str
    display_name: Optional[str] = None
    visibility: Literal['public', 'private', 'selective'] = 'public'
    is_private: bool = False
    total_value: Decimal = Decimal("0")
    day_change: Decimal = Decimal("0")
    day_change_percent: Decimal = Decimal("0")
    total_gain: Optional[Decimal] = None
    total_gain_percent: Optional[Decimal] = None
    holdings: list[HoldingValuation] = []
    intraday_1d: list[SeriesPoint] = []
    daily_30d: list[SeriesPoint] = []
    benchmark_30d: list[BenchmarkPoint] = []
    benchmark: Optional[BenchmarkQuote] = None
    market_status: str = 'unknown'
    last_updated: Optional[str] = None
    is_stale: bool = True
    age_seconds: Optional[float] = None
    last_error: Optional[str] = None
    message: Optional[str] = None

class PortfolioRefreshResponse(BaseModel):
    portfolio_id: str
    total_value: Decimal
    market_status: str
    updated_at: str
