from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

_PCT_QUANT = Decimal("0.000001")


def percent_change(current: Decimal, previous: Decimal) -> Decimal:
    if previous is None or previous <= 0:
        return Decimal("0")
    return ((current - previous) / previous * 100).quantize(_PCT_QUANT)


class InstrumentKind(str, Enum):
    COMMON_STOCK = "Common Stock"
    ETF = "ETF"
    MUTUAL_FUND = "Mutual Fund"
    CRYPTO = "Crypto"
    MONEY_MARKET = "Money Market"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: str | None) -> "InstrumentKind":
        for kind in cls:
            if kind.value == value:
                return kind
        return cls.OTHER


class Granularity(str, Enum):
    DAILY = "daily"
    INTRADAY = "intraday"


class _NotFound:
    """Explicit 'provider has no data for this symbol' marker."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "NOT_FOUND"


NOT_FOUND = _NotFound()


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_price: Decimal
    previous_close: Decimal

    @computed_field
    @property
    def change_percent(self) -> Decimal:
        return percent_change(self.current_price, self.previous_close)


class SymbolInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    display_name: str
    instrument_kind: InstrumentKind = InstrumentKind.OTHER


class HistoricalPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    close: Decimal


class Holding(BaseModel):
    ticker: str
    name: str = ""
    shares: Decimal = Decimal("0")
    is_static: bool = False
    static_value: Optional[Decimal] = None
    cost_basis: Optional[Decimal] = None
    instrument_kind: InstrumentKind = InstrumentKind.OTHER

    @field_validator("ticker")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()


class HoldingValuation(BaseModel):
    model_config = ConfigDict(frozen=True)

    ticker: str
    name: str
    shares: Decimal
    current_price: Decimal
    previous_close: Decimal
    value: Decimal
    allocation: Decimal
    day_change: Decimal
    day_change_percent: Decimal
    is_static: bool
    instrument_kind: InstrumentKind
    cost_basis: Optional[Decimal] = None
    profit_loss: Optional[Decimal] = None
    profit_loss_percent: Optional[Decimal] = None


class SeriesPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: str
    value: Decimal


class BenchmarkPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: str
    percent_change: Decimal


class PortfolioSnapshot(BaseModel):
    """Precomputed valuation for one portfolio. Replaced wholesale on refresh."""

    model_config = ConfigDict(frozen=True)

    portfolio_id: str
    total_value: Decimal
    day_change: Decimal = Decimal("0")
    day_change_percent: Decimal = Decimal("0")
    total_gain: Optional[Decimal] = None
    total_gain_percent: Optional[Decimal] = None
    holdings: tuple[HoldingValuation, ...] = ()
    intraday_1d: tuple[SeriesPoint, ...] = ()
    daily_30d: tuple[SeriesPoint, ...] = ()
    benchmark_30d: tuple[BenchmarkPoint, ...] = ()
    market_phase: str = "closed"
    updated_at: datetime
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @field_validator("portfolio_id")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()


class CachedPortfolioMeta(BaseModel):
    # extra="forbid" keeps password hashes and similar columns out of the cache
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    display_name: Optional[str] = None
    created_at: datetime
    is_private: bool = False
    visibility: Literal["public", "private", "selective"] = "public"

    @field_validator("id")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()

    @classmethod
    def from_record(cls, record: dict) -> "CachedPortfolioMeta":
        fields = cls.model_fields.keys()
        return cls(**{k: v for k, v in record.items() if k in fields})


class PriceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    ticker: str
    current_price: Decimal
    previous_close: Decimal
    change_percent: Decimal
    updated_at: datetime

    @classmethod
    def from_quote(cls, ticker: str, quote: Quote, updated_at: datetime) -> "PriceRecord":
        return cls(
            ticker=ticker,
            current_price=quote.current_price,
            previous_close=quote.previous_close,
            change_percent=quote.change_percent,
            updated_at=updated_at,
        )


class SnapshotView(BaseModel):
    snapshot: Optional[PortfolioSnapshot] = None
    is_stale: bool = True
    age_seconds: Optional[float] = None

    @property
    def intraday_1d(self) -> tuple[SeriesPoint, ...]:
        return self.snapshot.intraday_1d if self.snapshot else ()

    @property
    def daily_30d(self) -> tuple[SeriesPoint, ...]:
        return self.snapshot.daily_30d if self.snapshot else ()

    @property
    def benchmark_30d(self) -> tuple[BenchmarkPoint, ...]:
        return self.snapshot.benchmark_30d if self.snapshot else ()


class RefreshSummary(BaseModel):
    run_id: str
    status: Literal["succeeded", "skipped", "failed"] = "succeeded"
    portfolios_refreshed: int = 0
    portfolios_failed: list[str] = Field(default_factory=list)
    tickers_requested: int = 0
    tickers_quoted: int = 0
    elapsed_sec: float = 0.0
