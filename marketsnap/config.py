from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

# Load .env from repo root for local development and scripts.
ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=ENV_PATH)

class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, populate_by_name=True)
    db_path: str = Field(default="./data/marketsnap.db", alias="DB_PATH")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    fast_tier_enabled: int = Field(default=1, alias="FAST_TIER_ENABLED")
    provider_order: str = Field(default="yahoo,fmp,cnbc", alias="PROVIDER_ORDER")
    yahoo_enable: int = Field(default=1, alias="YAHOO_ENABLE")
    yahoo_base_url: str = Field(default="https://query1.finance.yahoo.com", alias="YAHOO_BASE_URL")
    fmp_api_key: str | None = Field(default=None, alias="FMP_API_KEY")
    fmp_base_url: str = Field(default="https://financialmodelingprep.com/stable", alias="FMP_BASE_URL")
    cnbc_enable: int = Field(default=1, alias="CNBC_ENABLE")
    cnbc_base_url: str = Field(
        default="https://quote.cnbc.com/quote-html-webservice/restQuote/symbolType/symbol",
        alias="CNBC_BASE_URL",
    )
    exchange_tz: str = Field(default="America/New_York", alias="EXCHANGE_TZ")
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")
    http_retry_attempts: int = Field(default=3, alias="HTTP_RETRY_ATTEMPTS")
    http_retry_backoff_seconds: float = Field(default=1.0, alias="HTTP_RETRY_BACKOFF_SECONDS")
    http_retry_max_delay_seconds: float = Field(default=8.0, alias="HTTP_RETRY_MAX_DELAY_SECONDS")
    fetch_max_concurrency: int = Field(default=16, alias="FETCH_MAX_CONCURRENCY")
    snapshot_stale_minutes: float = Field(default=10.0, alias="SNAPSHOT_STALE_MINUTES")
    benchmark_ticker: str = Field(default="SPY", alias="BENCHMARK_TICKER")
    history_lookback_days: int = Field(default=35, alias="HISTORY_LOOKBACK_DAYS")
    history_window_days: int = Field(default=30, alias="HISTORY_WINDOW_DAYS")
    refresh_min_interval_seconds: int = Field(default=45, alias="REFRESH_MIN_INTERVAL_SECONDS")
    refresh_lock_ttl_seconds: int = Field(default=900, alias="REFRESH_LOCK_TTL_SECONDS")

    @property
    def stale_after_seconds(self) -> float:
        return float(self.snapshot_stale_minutes) * 60.0

    @property
    def providers(self) -> list[str]:
        return [p.strip().lower() for p in self.provider_order.split(",") if p.strip()]

settings = Settings()
