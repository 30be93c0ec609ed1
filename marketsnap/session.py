from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

from dateutil import tz

EXCHANGE_TZ_NAME = "America/New_York"

PRE_MARKET_OPEN = 4 * 60
MARKET_OPEN = 9 * 60 + 30
MARKET_CLOSE = 16 * 60
AFTER_HOURS_CLOSE = 20 * 60

# seconds, per phase
_CACHE_TTL = {
    "open": 5 * 60,
    "pre-market": 5 * 60,
    "after-hours": 15 * 60,
    "closed": 60 * 60,
}


class MarketPhase(str, Enum):
    OPEN = "open"
    PRE_MARKET = "pre-market"
    AFTER_HOURS = "after-hours"
    CLOSED = "closed"


def _exchange_tz(name: str | None = None):
    zone = tz.gettz(name or EXCHANGE_TZ_NAME)
    if zone is None:
        raise ValueError(f"unknown timezone: {name}")
    return zone


def to_exchange_time(now: datetime, tz_name: str | None = None) -> datetime:
    """Express ``now`` in exchange-local time. Naive datetimes are taken as UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(_exchange_tz(tz_name))


def phase(now: datetime, tz_name: str | None = None) -> MarketPhase:
    local = to_exchange_time(now, tz_name)
    if local.weekday() >= 5:
        return MarketPhase.CLOSED
    minutes = local.hour * 60 + local.minute
    if MARKET_OPEN <= minutes < MARKET_CLOSE:
        return MarketPhase.OPEN
    if PRE_MARKET_OPEN <= minutes < MARKET_OPEN:
        return MarketPhase.PRE_MARKET
    if MARKET_CLOSE <= minutes < AFTER_HOURS_CLOSE:
        return MarketPhase.AFTER_HOURS
    return MarketPhase.CLOSED


def is_trading_session(now: datetime, tz_name: str | None = None) -> bool:
    return phase(now, tz_name) is MarketPhase.OPEN


def start_of_trading_day(now: datetime, tz_name: str | None = None) -> datetime:
    """Exchange-local midnight of the exchange-local date of ``now``, as a UTC instant."""
    local = to_exchange_time(now, tz_name)
    midnight = datetime(local.year, local.month, local.day, tzinfo=local.tzinfo)
    return midnight.astimezone(timezone.utc)


def cache_ttl(now: datetime, tz_name: str | None = None) -> timedelta:
    return timedelta(seconds=_CACHE_TTL[phase(now, tz_name).value])
