from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable

from dateutil.parser import isoparse

from .errors import RetryableProviderError


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def truncate_to_minute(dt: datetime) -> datetime:
    return ensure_utc(dt).replace(second=0, microsecond=0)


def parse_instant(value) -> datetime | None:
    """datetime or ISO-8601 text (a trailing Z included) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = isoparse(value)
    return ensure_utc(value)


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        if value != value:
            return None
        return Decimal(repr(value))
    text = str(value).strip().replace(",", "")
    if not text:
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


class RetryState(str, Enum):
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def schedule(self) -> list[float]:
        return [self.delay_for(n) for n in range(1, self.attempts)]


@dataclass
class RetryOutcome:
    state: RetryState = RetryState.ATTEMPTING
    attempts: int = 0
    delays: list[float] = field(default_factory=list)
    result: Any = None
    error: Exception | None = None


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_on: tuple[type[BaseException], ...] = (RetryableProviderError,),
) -> RetryOutcome:
    """Run ``fn`` under ``policy`` and report how it went.

    Only exceptions in ``retry_on`` lead to another attempt. Any other
    exception ends the loop in FAILED after a single attempt; running out of
    attempts ends it in EXHAUSTED. Neither is raised.
    """
    outcome = RetryOutcome()
    while outcome.state is RetryState.ATTEMPTING:
        outcome.attempts += 1
        try:
            outcome.result = await fn()
            outcome.state = RetryState.SUCCEEDED
        except retry_on as exc:
            outcome.error = exc
            if outcome.attempts >= policy.attempts:
                outcome.state = RetryState.EXHAUSTED
            else:
                delay = policy.delay_for(outcome.attempts)
                outcome.delays.append(delay)
                if delay > 0:
                    await sleep(delay)
        except Exception as exc:
            outcome.error = exc
            outcome.state = RetryState.FAILED
    return outcome
