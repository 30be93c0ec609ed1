from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Iterable

import structlog
from pydantic import ValidationError

from .errors import CacheTierUnavailable
from .fast_tier import ALL_SNAPSHOTS_KEY, portfolio_key, price_key, snapshot_key
from .models import CachedPortfolioMeta, PortfolioSnapshot, PriceRecord, SnapshotView
from .utils import ensure_utc

log = structlog.get_logger()


class SnapshotCache:
    """
    Two-tier store for precomputed portfolio snapshots.
    - fast tier (Redis) is read first and written last; its failures never escape
    - durable tier (SQLite) is the fallback and the source of truth
    - a durable hit is copied back into the fast tier
    Staleness is computed on read from updated_at and never stored.
    """

    def __init__(self, fast_tier, durable_tier, stale_after_seconds: int = 600):
        self.fast = fast_tier
        self.durable = durable_tier
        self.stale_after_seconds = int(stale_after_seconds)

    async def _fast(self, op: str, call: Callable[[], Awaitable], default=None):
        if self.fast is None:
            return default
        try:
            return await call()
        except CacheTierUnavailable as exc:
            log.warning("fast_tier_degraded", op=op, err=str(exc))
            return default

    # -- snapshots ---------------------------------------------------------

    async def _fast_store_snapshot(self, snapshot: PortfolioSnapshot):
        key = snapshot_key(snapshot.portfolio_id)
        await self._fast("set_snapshot", lambda: self.fast.set(key, snapshot.model_dump(mode="json")))
        await self._fast("index_snapshot", lambda: self.fast.add_member(ALL_SNAPSHOTS_KEY, snapshot.portfolio_id))

    async def get(self, portfolio_id: str) -> PortfolioSnapshot | None:
        pid = portfolio_id.strip().lower()
        raw = await self._fast("get_snapshot", lambda: self.fast.get(snapshot_key(pid)))
        if raw is not None:
            try:
                return PortfolioSnapshot.model_validate(raw)
            except ValidationError as exc:
                log.warning("fast_tier_bad_payload", portfolio_id=pid, err=str(exc))
        try:
            snapshot = await self.durable.get_snapshot(pid)
        except CacheTierUnavailable as exc:
            log.error("durable_read_failed", op="get_snapshot", portfolio_id=pid, err=str(exc))
            return None
        if snapshot is None:
            return None
        await self._fast_store_snapshot(snapshot)
        log.debug("snapshot_backfilled", portfolio_id=pid)
        return snapshot

    def is_stale(self, snapshot: PortfolioSnapshot, now: datetime) -> bool:
        return self.age_seconds(snapshot, now) > self.stale_after_seconds

    @staticmethod
    def age_seconds(snapshot: PortfolioSnapshot, now: datetime) -> float:
        return (ensure_utc(now) - ensure_utc(snapshot.updated_at)).total_seconds()

    async def read(self, portfolio_id: str, now: datetime) -> SnapshotView:
        snapshot = await self.get(portfolio_id)
        if snapshot is None:
            return SnapshotView()
        return SnapshotView(
            snapshot=snapshot,
            is_stale=self.is_stale(snapshot, now),
            age_seconds=round(self.age_seconds(snapshot, now), 3),
        )

    async def put(self, portfolio_id: str, snapshot: PortfolioSnapshot) -> None:
        """Durable write first and raised on failure; fast write best effort."""
        pid = portfolio_id.strip().lower()
        if snapshot.portfolio_id != pid:
            raise ValueError(f"snapshot for {snapshot.portfolio_id!r} stored under {pid!r}")
        await self.durable.upsert_snapshot(snapshot)
        await self._fast_store_snapshot(snapshot)

    async def get_all(self) -> list[PortfolioSnapshot]:
        try:
            return await self.durable.list_snapshots()
        except CacheTierUnavailable as exc:
            log.error("durable_read_failed", op="list_snapshots", err=str(exc))
        ids = sorted(await self._fast("all_snapshot_ids", lambda: self.fast.members(ALL_SNAPSHOTS_KEY), set()))
        raws = await self._fast("mget_snapshots", lambda: self.fast.mget([snapshot_key(i) for i in ids]), [])
        out = []
        for raw in raws:
            if raw is None:
                continue
            try:
                out.append(PortfolioSnapshot.model_validate(raw))
            except ValidationError as exc:
                log.warning("fast_tier_bad_payload", err=str(exc))
        return out

    async def delete(self, portfolio_id: str) -> None:
        pid = portfolio_id.strip().lower()
        await self.durable.delete_snapshot(pid)
        await self._fast("delete_snapshot", lambda: self.fast.delete(snapshot_key(pid)))
        await self._fast("unindex_snapshot", lambda: self.fast.remove_member(ALL_SNAPSHOTS_KEY, pid))

    async def record_error(self, portfolio_id: str, message: str, now: datetime) -> bool:
        """Stamp last_error on the stored snapshot, keeping its data. False when nothing was stamped."""
        pid = portfolio_id.strip().lower()
        try:
            stamped = await self.durable.record_snapshot_error(pid, message, now)
            snapshot = await self.durable.get_snapshot(pid) if stamped else None
        except CacheTierUnavailable as exc:
            log.error("snapshot_error_not_recorded", portfolio_id=pid, err=str(exc), message=message)
            return False
        if snapshot is not None:
            await self._fast_store_snapshot(snapshot)
        return stamped

    # -- portfolio metadata ------------------------------------------------

    async def get_meta(self, portfolio_id: str) -> CachedPortfolioMeta | None:
        """None means the portfolio does not exist.

        A fast-tier miss the durable tier cannot answer raises
        CacheTierUnavailable, so an outage is never reported as unknown.
        """
        pid = portfolio_id.strip().lower()
        raw = await self._fast("get_meta", lambda: self.fast.get(portfolio_key(pid)))
        if raw is not None:
            try:
                return CachedPortfolioMeta.model_validate(raw)
            except ValidationError as exc:
                log.warning("fast_tier_bad_payload", portfolio_id=pid, err=str(exc))
        try:
            meta = await self.durable.get_portfolio_meta(pid)
        except CacheTierUnavailable as exc:
            log.error("durable_read_failed", op="get_meta", portfolio_id=pid, err=str(exc))
            raise
        if meta is not None:
            await self._fast("set_meta", lambda: self.fast.set(portfolio_key(pid), meta.model_dump(mode="json")))
        return meta

    async def put_meta(self, record: CachedPortfolioMeta | dict) -> CachedPortfolioMeta:
        meta = record if isinstance(record, CachedPortfolioMeta) else CachedPortfolioMeta.from_record(record)
        try:
            await self.durable.upsert_portfolio_meta(meta)
        except CacheTierUnavailable as exc:
            log.warning("durable_meta_write_failed", portfolio_id=meta.id, err=str(exc))
        await self._fast("set_meta", lambda: self.fast.set(portfolio_key(meta.id), meta.model_dump(mode="json")))
        return meta

    async def invalidate_meta(self, portfolio_id: str) -> None:
        pid = portfolio_id.strip().lower()
        await self._fast("delete_meta", lambda: self.fast.delete(portfolio_key(pid)))
        try:
            await self.durable.delete_portfolio_meta(pid)
        except CacheTierUnavailable as exc:
            log.warning("durable_meta_write_failed", portfolio_id=pid, err=str(exc))

    # -- prices ------------------------------------------------------------

    async def get_prices(self, tickers: Iterable[str]) -> dict[str, PriceRecord]:
        wanted = sorted({t.strip().upper() for t in tickers if t and t.strip()})
        if not wanted:
            return {}
        out: dict[str, PriceRecord] = {}
        raws = await self._fast("mget_prices", lambda: self.fast.mget([price_key(t) for t in wanted]), [])
        for ticker, raw in zip(wanted, raws):
            if raw is None:
                continue
            try:
                out[ticker] = PriceRecord.model_validate(raw)
            except ValidationError as exc:
                log.warning("fast_tier_bad_payload", ticker=ticker, err=str(exc))
        missing = [t for t in wanted if t not in out]
        if not missing:
            return out
        try:
            found = await self.durable.get_prices(missing)
        except CacheTierUnavailable as exc:
            log.error("durable_read_failed", op="get_prices", err=str(exc))
            return out
        if found:
            payload = {price_key(t): r.model_dump(mode="json") for t, r in found.items()}
            await self._fast("backfill_prices", lambda: self.fast.pipeline_set(payload))
        out.update(found)
        return out

    async def put_prices(self, records: Iterable[PriceRecord]) -> int:
        records = list(records)
        if not records:
            return 0
        await self.durable.upsert_prices(records)
        payload = {price_key(r.ticker): r.model_dump(mode="json") for r in records}
        await self._fast("set_prices", lambda: self.fast.pipeline_set(payload))
        return len(records)
