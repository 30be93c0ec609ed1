import tempfile
import unittest
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

from marketsnap.cache_layer import SnapshotCache
from marketsnap.config import Settings
from marketsnap.db import SqliteStore
from marketsnap.errors import CacheTierUnavailable, RetryableProviderError
from marketsnap.fast_tier import RedisFastTier
from marketsnap.models import HistoricalPoint, Holding
from marketsnap.pipeline.locking import try_acquire
from marketsnap.pipeline.market import QuoteFetcher
from marketsnap.pipeline.orchestrator import Runtime, refresh_all
from marketsnap.pipeline.snapshots import SnapshotBuilder

from fakes import FakeRedis, ScriptedProvider, SleepRecorder, quote, utc

# Tuesday 10:00 in New York
NOW = utc(2024, 3, 5, 15, 0)


class _FlakyStore(SqliteStore):
    """Durable tier that refuses snapshot writes for chosen portfolios."""

    def __init__(self, db_path, fail_for=()):
        super().__init__(db_path)
        self.fail_for = set(fail_for)

    async def upsert_snapshot(self, snapshot):
        if snapshot.portfolio_id in self.fail_for:
            raise CacheTierUnavailable("durable", "upsert_snapshot")
        return await super().upsert_snapshot(snapshot)


def _history(*closes):
    return tuple(
        HistoricalPoint(timestamp=utc(2024, 3, day), close=Decimal(str(close))) for day, close in closes
    )


def build_runtime(db_path, provider, store=None, redis=None):
    cfg = Settings(DB_PATH=db_path, FAST_TIER_ENABLED=0, REFRESH_LOCK_TTL_SECONDS=900)
    store = store or SqliteStore(db_path)
    store.migrate()
    cache = SnapshotCache(RedisFastTier(client=redis or FakeRedis()), store, stale_after_seconds=cfg.stale_after_seconds)
    fetcher = QuoteFetcher([provider], sleep=SleepRecorder())
    builder = SnapshotBuilder.from_settings(fetcher, cache, store, cfg)
    return Runtime(cfg, store, cache, fetcher, builder)


def default_provider():
    return ScriptedProvider(
        "scripted",
        quotes={"AAPL": quote(150, 100), "SPY": quote(510, 500)},
        histories={
            "AAPL": _history((1, 98), (4, 100)),
            "SPY": _history((1, 490), (4, 500)),
        },
    )


class RefreshAllTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.db_path = str(Path(self._tmp.name) / "e2e.db")
        self.provider = default_provider()

    async def _seed(self, store, pid, holdings):
        await store.save_portfolio({"id": pid, "display_name": pid.upper(), "created_at": utc(2024, 1, 1)}, holdings)

    async def test_single_portfolio_round_trip(self):
        runtime = build_runtime(self.db_path, self.provider)
        await self._seed(runtime.store, "P1", [Holding(ticker="AAPL", shares=Decimal("10"))])

        summary = await refresh_all(runtime, NOW)

        self.assertEqual(summary.status, "succeeded")
        self.assertEqual(summary.portfolios_refreshed, 1)
        self.assertEqual(summary.tickers_quoted, 2)
        view = await runtime.cache.read("p1", NOW)
        self.assertFalse(view.is_stale)
        snap = view.snapshot
        self.assertEqual(snap.total_value, Decimal("1500"))
        self.assertEqual(snap.day_change, Decimal("500"))
        self.assertEqual(snap.day_change_percent, Decimal("50"))
        self.assertEqual(len(snap.intraday_1d), 1)
        self.assertEqual([p.value for p in snap.daily_30d], [Decimal("980"), Decimal("1000")])
        self.assertEqual(snap.benchmark_30d[-1].percent_change, Decimal("2.040816"))

    async def test_prices_and_daily_closes_are_persisted(self):
        runtime = build_runtime(self.db_path, self.provider)
        await self._seed(runtime.store, "p1", [Holding(ticker="AAPL", shares=Decimal("1"))])
        await refresh_all(runtime, NOW)

        prices = await runtime.store.get_prices(["AAPL", "SPY"])
        self.assertEqual(prices["AAPL"].change_percent, Decimal("50"))
        closes = await runtime.store.get_daily_prices(["AAPL"], utc(2024, 2, 1).date())
        self.assertEqual(closes["AAPL"], {"2024-03-01": Decimal("98"), "2024-03-04": Decimal("100")})

    async def test_fresh_closes_are_not_refetched(self):
        runtime = build_runtime(self.db_path, self.provider)
        await runtime.store.upsert_daily_prices([("AAPL", "2024-03-04", Decimal("100")),
                                                 ("SPY", "2024-03-04", Decimal("500"))])
        await self._seed(runtime.store, "p1", [Holding(ticker="AAPL", shares=Decimal("1"))])
        await refresh_all(runtime, NOW)
        self.assertEqual(self.provider.count("history", "AAPL"), 0)

    async def test_one_failing_portfolio_does_not_stop_the_run(self):
        store = _FlakyStore(self.db_path, fail_for={"p2"})
        runtime = build_runtime(self.db_path, self.provider, store=store)
        await self._seed(store, "p1", [Holding(ticker="AAPL", shares=Decimal("10"))])
        await self._seed(store, "p2", [Holding(ticker="AAPL", shares=Decimal("2"))])
        # an earlier good snapshot for p2
        earlier = runtime.builder.build("p2", [Holding(ticker="AAPL", shares=Decimal("2"))],
                                        {"AAPL": quote(120, 100)}, {}, None, utc(2024, 3, 4, 15, 0))
        await SqliteStore(self.db_path).upsert_snapshot(earlier)

        summary = await refresh_all(runtime, NOW)

        self.assertEqual(summary.portfolios_refreshed, 1)
        self.assertEqual(summary.portfolios_failed, ["p2"])
        self.assertEqual((await runtime.cache.get("p1")).total_value, Decimal("1500"))
        p2 = await store.get_snapshot("p2")
        self.assertEqual(p2.total_value, Decimal("240"))
        self.assertIn("CacheTierUnavailable", p2.last_error)
        self.assertTrue((await runtime.cache.read("p2", NOW)).is_stale)

    async def test_unquoted_ticker_is_left_out(self):
        runtime = build_runtime(self.db_path, self.provider)
        await self._seed(runtime.store, "p1", [
            Holding(ticker="AAPL", shares=Decimal("10")),
            Holding(ticker="DELISTED", shares=Decimal("5")),
            Holding(ticker="HOUSE", is_static=True, static_value=Decimal("250000")),
        ])
        summary = await refresh_all(runtime, NOW)
        self.assertEqual(summary.tickers_requested, 3)
        snap = await runtime.cache.get("p1")
        self.assertEqual([h.ticker for h in snap.holdings], ["HOUSE", "AAPL"])
        self.assertEqual(snap.total_value, Decimal("251500"))
        self.assertEqual(snap.last_error, "no price for DELISTED")
        self.assertEqual(snap.intraday_1d, ())

    async def test_provider_outage_keeps_prior_snapshot(self):
        runtime = build_runtime(self.db_path, self.provider)
        await self._seed(runtime.store, "p1", [Holding(ticker="AAPL", shares=Decimal("10"))])
        await refresh_all(runtime, NOW)
        down = RetryableProviderError("scripted", "*", "status_503", 503)
        self.provider.quotes = {"AAPL": down, "SPY": down}

        summary = await refresh_all(runtime, NOW + timedelta(minutes=5))

        self.assertEqual(summary.status, "failed")
        self.assertEqual(summary.tickers_quoted, 0)
        self.assertEqual(summary.portfolios_failed, ["p1"])
        snap = await runtime.cache.get("p1")
        self.assertEqual(snap.total_value, Decimal("1500"))
        self.assertEqual(snap.updated_at, NOW)
        self.assertEqual([p.value for p in snap.intraday_1d], [Decimal("1500")])
        self.assertIn("PricesUnavailable", snap.last_error)
        self.assertTrue((await runtime.cache.read("p1", NOW + timedelta(minutes=11))).is_stale)

    async def test_failed_quote_falls_back_to_cached_price(self):
        runtime = build_runtime(self.db_path, self.provider)
        await self._seed(runtime.store, "p1", [Holding(ticker="AAPL", shares=Decimal("10"))])
        await refresh_all(runtime, NOW)
        self.provider.quotes["AAPL"] = RetryableProviderError("scripted", "AAPL", "status_503", 503)

        later = NOW + timedelta(minutes=5)
        summary = await refresh_all(runtime, later)

        self.assertEqual(summary.status, "succeeded")
        self.assertEqual(summary.tickers_quoted, 1)
        snap = await runtime.cache.get("p1")
        self.assertEqual(snap.total_value, Decimal("1500"))
        self.assertEqual(snap.updated_at, later)
        self.assertIsNone(snap.last_error)
        self.assertEqual(len(snap.intraday_1d), 2)

    async def test_holding_priced_before_but_not_now_keeps_prior(self):
        runtime = build_runtime(self.db_path, self.provider)
        holdings = [Holding(ticker="AAPL", shares=Decimal("10"))]
        await self._seed(runtime.store, "p1", holdings)
        earlier = runtime.builder.build("p1", holdings, {"AAPL": quote(120, 100)}, {}, None, NOW - timedelta(hours=1))
        await runtime.cache.put("p1", earlier)
        del self.provider.quotes["AAPL"]

        summary = await refresh_all(runtime, NOW)

        self.assertEqual(summary.portfolios_failed, ["p1"])
        snap = await runtime.cache.get("p1")
        self.assertEqual(snap.total_value, Decimal("1200"))
        self.assertIn("AAPL", snap.last_error)

    async def test_lock_store_outage_fails_the_run(self):
        runtime = build_runtime(self.db_path, self.provider)
        # a directory cannot be opened as a database
        runtime.settings = Settings(DB_PATH=self._tmp.name, FAST_TIER_ENABLED=0)
        summary = await refresh_all(runtime, NOW)
        self.assertEqual(summary.status, "failed")
        self.assertEqual(self.provider.calls, [])

    async def test_run_is_skipped_while_lock_is_held(self):
        runtime = build_runtime(self.db_path, self.provider)
        self.assertTrue(await try_acquire(self.db_path, "refresh", "other-run", 900, NOW))
        summary = await refresh_all(runtime, NOW)
        self.assertEqual(summary.status, "skipped")
        self.assertEqual(self.provider.calls, [])

    async def test_lock_is_released_after_run(self):
        runtime = build_runtime(self.db_path, self.provider)
        first = await refresh_all(runtime, NOW)
        second = await refresh_all(runtime, NOW)
        self.assertEqual((first.status, second.status), ("succeeded", "succeeded"))

    async def test_refresh_single_portfolio(self):
        runtime = build_runtime(self.db_path, self.provider)
        await self._seed(runtime.store, "p1", [Holding(ticker="AAPL", shares=Decimal("4"))])
        snap = await runtime.builder.refresh_portfolio("P1", NOW)
        self.assertEqual(snap.total_value, Decimal("600"))
        self.assertEqual((await runtime.cache.get("p1")).total_value, Decimal("600"))


if __name__ == "__main__":
    unittest.main()
