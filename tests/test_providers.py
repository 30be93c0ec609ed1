import unittest
from decimal import Decimal

import httpx

from marketsnap.config import Settings
from marketsnap.errors import MalformedResponse, RetryableProviderError, TerminalProviderError
from marketsnap.models import NOT_FOUND, Granularity, InstrumentKind
from marketsnap.providers.cnbc_adapter import CnbcAdapter
from marketsnap.providers.fmp_adapter import FmpAdapter, infer_instrument_kind
from marketsnap.providers.registry import build_providers
from marketsnap.providers.yahoo_adapter import YahooChartAdapter

from fakes import utc


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _status(code, body=None):
    def handler(request):
        return httpx.Response(code, json=body if body is not None else {})
    return handler


def _chart(meta=None, timestamps=None, closes=None):
    result = {"meta": meta or {}}
    if timestamps is not None:
        result["timestamp"] = timestamps
        result["indicators"] = {"quote": [{"close": closes}]}
    return {"chart": {"result": [result], "error": None}}


class YahooAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def _yahoo(self, handler):
        client = _client(handler)
        self.addAsyncCleanup(client.aclose)
        return YahooChartAdapter("https://yahoo.test", client=client)

    async def test_quote_from_chart_meta(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(200, json=_chart({"regularMarketPrice": 150.0, "chartPreviousClose": 100.0}))

        q = await (await self._yahoo(handler)).fetch_quote("AAPL")
        self.assertEqual(seen["path"], "/v8/finance/chart/AAPL")
        self.assertEqual(q.current_price, Decimal("150"))
        self.assertEqual(q.previous_close, Decimal("100"))

    async def test_missing_previous_close_defaults_to_current(self):
        q = await (await self._yahoo(_status(200, _chart({"regularMarketPrice": 12.5})))).fetch_quote("X")
        self.assertEqual(q.previous_close, Decimal("12.5"))

    async def test_unknown_symbol_is_not_found(self):
        self.assertIs(await (await self._yahoo(_status(404))).fetch_quote("NOPE"), NOT_FOUND)
        empty = {"chart": {"result": [], "error": None}}
        self.assertIs(await (await self._yahoo(_status(200, empty))).fetch_quote("NOPE"), NOT_FOUND)

    async def test_rate_limit_and_server_errors_are_retryable(self):
        for code in (429, 500, 503):
            with self.subTest(code=code):
                with self.assertRaises(RetryableProviderError):
                    await (await self._yahoo(_status(code))).fetch_quote("AAPL")

    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with self.assertRaises(RetryableProviderError):
            await (await self._yahoo(handler)).fetch_quote("AAPL")

    async def test_client_errors_are_terminal(self):
        for code in (400, 401, 403):
            with self.subTest(code=code):
                with self.assertRaises(TerminalProviderError):
                    await (await self._yahoo(_status(code))).fetch_quote("AAPL")

    async def test_chart_without_price_is_malformed(self):
        with self.assertRaises(MalformedResponse):
            await (await self._yahoo(_status(200, _chart({"currency": "USD"})))).fetch_quote("AAPL")

    async def test_non_json_body_is_malformed(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>maintenance</html>")

        with self.assertRaises(MalformedResponse):
            await (await self._yahoo(handler)).fetch_quote("AAPL")

    async def test_history_drops_nulls_and_sorts(self):
        t1, t2, t3 = 1709649000, 1709649060, 1709649120
        body = _chart({}, timestamps=[t3, t1, t2], closes=[101.0, None, 100.5])
        points = await (await self._yahoo(_status(200, body))).fetch_history(
            "AAPL", utc(2024, 3, 5), utc(2024, 3, 6), Granularity.INTRADAY
        )
        self.assertEqual([p.close for p in points], [Decimal("100.5"), Decimal("101.0")])
        self.assertLess(points[0].timestamp, points[1].timestamp)

    async def test_symbol_info_maps_cash_funds(self):
        meta = {"regularMarketPrice": 1.0, "longName": "Cash Reserves Fund", "instrumentType": "MUTUALFUND"}
        info = await (await self._yahoo(_status(200, _chart(meta)))).fetch_symbol_info("SPAXX")
        self.assertEqual(info.display_name, "Cash Reserves Fund")
        self.assertIs(info.instrument_kind, InstrumentKind.MONEY_MARKET)


class FmpAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def _fmp(self, handler):
        client = _client(handler)
        self.addAsyncCleanup(client.aclose)
        return FmpAdapter("k3y", "https://fmp.test/stable", client=client)

    async def test_quote_sends_key(self):
        seen = {}

        def handler(request):
            seen.update(dict(request.url.params))
            return httpx.Response(200, json=[{"symbol": "AAPL", "price": 150, "previousClose": 100}])

        q = await (await self._fmp(handler)).fetch_quote("AAPL")
        self.assertEqual(seen["apikey"], "k3y")
        self.assertEqual(q.change_percent, Decimal("50"))

    async def test_empty_list_is_not_found(self):
        self.assertIs(await (await self._fmp(_status(200, []))).fetch_quote("ZZZZ"), NOT_FOUND)

    async def test_missing_required_field_is_malformed(self):
        with self.assertRaises(MalformedResponse):
            await (await self._fmp(_status(200, [{"price": 150}]))).fetch_quote("AAPL")

    async def test_error_message_payload_is_malformed(self):
        with self.assertRaises(MalformedResponse):
            await (await self._fmp(_status(200, {"Error Message": "Invalid API KEY"}))).fetch_quote("AAPL")

    async def test_daily_history_is_reversed_to_ascending(self):
        rows = [
            {"date": "2024-03-05", "close": 102},
            {"date": "2024-03-04", "close": None},
            {"date": "2024-03-01", "close": 100},
        ]
        points = await (await self._fmp(_status(200, rows))).fetch_history(
            "AAPL", utc(2024, 2, 1), utc(2024, 3, 6), Granularity.DAILY
        )
        self.assertEqual([p.timestamp for p in points], [utc(2024, 3, 1), utc(2024, 3, 5)])

    async def test_intraday_is_stamped_in_exchange_time(self):
        rows = [{"date": "2024-03-05 10:00:00", "close": 101}, {"date": "2024-03-04 15:59:00", "close": 99}]
        points = await (await self._fmp(_status(200, rows))).fetch_history(
            "AAPL", utc(2024, 3, 5, 5), utc(2024, 3, 5, 21), Granularity.INTRADAY
        )
        self.assertEqual([p.timestamp for p in points], [utc(2024, 3, 5, 15, 0)])

    async def test_profile_infers_fund_kinds(self):
        profile = [{"companyName": "SPDR S&P 500", "exchange": "AMEX", "industry": "Asset Management"}]
        info = await (await self._fmp(_status(200, profile))).fetch_symbol_info("SPY")
        self.assertIs(info.instrument_kind, InstrumentKind.ETF)
        self.assertIs(infer_instrument_kind("NASDAQ", "Asset Management"), InstrumentKind.MUTUAL_FUND)
        self.assertIs(infer_instrument_kind("NASDAQ", "Consumer Electronics"), InstrumentKind.COMMON_STOCK)


class CnbcAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def _cnbc(self, body):
        client = _client(_status(200, body))
        self.addAsyncCleanup(client.aclose)
        return CnbcAdapter("https://cnbc.test/quote", client=client)

    async def test_unchanged_marker(self):
        body = {"FormattedQuoteResult": {"FormattedQuote": [{"symbol": "VFIAX", "last": "450.10", "change": "UNCH"}]}}
        q = await (await self._cnbc(body)).fetch_quote("VFIAX")
        self.assertEqual(q.previous_close, Decimal("450.10"))

    async def test_previous_close_from_change(self):
        body = {"FormattedQuoteResult": {"FormattedQuote": [{"last": "1,001.50", "change": "+1.50"}]}}
        q = await (await self._cnbc(body)).fetch_quote("X")
        self.assertEqual(q.current_price, Decimal("1001.50"))
        self.assertEqual(q.previous_close, Decimal("1000.00"))

    async def test_no_history(self):
        adapter = await self._cnbc({})
        self.assertIs(await adapter.fetch_history("X", utc(2024, 1, 1), utc(2024, 1, 2), Granularity.DAILY), NOT_FOUND)


class RegistryTests(unittest.TestCase):
    def test_order_and_skips(self):
        cfg = Settings(PROVIDER_ORDER="cnbc, fmp, yahoo, bogus", FMP_API_KEY="", CNBC_ENABLE=1, YAHOO_ENABLE=1)
        self.assertEqual([p.name for p in build_providers(cfg)], ["cnbc", "yahoo"])

    def test_fmp_included_with_key(self):
        cfg = Settings(PROVIDER_ORDER="fmp,yahoo", FMP_API_KEY="abc", YAHOO_ENABLE=0)
        self.assertEqual([p.name for p in build_providers(cfg)], ["fmp"])


if __name__ == "__main__":
    unittest.main()
