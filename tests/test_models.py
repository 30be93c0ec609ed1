import unittest
from decimal import Decimal

from pydantic import ValidationError

from marketsnap.models import (
    NOT_FOUND,
    CachedPortfolioMeta,
    Holding,
    InstrumentKind,
    PortfolioSnapshot,
    Quote,
    percent_change,
)
from marketsnap.utils import parse_instant, to_decimal

from fakes import utc


class QuoteTests(unittest.TestCase):
    def test_change_percent_is_derived(self):
        q = Quote(current_price=Decimal("150"), previous_close=Decimal("100"))
        self.assertEqual(q.change_percent, Decimal("50"))

    def test_zero_previous_close_gives_zero_change(self):
        self.assertEqual(Quote(current_price=Decimal("5"), previous_close=Decimal("0")).change_percent, Decimal("0"))
        self.assertEqual(percent_change(Decimal("5"), None), Decimal("0"))

    def test_quotes_are_immutable(self):
        q = Quote(current_price=Decimal("1"), previous_close=Decimal("1"))
        with self.assertRaises(ValidationError):
            q.current_price = Decimal("2")


class NotFoundTests(unittest.TestCase):
    def test_sentinel_is_falsy_singleton(self):
        self.assertFalse(NOT_FOUND)
        self.assertIs(type(NOT_FOUND)(), NOT_FOUND)


class PortfolioMetaTests(unittest.TestCase):
    def test_projection_drops_credentials(self):
        meta = CachedPortfolioMeta.from_record(
            {
                "id": "p1",
                "display_name": "Main",
                "created_at": utc(2024, 1, 1),
                "is_private": False,
                "visibility": "public",
                "password_hash": "$2b$10$secret",
            }
        )
        self.assertNotIn("password_hash", meta.model_dump())

    def test_direct_construction_rejects_unknown_fields(self):
        with self.assertRaises(ValidationError):
            CachedPortfolioMeta(id="p1", created_at=utc(2024, 1, 1), password_hash="x")

    def test_visibility_is_constrained(self):
        with self.assertRaises(ValidationError):
            CachedPortfolioMeta(id="p1", created_at=utc(2024, 1, 1), visibility="friends")


class NormalisationTests(unittest.TestCase):
    def test_ids_and_tickers(self):
        self.assertEqual(Holding(ticker=" aapl ").ticker, "AAPL")
        snap = PortfolioSnapshot(portfolio_id="P1", total_value=Decimal("0"), updated_at=utc(2024, 1, 1))
        self.assertEqual(snap.portfolio_id, "p1")

    def test_instrument_kind_parse_falls_back_to_other(self):
        self.assertIs(InstrumentKind.parse("ETF"), InstrumentKind.ETF)
        self.assertIs(InstrumentKind.parse("Warrant"), InstrumentKind.OTHER)
        self.assertIs(InstrumentKind.parse(None), InstrumentKind.OTHER)

    def test_to_decimal(self):
        self.assertEqual(to_decimal(0.1), Decimal("0.1"))
        self.assertEqual(to_decimal("1,234.50"), Decimal("1234.50"))
        self.assertIsNone(to_decimal(float("nan")))
        self.assertIsNone(to_decimal("n/a"))
        self.assertIsNone(to_decimal(True))

    def test_parse_instant(self):
        self.assertEqual(parse_instant("2024-01-02T09:30:00Z"), utc(2024, 1, 2, 9, 30))
        self.assertEqual(parse_instant("2024-01-02T04:30:00-05:00"), utc(2024, 1, 2, 9, 30))
        self.assertEqual(parse_instant(utc(2024, 1, 2)), utc(2024, 1, 2))
        self.assertIsNone(parse_instant(None))


if __name__ == "__main__":
    unittest.main()
