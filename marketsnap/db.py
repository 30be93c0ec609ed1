from __future__ import annotations

import asyncio
import functools
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

from pydantic import TypeAdapter

from .errors import CacheTierUnavailable
from .models import (
    BenchmarkPoint,
    CachedPortfolioMeta,
    Holding,
    HoldingValuation,
    InstrumentKind,
    PortfolioSnapshot,
    PriceRecord,
    SeriesPoint,
)
from .utils import ensure_utc, now_utc, parse_instant

_HOLDINGS = TypeAdapter(tuple[HoldingValuation, ...])
_SERIES = TypeAdapter(tuple[SeriesPoint, ...])
_BENCHMARK = TypeAdapter(tuple[BenchmarkPoint, ...])


def get_conn(db_path: str) -> sqlite3.Connection:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, isolation_level=None)  # autocommit
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

DDL = [
    # Portfolio records (owned by the CRUD side; read here)
    """
CREATE TABLE IF NOT EXISTS portfolios (
  id TEXT PRIMARY KEY,
  display_name TEXT,
  password_hash TEXT,
  created_at_utc TEXT NOT NULL,
  is_private INTEGER NOT NULL DEFAULT 0,
  visibility TEXT NOT NULL DEFAULT 'public'
);
""",
    """
CREATE TABLE IF NOT EXISTS holdings (
  portfolio_id TEXT NOT NULL REFERENCES portfolios(id) ON DELETE CASCADE,
  ticker TEXT NOT NULL,
  name TEXT,
  shares TEXT NOT NULL DEFAULT '0',
  is_static INTEGER NOT NULL DEFAULT 0,
  static_value TEXT,
  cost_basis TEXT,
  instrument_type TEXT,
  PRIMARY KEY (portfolio_id, ticker)
);
""",

    # Precomputed snapshots; series columns are JSON arrays
    """
CREATE TABLE IF NOT EXISTS portfolio_snapshots (
  portfolio_id TEXT PRIMARY KEY,
  total_value TEXT NOT NULL,
  day_change TEXT NOT NULL,
  day_change_percent TEXT NOT NULL,
  total_gain TEXT,
  total_gain_percent TEXT,
  holdings_json TEXT NOT NULL,
  history_1d_json TEXT,
  history_30d_json TEXT,
  benchmark_30d_json TEXT,
  market_status TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL,
  last_error TEXT,
  last_error_at_utc TEXT
);
""",
    "CREATE INDEX IF NOT EXISTS ix_portfolio_snapshots_updated ON portfolio_snapshots(updated_at_utc DESC);",

    # Cached projection of a portfolio record; never holds credentials
    """
CREATE TABLE IF NOT EXISTS portfolio_meta (
  id TEXT PRIMARY KEY,
  display_name TEXT,
  created_at_utc TEXT NOT NULL,
  is_private INTEGER NOT NULL DEFAULT 0,
  visibility TEXT NOT NULL DEFAULT 'public',
  cached_at_utc TEXT NOT NULL
);
""",

    # Latest quote per ticker
    """
CREATE TABLE IF NOT EXISTS price_cache (
  ticker TEXT PRIMARY KEY,
  current_price TEXT NOT NULL,
  previous_close TEXT NOT NULL,
  change_percent TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
""",

    # Daily closes, so each refresh only asks providers for what is missing
    """
CREATE TABLE IF NOT EXISTS daily_prices (
  ticker TEXT NOT NULL,
  date TEXT NOT NULL,
  close_price TEXT NOT NULL,
  created_at_utc TEXT NOT NULL,
  PRIMARY KEY (ticker, date)
);
""",
    "CREATE INDEX IF NOT EXISTS ix_daily_prices_ticker_date ON daily_prices(ticker, date DESC);",
]

def migrate(conn: sqlite3.Connection):
    cur = conn.cursor()
    for stmt in DDL:
        cur.execute(stmt)
    cols = {row[1] for row in cur.execute("PRAGMA table_info(portfolio_snapshots)").fetchall()}
    if "last_error" not in cols:
        cur.execute("ALTER TABLE portfolio_snapshots ADD COLUMN last_error TEXT")
    if "last_error_at_utc" not in cols:
        cur.execute("ALTER TABLE portfolio_snapshots ADD COLUMN last_error_at_utc TEXT")


def _dec(value) -> Decimal | None:
    return None if value is None else Decimal(str(value))


def _txt(value) -> str | None:
    return None if value is None else str(value)


def _row_to_snapshot(row: sqlite3.Row) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        portfolio_id=row["portfolio_id"],
        total_value=_dec(row["total_value"]),
        day_change=_dec(row["day_change"]),
        day_change_percent=_dec(row["day_change_percent"]),
        total_gain=_dec(row["total_gain"]),
        total_gain_percent=_dec(row["total_gain_percent"]),
        holdings=_HOLDINGS.validate_json(row["holdings_json"]),
        intraday_1d=_SERIES.validate_json(row["history_1d_json"] or "[]"),
        daily_30d=_SERIES.validate_json(row["history_30d_json"] or "[]"),
        benchmark_30d=_BENCHMARK.validate_json(row["benchmark_30d_json"] or "[]"),
        market_phase=row["market_status"],
        updated_at=datetime.fromisoformat(row["updated_at_utc"]),
        last_error=row["last_error"],
        last_error_at=datetime.fromisoformat(row["last_error_at_utc"]) if row["last_error_at_utc"] else None,
    )


def _durable(op: str):
    """Run the wrapped sync method in a worker thread; sqlite errors become CacheTierUnavailable."""

    def wrap(fn):
        @functools.wraps(fn)
        async def runner(self, *args, **kwargs):
            try:
                return await asyncio.to_thread(fn, self, *args, **kwargs)
            except (sqlite3.Error, OSError) as exc:
                raise CacheTierUnavailable("durable", op, exc) from exc
        return runner

    return wrap


class SqliteStore:
    """Durable tier plus read access to the portfolio/holding records."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _conn(self) -> sqlite3.Connection:
        conn = get_conn(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def migrate(self) -> None:
        conn = get_conn(self.db_path)
        try:
            migrate(conn)
        finally:
            conn.close()

    # -- snapshots ---------------------------------------------------------

    @_durable("get_snapshot")
    def get_snapshot(self, portfolio_id: str) -> PortfolioSnapshot | None:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM portfolio_snapshots WHERE portfolio_id=?", (portfolio_id.lower(),)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_snapshot(row) if row else None

    @_durable("list_snapshots")
    def list_snapshots(self) -> list[PortfolioSnapshot]:
        conn = self._conn()
        try:
            rows = conn.execute("SELECT * FROM portfolio_snapshots ORDER BY portfolio_id").fetchall()
        finally:
            conn.close()
        return [_row_to_snapshot(r) for r in rows]

    @_durable("upsert_snapshot")
    def upsert_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO portfolio_snapshots(
                  portfolio_id, total_value, day_change, day_change_percent, total_gain, total_gain_percent,
                  holdings_json, history_1d_json, history_30d_json, benchmark_30d_json, market_status,
                  updated_at_utc, last_error, last_error_at_utc
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(portfolio_id) DO UPDATE SET
                  total_value=excluded.total_value, day_change=excluded.day_change,
                  day_change_percent=excluded.day_change_percent, total_gain=excluded.total_gain,
                  total_gain_percent=excluded.total_gain_percent, holdings_json=excluded.holdings_json,
                  history_1d_json=excluded.history_1d_json, history_30d_json=excluded.history_30d_json,
                  benchmark_30d_json=excluded.benchmark_30d_json, market_status=excluded.market_status,
                  updated_at_utc=excluded.updated_at_utc, last_error=excluded.last_error,
                  last_error_at_utc=excluded.last_error_at_utc
                """,
                (
                    snapshot.portfolio_id,
                    str(snapshot.total_value),
                    str(snapshot.day_change),
                    str(snapshot.day_change_percent),
                    _txt(snapshot.total_gain),
                    _txt(snapshot.total_gain_percent),
                    _HOLDINGS.dump_json(snapshot.holdings).decode(),
                    _SERIES.dump_json(snapshot.intraday_1d).decode(),
                    _SERIES.dump_json(snapshot.daily_30d).decode(),
                    _BENCHMARK.dump_json(snapshot.benchmark_30d).decode(),
                    snapshot.market_phase,
                    ensure_utc(snapshot.updated_at).isoformat(),
                    snapshot.last_error,
                    ensure_utc(snapshot.last_error_at).isoformat() if snapshot.last_error_at else None,
                ),
            )
        finally:
            conn.close()

    @_durable("record_snapshot_error")
    def record_snapshot_error(self, portfolio_id: str, message: str, at: datetime) -> bool:
        """Stamp the error columns; the rest of the row is left as it was."""
        conn = self._conn()
        try:
            cur = conn.execute(
                "UPDATE portfolio_snapshots SET last_error=?, last_error_at_utc=? WHERE portfolio_id=?",
                (message[:500], ensure_utc(at).isoformat(), portfolio_id.lower()),
            )
            return cur.rowcount > 0
        finally:
            conn.close()

    @_durable("delete_snapshot")
    def delete_snapshot(self, portfolio_id: str) -> None:
        conn = self._conn()
        try:
            conn.execute("DELETE FROM portfolio_snapshots WHERE portfolio_id=?", (portfolio_id.lower(),))
        finally:
            conn.close()

    # -- portfolio metadata and holdings ----------------------------------

    @_durable("get_portfolio_meta")
    def get_portfolio_meta(self, portfolio_id: str) -> CachedPortfolioMeta | None:
        pid = portfolio_id.lower()
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT id, display_name, created_at_utc, is_private, visibility FROM portfolio_meta WHERE id=?",
                (pid,),
            ).fetchone()
            if not row:
                row = conn.execute(
                    "SELECT id, display_name, created_at_utc, is_private, visibility FROM portfolios WHERE id=?",
                    (pid,),
                ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return CachedPortfolioMeta(
            id=row["id"],
            display_name=row["display_name"],
            created_at=datetime.fromisoformat(row["created_at_utc"]),
            is_private=bool(row["is_private"]),
            visibility=row["visibility"],
        )

    @_durable("upsert_portfolio_meta")
    def upsert_portfolio_meta(self, meta: CachedPortfolioMeta) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO portfolio_meta(id, display_name, created_at_utc, is_private, visibility, cached_at_utc)
                VALUES(?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET display_name=excluded.display_name,
                  created_at_utc=excluded.created_at_utc, is_private=excluded.is_private,
                  visibility=excluded.visibility, cached_at_utc=excluded.cached_at_utc
                """,
                (
                    meta.id.lower(),
                    meta.display_name,
                    ensure_utc(meta.created_at).isoformat(),
                    int(meta.is_private),
                    meta.visibility,
                    now_utc().isoformat(),
                ),
            )
        finally:
            conn.close()

    @_durable("delete_portfolio_meta")
    def delete_portfolio_meta(self, portfolio_id: str) -> None:
        conn = self._conn()
        try:
            conn.execute("DELETE FROM portfolio_meta WHERE id=?", (portfolio_id.lower(),))
        finally:
            conn.close()

    @_durable("list_portfolio_ids")
    def list_portfolio_ids(self) -> list[str]:
        conn = self._conn()
        try:
            return [r[0] for r in conn.execute("SELECT id FROM portfolios ORDER BY created_at_utc, id").fetchall()]
        finally:
            conn.close()

    @_durable("save_portfolio")
    def save_portfolio(self, record: dict, holdings: list[Holding]) -> None:
        """Write a portfolio and replace its holdings. Used by local seeding and tests."""
        pid = str(record["id"]).strip().lower()
        created_at = parse_instant(record.get("created_at")) or now_utc()
        conn = self._conn()
        try:
            conn.execute("BEGIN")
            conn.execute(
                """
                INSERT INTO portfolios(id, display_name, password_hash, created_at_utc, is_private, visibility)
                VALUES(?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET display_name=excluded.display_name,
                  password_hash=excluded.password_hash, is_private=excluded.is_private,
                  visibility=excluded.visibility
                """,
                (
                    pid,
                    record.get("display_name"),
                    record.get("password_hash"),
                    created_at.isoformat(),
                    int(bool(record.get("is_private"))),
                    record.get("visibility") or "public",
                ),
            )
            conn.execute("DELETE FROM holdings WHERE portfolio_id=?", (pid,))
            conn.executemany(
                """
                INSERT INTO holdings(portfolio_id, ticker, name, shares, is_static, static_value, cost_basis,
                  instrument_type) VALUES(?,?,?,?,?,?,?,?)
                """,
                [
                    (pid, h.ticker, h.name or h.ticker, str(h.shares), int(h.is_static), _txt(h.static_value),
                     _txt(h.cost_basis), h.instrument_kind.value)
                    for h in holdings
                ],
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @_durable("get_holdings")
    def get_holdings(self, portfolio_id: str) -> list[Holding]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT * FROM holdings WHERE portfolio_id=? ORDER BY ticker", (portfolio_id.lower(),)
            ).fetchall()
        finally:
            conn.close()
        return [
            Holding(
                ticker=r["ticker"],
                name=r["name"] or r["ticker"],
                shares=_dec(r["shares"]) or Decimal("0"),
                is_static=bool(r["is_static"]),
                static_value=_dec(r["static_value"]),
                cost_basis=_dec(r["cost_basis"]),
                instrument_kind=InstrumentKind.parse(r["instrument_type"]),
            )
            for r in rows
        ]

    # -- prices ------------------------------------------------------------

    @_durable("get_prices")
    def get_prices(self, tickers: list[str]) -> dict[str, PriceRecord]:
        if not tickers:
            return {}
        conn = self._conn()
        try:
            marks = ",".join("?" for _ in tickers)
            rows = conn.execute(f"SELECT * FROM price_cache WHERE ticker IN ({marks})", list(tickers)).fetchall()
        finally:
            conn.close()
        return {
            r["ticker"]: PriceRecord(
                ticker=r["ticker"],
                current_price=_dec(r["current_price"]),
                previous_close=_dec(r["previous_close"]),
                change_percent=_dec(r["change_percent"]),
                updated_at=datetime.fromisoformat(r["updated_at_utc"]),
            )
            for r in rows
        }

    @_durable("upsert_prices")
    def upsert_prices(self, records: list[PriceRecord]) -> None:
        if not records:
            return
        conn = self._conn()
        try:
            conn.executemany(
                """
                INSERT INTO price_cache(ticker, current_price, previous_close, change_percent, updated_at_utc)
                VALUES(?,?,?,?,?)
                ON CONFLICT(ticker) DO UPDATE SET current_price=excluded.current_price,
                  previous_close=excluded.previous_close, change_percent=excluded.change_percent,
                  updated_at_utc=excluded.updated_at_utc
                """,
                [
                    (r.ticker, str(r.current_price), str(r.previous_close), str(r.change_percent),
                     ensure_utc(r.updated_at).isoformat())
                    for r in records
                ],
            )
        finally:
            conn.close()

    @_durable("get_daily_prices")
    def get_daily_prices(self, tickers: list[str], since: date) -> dict[str, dict[str, Decimal]]:
        """``{ticker: {iso_date: close}}`` for closes on or after ``since``."""
        if not tickers:
            return {}
        conn = self._conn()
        try:
            marks = ",".join("?" for _ in tickers)
            rows = conn.execute(
                f"SELECT ticker, date, close_price FROM daily_prices WHERE ticker IN ({marks}) AND date>=? "
                "ORDER BY ticker, date",
                [*tickers, since.isoformat()],
            ).fetchall()
        finally:
            conn.close()
        out: dict[str, dict[str, Decimal]] = {}
        for r in rows:
            out.setdefault(r["ticker"], {})[r["date"]] = Decimal(r["close_price"])
        return out

    @_durable("upsert_daily_prices")
    def upsert_daily_prices(self, rows: list[tuple[str, str, Decimal]]) -> int:
        if not rows:
            return 0
        created = now_utc().isoformat()
        conn = self._conn()
        try:
            conn.executemany(
                """
                INSERT INTO daily_prices(ticker, date, close_price, created_at_utc) VALUES(?,?,?,?)
                ON CONFLICT(ticker, date) DO UPDATE SET close_price=excluded.close_price
                """,
                [(t, d, str(c), created) for t, d, c in rows],
            )
        finally:
            conn.close()
        return len(rows)
