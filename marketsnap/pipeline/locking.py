import asyncio
import sqlite3
from datetime import datetime, timedelta

from ..db import get_conn
from ..errors import CacheTierUnavailable
from ..utils import ensure_utc, now_utc

LOCKS_DDL = """
CREATE TABLE IF NOT EXISTS locks(
  name TEXT PRIMARY KEY,
  owner TEXT NOT NULL,
  acquired_at_utc TEXT NOT NULL,
  expires_at_utc TEXT NOT NULL
)
"""


def acquire_lock(conn: sqlite3.Connection, name: str, owner: str, ttl_seconds: int = 900,
                 now: datetime | None = None) -> bool:
    """Take ``name`` for ``owner``. An expired holder is replaced; a live one wins."""
    cur = conn.cursor()
    cur.execute(LOCKS_DDL)
    now = ensure_utc(now or now_utc())
    exp = now + timedelta(seconds=ttl_seconds)
    cur.execute("BEGIN IMMEDIATE")
    try:
        row = cur.execute("SELECT owner, expires_at_utc FROM locks WHERE name=?", (name,)).fetchone()
        if row and row[0] != owner and datetime.fromisoformat(row[1]) >= now:
            cur.execute("ROLLBACK")
            return False
        cur.execute(
            """
            INSERT INTO locks(name, owner, acquired_at_utc, expires_at_utc) VALUES(?,?,?,?)
            ON CONFLICT(name) DO UPDATE SET owner=excluded.owner,
              acquired_at_utc=excluded.acquired_at_utc, expires_at_utc=excluded.expires_at_utc
            """,
            (name, owner, now.isoformat(), exp.isoformat()),
        )
        cur.execute("COMMIT")
        return True
    except sqlite3.Error:
        if conn.in_transaction:
            cur.execute("ROLLBACK")
        raise


def release_lock(conn: sqlite3.Connection, name: str, owner: str):
    conn.execute(LOCKS_DDL)
    conn.execute("DELETE FROM locks WHERE name=? AND owner=?", (name, owner))


def _with_conn(db_path: str, fn, *args, **kwargs):
    try:
        conn = get_conn(db_path)
        try:
            return fn(conn, *args, **kwargs)
        finally:
            conn.close()
    except (sqlite3.Error, OSError) as exc:
        raise CacheTierUnavailable("durable", fn.__name__, exc) from exc


async def try_acquire(db_path: str, name: str, owner: str, ttl_seconds: int = 900,
                      now: datetime | None = None) -> bool:
    return await asyncio.to_thread(_with_conn, db_path, acquire_lock, name, owner, ttl_seconds, now)


async def release(db_path: str, name: str, owner: str):
    await asyncio.to_thread(_with_conn, db_path, release_lock, name, owner)
