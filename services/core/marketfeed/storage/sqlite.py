import asyncio
import logging
import os
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import aiosqlite

from ..errors import InvalidRequest, StorageUnavailable
from ..providers.base import ChartBucket, PricePoint, normalize_symbol


logger = logging.getLogger(__name__)


CREATE_SQL = """
CREATE TABLE IF NOT EXISTS price_data (
  symbol TEXT NOT NULL,
  timestamp INTEGER NOT NULL,
  price REAL NOT NULL CHECK (price >= 0),
  PRIMARY KEY(symbol, timestamp)
);
"""

CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_price_data_timestamp ON price_data (timestamp);
"""

UPSERT_SQL = """
INSERT INTO price_data (symbol, timestamp, price)
VALUES (?, ?, ?)
ON CONFLICT(symbol, timestamp) DO UPDATE SET
  price=excluded.price;
"""


@dataclass
class StoreStats:
  total_records: int
  distinct_symbols: int
  oldest_timestamp: Optional[int]
  newest_timestamp: Optional[int]

  def to_dict(self) -> dict[str, Any]:
    return {
      "totalRecords": self.total_records,
      "symbols": self.distinct_symbols,
      "oldestTimestamp": self.oldest_timestamp,
      "newestTimestamp": self.newest_timestamp,
    }


class TimeSeriesStore:
  """
  Durable per-symbol price time series on SQLite.

  At most one row exists per (symbol, timestamp); repeated writes overwrite
  the price. Writes are serialized through a single lock so concurrent
  callers (live polling, backfill, REST ingestion) never interleave
  transactions. Storage-level failures surface as StorageUnavailable.
  """

  def __init__(self, path: str, busy_timeout_ms: int = 5000):
    self.path = path
    self.busy_timeout_ms = busy_timeout_ms
    self._write_lock = asyncio.Lock()

  async def _open(self) -> aiosqlite.Connection:
    try:
      db = await aiosqlite.connect(self.path, timeout=self.busy_timeout_ms / 1000.0)
    except (sqlite3.Error, OSError) as e:
      raise StorageUnavailable(f"Cannot open database {self.path}: {e}") from e
    return db

  async def init(self) -> None:
    directory = os.path.dirname(self.path)
    if directory:
      os.makedirs(directory, exist_ok=True)
    db = await self._open()
    try:
      await db.execute(CREATE_SQL)
      await db.execute(CREATE_INDEX_SQL)
      await db.commit()
    except sqlite3.Error as e:
      raise StorageUnavailable(f"Cannot initialize schema: {e}") from e
    finally:
      await db.close()

  async def upsert(self, symbol: str, points: Iterable[PricePoint]) -> int:
    """
    Batch upsert price points for one symbol.

    Points are written inside a single transaction, but each point is applied
    individually: a point that fails (constraint violation, out-of-range
    timestamp, non-numeric price) is logged and skipped without aborting the
    batch. Failing to begin or commit the transaction raises
    StorageUnavailable.

    Args:
        symbol: Symbol the points belong to (normalized before writing)
        points: Points to write; their own symbol field is ignored

    Returns:
        Number of points written
    """
    sym = normalize_symbol(symbol)
    if not sym:
      raise InvalidRequest("symbol is required")
    batch = list(points)
    if not batch:
      return 0

    async with self._write_lock:
      db = await self._open()
      try:
        try:
          await db.execute("BEGIN")
        except sqlite3.Error as e:
          raise StorageUnavailable(f"Cannot begin transaction: {e}") from e

        written = 0
        for p in batch:
          try:
            row = (sym, int(p.timestamp), float(p.price))
            await db.execute(UPSERT_SQL, row)
            written += 1
          except sqlite3.OperationalError as e:
            # Locked/full database: the whole transaction is unusable
            await self._rollback(db)
            raise StorageUnavailable(f"Write failed for {sym}: {e}") from e
          except (sqlite3.Error, OverflowError, TypeError, ValueError) as e:
            logger.warning(f"Skipping point {sym}@{p.timestamp} price={p.price}: {e}")

        try:
          await db.commit()
        except sqlite3.Error as e:
          await self._rollback(db)
          raise StorageUnavailable(f"Cannot commit {sym} batch: {e}") from e
      finally:
        await db.close()
    return written

  @staticmethod
  async def _rollback(db: aiosqlite.Connection) -> None:
    try:
      await db.rollback()
    except sqlite3.Error as e:
      logger.error(f"Rollback failed: {e}")

  async def _fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
    db = await self._open()
    try:
      db.row_factory = aiosqlite.Row
      cur = await db.execute(sql, params)
      return list(await cur.fetchall())
    except sqlite3.Error as e:
      raise StorageUnavailable(f"Query failed: {e}") from e
    finally:
      await db.close()

  async def query(
    self,
    symbol: str,
    start: Optional[int] = None,
    end: Optional[int] = None,
    limit: Optional[int] = None,
    tail: bool = False,
  ) -> list[PricePoint]:
    """
    Points for a symbol in ascending timestamp order.

    Args:
        symbol: Symbol to read
        start: Inclusive lower bound (unbounded when None)
        end: Inclusive upper bound (unbounded when None)
        limit: Maximum number of points (must be positive when given)
        tail: When limiting, keep the newest points instead of the oldest

    Returns:
        List of PricePoint, oldest first
    """
    if limit is not None and limit <= 0:
      raise InvalidRequest(f"limit must be positive, got {limit}")
    sym = normalize_symbol(symbol)
    if not sym:
      return []
    sql = "SELECT symbol, timestamp, price FROM price_data WHERE symbol=?"
    params: list[Any] = [sym]
    if start is not None:
      sql += " AND timestamp >= ?"
      params.append(int(start))
    if end is not None:
      sql += " AND timestamp <= ?"
      params.append(int(end))
    sql += " ORDER BY timestamp DESC" if tail else " ORDER BY timestamp ASC"
    if limit is not None:
      sql += " LIMIT ?"
      params.append(int(limit))

    rows = await self._fetchall(sql, tuple(params))
    points = [PricePoint(r["symbol"], int(r["timestamp"]), float(r["price"])) for r in rows]
    if tail:
      points.reverse()
    return points

  async def query_days(self, symbol: str, days: int, now: Optional[int] = None) -> list[PricePoint]:
    end = int(time.time()) if now is None else now
    return await self.query(symbol, start=end - days * 86400, end=end)

  async def latest_timestamp(self, symbol: str) -> Optional[int]:
    sym = normalize_symbol(symbol)
    if not sym:
      return None
    rows = await self._fetchall("SELECT MAX(timestamp) FROM price_data WHERE symbol=?", (sym,))
    value = rows[0][0] if rows else None
    return int(value) if value is not None else None

  async def latest_point(self, symbol: str, start: Optional[int] = None) -> Optional[PricePoint]:
    """Newest point for a symbol, optionally only if at or after `start`."""
    points = await self.query(symbol, start=start, limit=1, tail=True)
    return points[0] if points else None

  async def distinct_symbols(self) -> set[str]:
    rows = await self._fetchall("SELECT DISTINCT symbol FROM price_data")
    return {row[0] for row in rows}

  async def count(self, symbol: Optional[str] = None) -> int:
    if symbol is None:
      rows = await self._fetchall("SELECT COUNT(*) FROM price_data")
    else:
      rows = await self._fetchall(
        "SELECT COUNT(*) FROM price_data WHERE symbol=?",
        (normalize_symbol(symbol),),
      )
    return int(rows[0][0])

  async def aggregate(
    self,
    symbol: str,
    start: int,
    end: int,
    bucket_seconds: Optional[int] = None,
  ) -> list[ChartBucket] | list[PricePoint]:
    """
    Bucketed avg/min/max/count between start and end (inclusive).

    Bucket boundaries are floor(timestamp / bucket_seconds) * bucket_seconds.
    Without bucket_seconds this is a plain range query.
    """
    if not bucket_seconds or bucket_seconds <= 0:
      return await self.query(symbol, start=start, end=end)

    sym = normalize_symbol(symbol)
    if not sym:
      return []
    width = int(bucket_seconds)
    rows = await self._fetchall(
      """
      SELECT
        (timestamp / ?) * ? AS bucket_timestamp,
        AVG(price) AS avg_price,
        MIN(price) AS min_price,
        MAX(price) AS max_price,
        COUNT(*) AS point_count
      FROM price_data
      WHERE symbol = ? AND timestamp >= ? AND timestamp <= ?
      GROUP BY bucket_timestamp
      ORDER BY bucket_timestamp ASC
      """,
      (width, width, sym, int(start), int(end)),
    )
    return [
      ChartBucket(
        timestamp=int(r["bucket_timestamp"]),
        avg=float(r["avg_price"]),
        min=float(r["min_price"]),
        max=float(r["max_price"]),
        count=int(r["point_count"]),
      )
      for r in rows
    ]

  async def stats(self) -> StoreStats:
    rows = await self._fetchall(
      """
      SELECT
        COUNT(*) AS total_records,
        COUNT(DISTINCT symbol) AS symbols,
        MIN(timestamp) AS oldest,
        MAX(timestamp) AS newest
      FROM price_data
      """
    )
    r = rows[0]
    return StoreStats(
      total_records=int(r["total_records"]),
      distinct_symbols=int(r["symbols"]),
      oldest_timestamp=int(r["oldest"]) if r["oldest"] is not None else None,
      newest_timestamp=int(r["newest"]) if r["newest"] is not None else None,
    )
