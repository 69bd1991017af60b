"""Tick ingestion sinks fed by the quote poller's flushes."""

from __future__ import annotations

import logging
import os
import sqlite3

import aiosqlite

from ..errors import StorageUnavailable
from ..providers.base import TickRecord


logger = logging.getLogger(__name__)


CREATE_TICKS_SQL = """
CREATE TABLE IF NOT EXISTS ticks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  symbol TEXT NOT NULL,
  ts REAL NOT NULL,
  bid REAL,
  ask REAL,
  mid REAL NOT NULL
);
"""


class NullTickSink:
    """Sink used when ingestion is disabled. Drops everything."""

    async def insert_ticks(self, records: list[TickRecord]) -> None:
        return None


class SQLiteTickSink:
    """Appends raw ticks to a `ticks` table (one row per sample, no dedup)."""

    def __init__(self, path: str):
        self.path = path
        self.inserted = 0

    async def init(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        async with aiosqlite.connect(self.path) as db:
            await db.execute(CREATE_TICKS_SQL)
            await db.commit()

    async def insert_ticks(self, records: list[TickRecord]) -> None:
        if not records:
            return
        try:
            async with aiosqlite.connect(self.path) as db:
                await db.executemany(
                    "INSERT INTO ticks (symbol, ts, bid, ask, mid) VALUES (?, ?, ?, ?, ?)",
                    [(r.symbol, r.timestamp, r.bid, r.ask, r.mid) for r in records],
                )
                await db.commit()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Tick insert failed: {e}") from e
        self.inserted += len(records)
        logger.debug(f"Inserted {len(records)} ticks")
