"""
Historical backfill into the time-series store.

Symbols with no stored data get a full-span pull; symbols that already have
data resume from their latest stored timestamp using a short recent span, so
nothing before the cursor is re-written.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from ..errors import MarketFeedError
from ..providers.base import HistorySource, normalize_symbols
from ..storage.sqlite import TimeSeriesStore
from ..streaming.rate_limiter import TokenBucketRateLimiter


logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    """Outcome of a multi-symbol backfill run."""
    written: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def total_written(self) -> int:
        return sum(self.written.values())


class HistoryBackfiller:
    """
    Pulls history for symbols and upserts it into the store.

    The limiter is independent from the live polling bucket; every history
    request acquires one token from it.
    """

    def __init__(
        self,
        source: HistorySource,
        store: TimeSeriesStore,
        limiter: Optional[TokenBucketRateLimiter] = None,
        full_spans: tuple[str, ...] = ("year", "5year"),
        recent_span: str = "week",
    ):
        self.source = source
        self.store = store
        self.limiter = limiter or TokenBucketRateLimiter(capacity=100, refill_interval=1.0)
        self.full_spans = full_spans
        self.recent_span = recent_span

    async def _fetch(self, symbol: str, span: str, since: Optional[int]):
        await self.limiter.acquire()
        return await self.source.fetch_history(symbol, span, since=since)

    async def backfill_symbol(self, symbol: str) -> int:
        """
        Backfill one symbol.

        Returns:
            Number of points written
        """
        cursor = await self.store.latest_timestamp(symbol)

        if cursor is not None:
            logger.info(f"{symbol} has data up to {cursor}; fetching {self.recent_span} span")
            points = await self._fetch(symbol, self.recent_span, cursor)
            # Sources may ignore the cursor
            points = [p for p in points if p.timestamp > cursor]
        else:
            logger.info(f"{symbol} has no data; fetching full history")
            points = []
            for span in self.full_spans:
                points = await self._fetch(symbol, span, None)
                if points:
                    logger.info(f"Fetched {len(points)} points for {symbol} with span {span}")
                    break

        if not points:
            return 0
        written = await self.store.upsert(symbol, points)
        logger.info(f"Stored {written} points for {symbol}")
        return written

    async def backfill(
        self,
        symbols: Iterable[str],
        progress_cb: Optional[Callable[[str], None]] = None,
    ) -> BackfillReport:
        """Backfill symbols one after another. Per-symbol failures are recorded, not raised."""
        report = BackfillReport()
        started = time.monotonic()

        for symbol in sorted(normalize_symbols(symbols)):
            try:
                count = await self.backfill_symbol(symbol)
                report.written[symbol] = count
                if progress_cb:
                    progress_cb(f"{symbol}: {count} points")
            except MarketFeedError as e:
                logger.error(f"Failed to backfill {symbol}: {e}")
                report.failed[symbol] = str(e)
                if progress_cb:
                    progress_cb(f"{symbol}: failed ({e})")

        report.duration_seconds = time.monotonic() - started
        logger.info(
            f"Backfill completed in {report.duration_seconds:.2f}s: "
            f"{report.total_written} points, {len(report.failed)} failures"
        )
        return report
