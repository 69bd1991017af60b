"""Scheduling loop that polls the subscription union and fans quotes out."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..config import Settings
from ..errors import MarketFeedError, RateLimited, StorageUnavailable, Unauthorized
from ..providers.base import IngestionSink, PricePoint, PriceSource, Quote, TickRecord, normalize_symbol
from ..storage.sqlite import TimeSeriesStore
from .quote_cache import QuoteCache
from .rate_limiter import TokenBucketRateLimiter
from .subscriptions import SubscriptionRegistry


logger = logging.getLogger(__name__)

QuotesCallback = Callable[[list[Quote], int], Awaitable[None]]


def _usable_price(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value >= 0


@dataclass
class PollerConfig:
    """Tunables for QuotePoller. Defaults match the production cadence."""
    base_interval: float = 1.5
    backoff_factor: float = 2.0
    max_backoff: float = 8.0
    max_symbols_per_request: int = 50
    flush_threshold: int = 100
    flush_every_cycle: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> PollerConfig:
        return cls(
            base_interval=settings.poll_interval_seconds,
            backoff_factor=settings.backoff_factor,
            max_backoff=settings.max_backoff,
            max_symbols_per_request=settings.max_symbols_per_request,
            flush_threshold=settings.flush_threshold,
        )


class QuotePoller:
    """
    Polls the price source for the current subscription union.

    One background task runs cycles back to back; cycles never overlap. Each
    cycle snapshots the union, throttles through the rate limiter, fetches
    quotes, updates the quote cache, persists one PricePoint per quote, and
    buffers ticks for the ingestion sink. Rate-limit errors grow the sleep
    multiplier (capped) until the next successful fetch resets it. No error is
    fatal to the loop.
    """

    def __init__(
        self,
        source: PriceSource,
        registry: SubscriptionRegistry,
        limiter: TokenBucketRateLimiter,
        cache: QuoteCache,
        store: TimeSeriesStore,
        sink: Optional[IngestionSink] = None,
        config: Optional[PollerConfig] = None,
        on_quotes: Optional[QuotesCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.registry = registry
        self.limiter = limiter
        self.cache = cache
        self.store = store
        self.sink = sink
        self.config = config or PollerConfig()
        self.on_quotes = on_quotes
        self._clock = clock

        self.backoff = 1.0
        self._buffer: list[TickRecord] = []
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._flush_tasks: set[asyncio.Task] = set()

        self.cycles = 0
        self.successes = 0
        self.rate_limited = 0
        self.errors = 0
        self.persisted_points = 0
        self.flushed_ticks = 0
        self.flush_failures = 0
        self.last_cycle_ts: int | None = None
        self.last_error: str | None = None
        self._last_logged_minute = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending_ticks(self) -> int:
        return len(self._buffer)

    def current_sleep(self) -> float:
        return self.config.base_interval * self.backoff

    def update_source(self, source: PriceSource) -> None:
        """Swap the price source (e.g. after rotating credentials)."""
        self.source = source

    def start(self) -> None:
        """Start the scheduling loop, stopping any loop already running."""
        self.stop()
        self.backoff = 1.0
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._task = asyncio.create_task(self._run(stop_event), name="quote-poller")
        logger.info(
            f"Quote poller started (interval={self.config.base_interval}s, "
            f"max_symbols={self.config.max_symbols_per_request})"
        )

    def stop(self) -> None:
        """Signal the loop to exit. Safe to call repeatedly."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info("Quote poller stopping...")
        self._stop_event = None

    async def stop_and_wait(self) -> None:
        """Stop the loop, wait for it to exit and for pending flushes."""
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        self._task = None
        # Hand off whatever the last cycle left behind
        self._flush()
        await self.drain()

    async def drain(self) -> None:
        """Wait for in-flight flushes to finish."""
        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)

    async def _run(self, stop_event: asyncio.Event) -> None:
        try:
            while not stop_event.is_set():
                try:
                    delay = await self.run_cycle()
                except Exception as e:
                    self.errors += 1
                    self.last_error = str(e)
                    logger.error(f"Poll cycle failed: {e}", exc_info=True)
                    delay = self.current_sleep()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Quote poller cancelled.")
            raise
        logger.info("Quote poller stopped.")

    async def run_cycle(self) -> float:
        """
        Execute one poll cycle.

        Returns:
            Seconds to sleep before the next cycle (base interval * backoff)
        """
        self.cycles += 1
        # Snapshot once; subscription changes apply from the next cycle
        batch = sorted(self.registry.current_union())[: self.config.max_symbols_per_request]

        if batch:
            try:
                await self.limiter.acquire()
                quotes = await self.source.fetch_quotes(batch)
            except RateLimited as e:
                self.rate_limited += 1
                self.last_error = str(e)
                self.backoff = min(self.backoff * self.config.backoff_factor, self.config.max_backoff)
                logger.warning(f"Rate limited by price source; backoff now {self.backoff:.1f}x")
            except Unauthorized as e:
                self.errors += 1
                self.last_error = str(e)
                logger.error(f"Price source rejected credentials: {e}")
            except MarketFeedError as e:
                self.errors += 1
                self.last_error = str(e)
                logger.warning(f"Quote fetch failed for {len(batch)} symbols: {e}")
            except Exception as e:
                self.errors += 1
                self.last_error = str(e)
                logger.error(f"Unexpected error fetching quotes: {e}", exc_info=True)
            else:
                self.successes += 1
                self.backoff = 1.0
                await self._handle_quotes(quotes)

        if self.config.flush_every_cycle and self._buffer:
            self._flush()

        return self.current_sleep()

    async def _handle_quotes(self, quotes: list[Quote]) -> None:
        cycle_ts = int(self._clock())
        self.last_cycle_ts = cycle_ts

        accepted: list[Quote] = []
        for q in quotes:
            symbol = normalize_symbol(q.symbol)
            if not symbol:
                continue
            if not _usable_price(q.price):
                logger.warning(f"Dropping {symbol} quote with unusable price {q.price!r}")
                continue
            q.symbol = symbol
            accepted.append(q)

        self.cache.upsert_many(accepted)
        self._buffer.extend(TickRecord.from_quote(q) for q in accepted)

        points: dict[str, list[PricePoint]] = defaultdict(list)
        for q in accepted:
            points[q.symbol].append(PricePoint(q.symbol, cycle_ts, q.price))
        for symbol, symbol_points in points.items():
            try:
                self.persisted_points += await self.store.upsert(symbol, symbol_points)
            except StorageUnavailable as e:
                logger.error(f"Failed to persist {symbol} price: {e}")

        if self.on_quotes is not None and accepted:
            try:
                await self.on_quotes(accepted, cycle_ts)
            except Exception as e:
                logger.error(f"Quote listener failed: {e}", exc_info=True)

        if len(self._buffer) >= self.config.flush_threshold:
            self._flush()

        # Log once per minute (throttled)
        current_minute = cycle_ts // 60
        if current_minute > self._last_logged_minute:
            self._last_logged_minute = current_minute
            logger.info(f"Polled {len(accepted)} quotes, persisted at ts={cycle_ts}")

    def _flush(self) -> None:
        """Hand the tick buffer to the sink without waiting (fire-and-forget)."""
        if not self._buffer:
            return
        records = self._buffer
        self._buffer = []
        if self.sink is None:
            return
        task = asyncio.create_task(self._send(records))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _send(self, records: list[TickRecord]) -> None:
        try:
            await self.sink.insert_ticks(records)
            self.flushed_ticks += len(records)
        except Exception as e:
            self.flush_failures += 1
            logger.warning(f"Tick flush of {len(records)} records failed: {e}")

    def metrics(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "cycles": self.cycles,
            "successes": self.successes,
            "rate_limited": self.rate_limited,
            "errors": self.errors,
            "backoff": self.backoff,
            "sleep_seconds": self.current_sleep(),
            "persisted_points": self.persisted_points,
            "pending_ticks": self.pending_ticks,
            "flushed_ticks": self.flushed_ticks,
            "flush_failures": self.flush_failures,
            "tracked_symbols": sorted(self.registry.current_union()),
            "last_cycle_ts": self.last_cycle_ts,
            "last_error": self.last_error,
        }
