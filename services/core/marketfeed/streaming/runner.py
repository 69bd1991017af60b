"""Runner that wires the poller, broadcaster and relay and manages their lifecycle."""

from __future__ import annotations

import logging
from typing import Optional

from ..config import Settings
from ..providers.base import IngestionSink, PriceSource, Quote
from ..providers.http_quotes import HTTPQuoteSource
from ..storage.sqlite import TimeSeriesStore
from ..storage.ticks import NullTickSink, SQLiteTickSink
from .broadcaster import LatestPriceRelay, StreamBroadcaster
from .poller import PollerConfig, QuotePoller
from .quote_cache import QuoteCache
from .rate_limiter import TokenBucketRateLimiter
from .subscriptions import SubscriptionRegistry


logger = logging.getLogger(__name__)


class FeedRunner:
    """
    Builds the market feed components once and owns their lifecycle.

    Every component is constructed here and handed to its consumers, so tests
    can swap the price source or sink without touching module state.
    """

    def __init__(
        self,
        settings: Settings,
        store: TimeSeriesStore,
        source: Optional[PriceSource] = None,
        sink: Optional[IngestionSink] = None,
    ):
        self.settings = settings
        self.store = store
        self.source = source or HTTPQuoteSource(
            settings.price_source_url,
            token=settings.price_source_token,
        )
        if sink is not None:
            self.sink = sink
        elif settings.ingestion_enabled:
            self.sink = SQLiteTickSink(settings.sqlite_path)
        else:
            self.sink = NullTickSink()

        self.registry = SubscriptionRegistry()
        self.cache = QuoteCache()
        self.limiter = TokenBucketRateLimiter(
            capacity=settings.rate_limit_capacity,
            refill_interval=settings.rate_limit_refill_seconds,
            refill_amount=settings.rate_limit_refill_amount,
        )
        self.broadcaster = StreamBroadcaster(
            store,
            history_window=settings.stream_history_window_seconds,
            history_limit=settings.stream_history_limit,
        )
        self.poller = QuotePoller(
            source=self.source,
            registry=self.registry,
            limiter=self.limiter,
            cache=self.cache,
            store=store,
            sink=self.sink,
            config=PollerConfig.from_settings(settings),
            on_quotes=self._broadcast_quotes,
        )
        self.relay = LatestPriceRelay(
            self.broadcaster,
            store,
            interval=settings.relay_interval_seconds,
            max_symbols=settings.relay_max_symbols,
        )
        self.default_handle: str | None = None

    async def start(self) -> None:
        """Initialize storage and start background tasks enabled in settings."""
        logger.info("Starting feed runner...")
        await self.store.init()
        if isinstance(self.sink, SQLiteTickSink):
            await self.sink.init()

        symbols = self.settings.get_default_symbols()
        if symbols and self.default_handle is None:
            self.default_handle = self.registry.subscribe(symbols)

        if self.settings.poller_enabled:
            self.poller.start()
        else:
            logger.info("Quote poller disabled by configuration.")

        if self.settings.relay_enabled:
            self.relay.start()

    async def stop(self) -> None:
        """Stop background tasks gracefully."""
        logger.info("Stopping feed runner...")
        await self.poller.stop_and_wait()
        await self.relay.stop_and_wait()
        close = getattr(self.source, "close", None)
        if close is not None:
            await close()
        logger.info("Feed runner stopped.")

    async def _broadcast_quotes(self, quotes: list[Quote], cycle_ts: int) -> None:
        for q in quotes:
            await self.broadcaster.broadcast_price_update(q.symbol, cycle_ts, q.price)
