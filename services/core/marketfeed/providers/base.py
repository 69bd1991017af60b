"""Base types and protocols for market data sources and sinks."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Iterable, Protocol


# Timestamps above this are treated as milliseconds
MS_TIMESTAMP_THRESHOLD = 1e10

# 9999-12-31T23:59:59Z, the last second datetime can represent
MAX_TIMESTAMP_SECONDS = 253402300799


def normalize_symbol(raw: str | None) -> str | None:
    """Trim and uppercase a symbol. Returns None for blank input."""
    if raw is None:
        return None
    value = str(raw).strip().upper()
    return value or None


def normalize_symbols(raw: Iterable[str] | None) -> set[str]:
    """Normalize a collection of symbols, dropping blanks."""
    out: set[str] = set()
    for s in raw or ():
        value = normalize_symbol(s)
        if value:
            out.add(value)
    return out


def normalize_timestamp(value: float | int) -> int:
    """Convert a unix timestamp to whole seconds (ms values are divided by 1000)."""
    ts = float(value)
    if ts > MS_TIMESTAMP_THRESHOLD:
        ts = ts / 1000.0
    return int(math.floor(ts))


@dataclass
class Quote:
    """Instantaneous market snapshot. Last value wins per symbol in the cache."""
    symbol: str
    price: float
    bid: float | None = None
    ask: float | None = None
    time: float = field(default_factory=time.time)  # Unix seconds, fractional

    @classmethod
    def from_bid_ask(
        cls,
        symbol: str,
        bid: float | None,
        ask: float | None,
        ts: float | None = None,
    ) -> Quote | None:
        """
        Build a quote from bid/ask sides.

        Price is the midpoint when both sides exist, otherwise whichever side
        is present. Returns None when neither side is available.
        """
        if bid is not None and ask is not None:
            price = (bid + ask) / 2.0
        elif ask is not None:
            price = ask
        elif bid is not None:
            price = bid
        else:
            return None
        return cls(
            symbol=normalize_symbol(symbol) or symbol,
            price=price,
            bid=bid,
            ask=ask,
            time=ts if ts is not None else time.time(),
        )


@dataclass(frozen=True)
class PricePoint:
    """Persisted time-series sample. Unique per (symbol, timestamp)."""
    symbol: str
    timestamp: int  # Unix timestamp in seconds
    price: float

    def to_dict(self) -> dict[str, float | int]:
        return {"timestamp": self.timestamp, "price": self.price}


@dataclass
class TickRecord:
    """One bid/ask/mid sample produced during live polling."""
    symbol: str
    timestamp: float
    bid: float | None
    ask: float | None
    mid: float

    @classmethod
    def from_quote(cls, quote: Quote) -> TickRecord:
        return cls(
            symbol=quote.symbol,
            timestamp=quote.time,
            bid=quote.bid,
            ask=quote.ask,
            mid=quote.price,
        )


@dataclass(frozen=True)
class ChartBucket:
    """Aggregated price bucket for charting. Derived, never persisted."""
    timestamp: int  # Bucket floor
    avg: float
    min: float
    max: float
    count: int = 1

    def to_dict(self) -> dict[str, float | int]:
        return {
            "timestamp": self.timestamp,
            "price": self.avg,
            "min": self.min,
            "max": self.max,
            "count": self.count,
        }


class PriceSource(Protocol):
    """Live quote source. Must raise RateLimited distinctly from other errors."""

    async def fetch_quotes(self, symbols: list[str]) -> list[Quote]:
        ...


class HistorySource(Protocol):
    """Historical price source used for backfill."""

    async def fetch_history(
        self,
        symbol: str,
        span: str,
        since: int | None = None,
    ) -> list[PricePoint]:
        """
        Fetch historical points for a symbol.

        Args:
            symbol: Normalized symbol (e.g., "BTC-USD")
            span: Span keyword understood by the source ("day", "week", "year", ...)
            since: Optional cursor; sources may use it to skip older data
        """
        ...


class IngestionSink(Protocol):
    """Downstream tick ingestion. Raises on failure."""

    async def insert_ticks(self, records: list[TickRecord]) -> None:
        ...
