"""
Historical price fetcher used for backfill.

Fetches span-based historicals over HTTP and converts them to PricePoints,
the same shape the live poller persists.
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from ..errors import InvalidRequest, NetworkError, error_for_status
from .base import PricePoint, normalize_symbol, normalize_timestamp
from .http_quotes import parse_iso_timestamp


# Span keyword -> sampling interval requested from the API
SPAN_INTERVALS = {
    "hour": "15second",
    "day": "5minute",
    "week": "hour",
    "month": "hour",
    "3month": "day",
    "year": "day",
    "5year": "week",
}


class HTTPHistorySource:
    """
    Fetch historical prices from a span-based historicals endpoint.

    Response shape:
        {"data_points": [{"begins_at": "2024-01-01T00:00:00Z", "close_price": "42000.1"}, ...]}

    Numeric "timestamp" (seconds or milliseconds) and "price" keys are accepted
    as well. Throttling is left to the caller (see HistoryBackfiller).
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def fetch_raw(self, symbol: str, span: str) -> Any:
        if span not in SPAN_INTERVALS:
            raise InvalidRequest(f"Unsupported span '{span}'. Use one of {sorted(SPAN_INTERVALS)}")
        url = f"{self.base_url}/marketdata/historicals/{symbol}/"
        params = {"span": span, "interval": SPAN_INTERVALS[span], "bounds": "24_7"}

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, params=params) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise error_for_status(response.status, text)
                    return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error fetching history for {symbol}: {e}") from e
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Timed out fetching history for {symbol}") from e

    async def fetch_history(
        self,
        symbol: str,
        span: str,
        since: int | None = None,
    ) -> list[PricePoint]:
        sym = normalize_symbol(symbol)
        if not sym:
            raise InvalidRequest("symbol is required")
        data = await self.fetch_raw(sym, span)
        points = self.parse_points(sym, data)
        if since is not None:
            points = [p for p in points if p.timestamp > since]
        return points

    @staticmethod
    def parse_points(symbol: str, data: Any) -> list[PricePoint]:
        """Convert a historicals payload to ascending, de-duplicated PricePoints."""
        if isinstance(data, dict):
            rows = data.get("data_points", data.get("data", []))
        elif isinstance(data, list):
            rows = data
        else:
            raise InvalidRequest("Unexpected historicals response shape")

        by_ts: dict[int, float] = {}
        for row in rows or []:
            if not isinstance(row, dict):
                continue
            raw_ts = row.get("timestamp")
            if isinstance(raw_ts, (int, float)):
                ts = normalize_timestamp(raw_ts)
            else:
                parsed = parse_iso_timestamp(row.get("begins_at") or raw_ts)
                if parsed is None:
                    continue
                ts = int(parsed)
            raw_price = row.get("close_price", row.get("price"))
            try:
                price = float(raw_price)
            except (TypeError, ValueError):
                continue
            by_ts[ts] = price

        return [PricePoint(symbol, ts, by_ts[ts]) for ts in sorted(by_ts)]
