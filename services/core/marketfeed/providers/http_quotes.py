"""Best bid/ask quote source over HTTP."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

import aiohttp

from ..errors import InvalidRequest, NetworkError, RateLimited, error_for_status
from .base import Quote, normalize_symbol


logger = logging.getLogger(__name__)


def parse_iso_timestamp(value: Any) -> float | None:
    """Parse an ISO-8601 timestamp ("2024-01-01T00:00:00Z") to unix seconds."""
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class HTTPQuoteSource:
    """
    Fetches best bid/ask for a batch of symbols in one request.

    Response shape:
        {"results": [{"symbol": "BTC-USD", "bid_inclusive_of_sell_spread": "64990.1",
                      "ask_inclusive_of_buy_spread": "65010.3",
                      "timestamp": "2024-01-01T00:00:00Z"}, ...]}

    Plain "bid"/"ask" keys are accepted as well. HTTP failures are mapped to
    the error taxonomy here so callers never inspect messages.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout_seconds: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def fetch_quotes(self, symbols: list[str]) -> list[Quote]:
        if not symbols:
            return []
        url = f"{self.base_url}/marketdata/best_bid_ask/"
        params = [("symbol", s) for s in symbols]
        session = await self._get_session()

        try:
            async with session.get(url, params=params, headers=self._headers()) as response:
                if response.status != 200:
                    text = await response.text()
                    err = error_for_status(response.status, text)
                    if isinstance(err, RateLimited):
                        err.retry_after = _to_float(response.headers.get("Retry-After"))
                    raise err
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error fetching quotes: {e}") from e
        except asyncio.TimeoutError as e:
            raise NetworkError("Timed out fetching quotes") from e

        return self.parse_quotes(data)

    @staticmethod
    def parse_quotes(data: Any) -> list[Quote]:
        if not isinstance(data, dict) or not isinstance(data.get("results"), list):
            raise InvalidRequest("Unexpected best bid/ask response shape")

        quotes: list[Quote] = []
        for item in data["results"]:
            if not isinstance(item, dict):
                continue
            symbol = normalize_symbol(item.get("symbol"))
            if not symbol:
                continue
            bid = _to_float(item.get("bid_inclusive_of_sell_spread", item.get("bid")))
            ask = _to_float(item.get("ask_inclusive_of_buy_spread", item.get("ask")))
            quote = Quote.from_bid_ask(symbol, bid, ask, parse_iso_timestamp(item.get("timestamp")))
            if quote is None:
                logger.debug(f"No bid/ask for {symbol}; skipping")
                continue
            quotes.append(quote)
        return quotes
