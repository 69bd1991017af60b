"""Push fan-out of price updates to subscribed stream connections."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Protocol

from starlette.websockets import WebSocket, WebSocketState

from ..errors import StorageUnavailable
from ..providers.base import normalize_symbol
from ..storage.sqlite import TimeSeriesStore


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class Connection(Protocol):
    """Minimal duplex connection the broadcaster pushes JSON events to."""

    @property
    def is_open(self) -> bool:
        ...

    async def send_json(self, data: dict[str, Any]) -> None:
        ...


class WebSocketConnection:
    """Adapts a FastAPI/Starlette WebSocket to the Connection protocol."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: dict[str, Any]) -> None:
        await self.websocket.send_json(data)


class StreamBroadcaster:
    """
    Maintains symbol -> listener sets and pushes price events.

    Connections move Connected -> Subscribed(symbols) -> Disconnected. On first
    subscription to a symbol a connection receives a bounded slice of recent
    history. Listeners that are closed or fail to receive are dropped through
    the same path as an explicit disconnect, so one dead listener never aborts
    a broadcast.
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        history_window: int = 3600,
        history_limit: int = 100,
        welcome_message: str = "Connected to market data stream",
    ):
        self.store = store
        self.history_window = history_window
        self.history_limit = history_limit
        self.welcome_message = welcome_message
        self.clients: dict[Connection, set[str]] = {}
        self.subscriptions: dict[str, set[Connection]] = {}
        # symbol -> timestamp of the last price event pushed
        self.last_sent: dict[str, int] = {}

    async def connect(self, conn: Connection) -> None:
        """Register a new connection and acknowledge it."""
        self.clients[conn] = set()
        logger.info(f"Stream client connected. Total clients: {len(self.clients)}")
        await self._send(conn, {
            "type": "connected",
            "message": self.welcome_message,
            "timestamp": _now_ms(),
        })

    async def handle_message(self, conn: Connection, raw: str) -> None:
        """Decode and dispatch one client message. Errors never close the connection."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            await self._error(conn, "Invalid message format")
            return
        if not isinstance(data, dict):
            await self._error(conn, "Invalid message format")
            return

        msg_type = data.get("type")
        if msg_type == "subscribe":
            await self.subscribe(conn, data.get("symbols"))
        elif msg_type == "unsubscribe":
            await self.unsubscribe(conn, data.get("symbols"))
        elif msg_type == "getLatest":
            await self.get_latest(conn, data.get("symbol"))
        else:
            await self._error(conn, f"Unknown message type: {msg_type}")

    @staticmethod
    def _symbol_list(symbols: Any) -> list[str] | None:
        if not isinstance(symbols, (list, tuple, set, frozenset)) or not symbols:
            return None
        out: list[str] = []
        for s in symbols:
            value = normalize_symbol(s) if isinstance(s, str) else None
            if value and value not in out:
                out.append(value)
        return out or None

    async def subscribe(self, conn: Connection, symbols: Any) -> None:
        """
        Add the connection as a listener for each symbol.

        Newly subscribed symbols get a one-off `historical` event (sent only
        to this connection) before the `subscribed` acknowledgement.
        """
        requested = self._symbol_list(symbols)
        if requested is None:
            await self._error(conn, "symbols must be a non-empty array")
            return

        client_symbols = self.clients.setdefault(conn, set())
        newly_added: list[str] = []
        for symbol in requested:
            if symbol not in client_symbols:
                newly_added.append(symbol)
            client_symbols.add(symbol)
            self.subscriptions.setdefault(symbol, set()).add(conn)

        for symbol in newly_added:
            await self._send_history(conn, symbol)

        await self._send(conn, {
            "type": "subscribed",
            "symbols": requested,
            "timestamp": _now_ms(),
        })
        logger.info(f"Client subscribed to: {', '.join(requested)}")

    async def _send_history(self, conn: Connection, symbol: str) -> None:
        end = int(time.time())
        try:
            points = await self.store.query(
                symbol,
                start=end - self.history_window,
                end=end,
                limit=self.history_limit,
                tail=True,
            )
        except StorageUnavailable as e:
            logger.error(f"Error sending initial data for {symbol}: {e}")
            return
        if not points:
            return
        await self._send(conn, {
            "type": "historical",
            "symbol": symbol,
            "data": [p.to_dict() for p in points],
            "timestamp": _now_ms(),
        })

    async def unsubscribe(self, conn: Connection, symbols: Any) -> None:
        requested = self._symbol_list(symbols)
        if requested is None:
            await self._error(conn, "symbols must be a non-empty array")
            return

        client_symbols = self.clients.get(conn)
        for symbol in requested:
            if client_symbols is not None:
                client_symbols.discard(symbol)
            self._remove_listener(symbol, conn)

        await self._send(conn, {
            "type": "unsubscribed",
            "symbols": requested,
            "timestamp": _now_ms(),
        })
        logger.info(f"Client unsubscribed from: {', '.join(requested)}")

    async def get_latest(self, conn: Connection, symbol: Any) -> None:
        """Send the newest point within the history window to this connection only."""
        sym = normalize_symbol(symbol) if isinstance(symbol, str) else None
        if not sym:
            await self._error(conn, "symbol is required")
            return
        try:
            point = await self.store.latest_point(sym, start=int(time.time()) - self.history_window)
        except StorageUnavailable as e:
            logger.error(f"Error getting latest for {sym}: {e}")
            await self._error(conn, f"Failed to get latest data for {sym}")
            return
        await self._send(conn, {
            "type": "latest",
            "symbol": sym,
            "data": point.to_dict() if point else None,
            "timestamp": _now_ms(),
        })

    def disconnect(self, conn: Connection) -> None:
        """Forget a connection everywhere. Idempotent."""
        client_symbols = self.clients.pop(conn, None)
        if client_symbols is None:
            return
        for symbol in client_symbols:
            self._remove_listener(symbol, conn)
        logger.info(f"Stream client disconnected. Total clients: {len(self.clients)}")

    def _remove_listener(self, symbol: str, conn: Connection) -> None:
        listeners = self.subscriptions.get(symbol)
        if listeners is None:
            return
        listeners.discard(conn)
        if not listeners:
            del self.subscriptions[symbol]
            self.last_sent.pop(symbol, None)

    async def broadcast_price_update(self, symbol: str, timestamp: int, price: float) -> int:
        """
        Push a price event to every listener of `symbol`.

        Returns:
            Number of listeners the event was delivered to
        """
        sym = normalize_symbol(symbol)
        listeners = self.subscriptions.get(sym or "")
        if not listeners:
            return 0

        message = {
            "type": "price",
            "symbol": sym,
            "timestamp": timestamp,
            "price": price,
            "serverTime": _now_ms(),
        }
        self.last_sent[sym] = max(timestamp, self.last_sent.get(sym, timestamp))
        delivered = 0
        dead: list[Connection] = []
        for conn in list(listeners):
            if not conn.is_open:
                dead.append(conn)
                continue
            try:
                await conn.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping stream listener for {sym}: {e}")
                dead.append(conn)

        for conn in dead:
            self.disconnect(conn)
        return delivered

    def listeners(self, symbol: str) -> set[Connection]:
        return set(self.subscriptions.get(normalize_symbol(symbol) or "", ()))

    def subscribed_symbols(self) -> list[str]:
        return sorted(self.subscriptions)

    def stats(self) -> dict[str, Any]:
        return {
            "totalClients": len(self.clients),
            "totalSubscriptions": len(self.subscriptions),
            "symbols": self.subscribed_symbols(),
        }

    async def _error(self, conn: Connection, message: str) -> None:
        await self._send(conn, {"type": "error", "message": message})

    async def _send(self, conn: Connection, data: dict[str, Any]) -> None:
        # Direct replies: a failed send means the peer is gone
        try:
            await conn.send_json(data)
        except Exception as e:
            logger.warning(f"Send to stream client failed: {e}")
            self.disconnect(conn)


class LatestPriceRelay:
    """
    Periodically re-broadcasts each subscribed symbol's newest stored price.

    Covers writers that bypass the poller (REST ingestion from other
    processes, backfill). Only symbols with listeners are considered, and a
    point is skipped unless it is newer than the last price event already
    pushed for its symbol.
    """

    def __init__(
        self,
        broadcaster: StreamBroadcaster,
        store: TimeSeriesStore,
        interval: float = 5.0,
        max_symbols: int = 50,
        lookback: int = 60,
    ):
        self.broadcaster = broadcaster
        self.store = store
        self.interval = interval
        self.max_symbols = max_symbols
        self.lookback = lookback
        self._task: asyncio.Task | None = None

    async def relay_once(self, now: int | None = None) -> int:
        ref = int(time.time()) if now is None else now
        sent = 0
        for symbol in self.broadcaster.subscribed_symbols()[: self.max_symbols]:
            try:
                point = await self.store.latest_point(symbol, start=ref - self.lookback)
            except StorageUnavailable as e:
                logger.debug(f"Relay skipped {symbol}: {e}")
                continue
            if point is None or point.timestamp <= self.broadcaster.last_sent.get(symbol, -1):
                continue
            await self.broadcaster.broadcast_price_update(symbol, point.timestamp, point.price)
            sent += 1
        return sent

    def start(self) -> None:
        self.stop()
        self._task = asyncio.create_task(self._run(), name="latest-price-relay")

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def stop_and_wait(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.relay_once()
                except Exception as e:
                    logger.error(f"Error broadcasting latest prices: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Latest price relay cancelled.")
            raise
