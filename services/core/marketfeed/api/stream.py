"""WebSocket endpoint for live price pushes."""

from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..streaming.broadcaster import WebSocketConnection

router = APIRouter(tags=["stream"])


@router.websocket("/ws")
async def price_stream(websocket: WebSocket) -> None:
    """
    Client -> server: subscribe / unsubscribe / getLatest JSON messages.
    Server -> client: connected, historical, subscribed, unsubscribed,
    price, latest and error events.
    """
    broadcaster = websocket.app.state.runner.broadcaster
    await websocket.accept()
    conn = WebSocketConnection(websocket)
    await broadcaster.connect(conn)

    try:
        while True:
            raw = await websocket.receive_text()
            await broadcaster.handle_message(conn, raw)
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(conn)
