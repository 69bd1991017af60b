"""Live quote cache and poller subscription endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..streaming.runner import FeedRunner
from .prices import get_runner

router = APIRouter(prefix="/api/v1", tags=["quotes"])


class SubscriptionRequest(BaseModel):
    symbols: list[str] = Field(..., description="Symbols to poll, e.g. ['BTC-USD', 'ETH-USD']")


@router.get("/quotes")
async def get_quotes(runner: FeedRunner = Depends(get_runner)) -> dict[str, Any]:
    snapshot = runner.cache.snapshot()
    return {
        "count": len(snapshot),
        "quotes": [
            {"symbol": q.symbol, "price": q.price, "bid": q.bid, "ask": q.ask, "time": q.time}
            for _, q in sorted(snapshot.items())
        ],
    }


@router.get("/subscriptions")
async def get_subscriptions(runner: FeedRunner = Depends(get_runner)) -> dict[str, Any]:
    return {
        "handles": len(runner.registry),
        "symbols": sorted(runner.registry.current_union()),
    }


@router.post("/subscriptions")
async def create_subscription(
    req: SubscriptionRequest,
    runner: FeedRunner = Depends(get_runner),
) -> dict[str, Any]:
    handle = runner.registry.subscribe(req.symbols)
    return {"handle": handle, "symbols": sorted(runner.registry.symbols_for(handle) or ())}


@router.put("/subscriptions/{handle}")
async def update_subscription(
    handle: str,
    req: SubscriptionRequest,
    runner: FeedRunner = Depends(get_runner),
) -> dict[str, Any]:
    if not runner.registry.update_subscription(handle, req.symbols):
        raise HTTPException(status_code=404, detail=f"Unknown subscription handle: {handle}")
    return {"handle": handle, "symbols": sorted(runner.registry.symbols_for(handle) or ())}


@router.delete("/subscriptions/{handle}")
async def delete_subscription(handle: str, runner: FeedRunner = Depends(get_runner)) -> dict[str, Any]:
    if not runner.registry.unsubscribe(handle):
        raise HTTPException(status_code=404, detail=f"Unknown subscription handle: {handle}")
    return {"handle": handle, "removed": True}


@router.get("/poller")
async def get_poller_metrics(runner: FeedRunner = Depends(get_runner)) -> dict[str, Any]:
    return runner.poller.metrics()
