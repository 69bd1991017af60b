"""
Price data REST endpoints consumed by charting clients.

Stores posted price points and serves raw, aggregated and downsampled ranges
from the time-series store.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..charting.downsample import downsample_for_chart
from ..providers.base import MAX_TIMESTAMP_SECONDS, PricePoint, normalize_symbol, normalize_timestamp
from ..streaming.runner import FeedRunner
from ..utils.timeframes import interval_to_seconds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/data", tags=["price data"])


def get_runner(request: Request) -> FeedRunner:
    """Runner instance attached to the app at startup."""
    runner = getattr(request.app.state, "runner", None)
    if runner is None:
        raise HTTPException(status_code=500, detail="Runner not initialized")
    return runner


class PriceIngestRequest(BaseModel):
    """Body for POST /price. Points are validated individually."""
    symbol: Optional[str] = None
    dataPoints: Optional[list[Any]] = Field(
        None,
        description="Array of {timestamp, price}; ms timestamps are converted to seconds",
    )


def _iso(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def parse_date_param(value: Optional[str], name: str) -> Optional[int]:
    """Accept epoch seconds/milliseconds or an ISO-8601 date."""
    if value is None or value == "":
        return None
    try:
        return normalize_timestamp(float(value))
    except (ValueError, OverflowError):
        pass
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be an ISO date or unix timestamp")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _valid_point(point: Any) -> bool:
    if not isinstance(point, dict):
        return False
    ts = point.get("timestamp")
    price = point.get("price")
    if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not ts:
        return False
    if isinstance(price, bool) or not isinstance(price, (int, float)) or not math.isfinite(price):
        return False
    try:
        seconds = normalize_timestamp(ts)
    except (OverflowError, ValueError):
        return False
    return 0 < seconds <= MAX_TIMESTAMP_SECONDS


def _require_symbol(symbol: str) -> str:
    sym = normalize_symbol(symbol)
    if not sym:
        raise HTTPException(status_code=400, detail="symbol is required")
    return sym


@router.post("/price")
async def store_price_data(
    req: PriceIngestRequest,
    runner: FeedRunner = Depends(get_runner),
) -> dict[str, Any]:
    """
    Store price points for a symbol and push the newest one to stream listeners.

    Example body:
        {"symbol": "BTC-USD", "dataPoints": [{"timestamp": 1704067200, "price": 42000.5}]}
    """
    if not req.symbol or req.dataPoints is None:
        raise HTTPException(
            status_code=400,
            detail="Invalid request. Expected { symbol: string, dataPoints: array }",
        )
    symbol = _require_symbol(req.symbol)

    valid = [p for p in req.dataPoints if _valid_point(p)]
    if not valid:
        raise HTTPException(status_code=400, detail="No valid data points provided")

    points = [
        PricePoint(symbol, normalize_timestamp(p["timestamp"]), float(p["price"]))
        for p in valid
    ]
    inserted = await runner.store.upsert(symbol, points)
    logger.info(f"Stored {inserted}/{len(points)} posted points for {symbol}")

    latest = points[-1]
    await runner.broadcaster.broadcast_price_update(symbol, latest.timestamp, latest.price)

    return {
        "success": True,
        "symbol": symbol,
        "inserted": inserted,
        "total": len(points),
    }


@router.get("/price/{symbol}")
async def get_price_data(
    symbol: str,
    startDate: Optional[str] = Query(None, description="ISO date or unix timestamp"),
    endDate: Optional[str] = Query(None, description="ISO date or unix timestamp"),
    limit: Optional[int] = Query(None, ge=1, le=100000),
    runner: FeedRunner = Depends(get_runner),
) -> dict[str, Any]:
    sym = _require_symbol(symbol)
    start = parse_date_param(startDate, "startDate")
    end = parse_date_param(endDate, "endDate")
    points = await runner.store.query(sym, start=start, end=end, limit=limit)
    return {
        "success": True,
        "symbol": sym,
        "count": len(points),
        "data": [p.to_dict() for p in points],
    }


@router.get("/price/{symbol}/filter")
async def get_filtered_price_data(
    symbol: str,
    days: Optional[str] = Query(None, description="Number of days back from now"),
    interval: Optional[str] = Query(None, description="Bucket width: seconds or like 5m, 1h"),
    downsample: bool = Query(False, description="Downsample to ~target points when no interval given"),
    target: int = Query(120, ge=2, le=5000),
    runner: FeedRunner = Depends(get_runner),
) -> dict[str, Any]:
    """
    Price data for the last N days, optionally bucketed.

    With `interval` the store aggregates avg/min/max/count per bucket. With
    `downsample=true` and no interval, a bucket width is chosen from the span.
    """
    sym = _require_symbol(symbol)
    if not days:
        raise HTTPException(status_code=400, detail="days parameter is required")
    try:
        days_num = int(days)
    except ValueError:
        days_num = 0
    if days_num <= 0:
        raise HTTPException(status_code=400, detail="days must be a positive number")

    interval_seconds: Optional[int] = None
    if interval:
        try:
            interval_seconds = interval_to_seconds(interval)
        except ValueError:
            raise HTTPException(status_code=400, detail="interval must be a positive number (seconds)")

    end = int(time.time())
    start = end - days_num * 86400

    if interval_seconds:
        buckets = await runner.store.aggregate(sym, start, end, interval_seconds)
        data = [b.to_dict() for b in buckets]
    else:
        points = await runner.store.query(sym, start=start, end=end)
        if downsample:
            points, width = downsample_for_chart(points, target)
            interval_seconds = int(width) if width else None
        data = [p.to_dict() for p in points]

    return {
        "success": True,
        "symbol": sym,
        "days": days_num,
        "interval": interval_seconds,
        "count": len(data),
        "data": data,
    }


@router.get("/{symbol}/latest")
async def get_latest_timestamp(
    symbol: str,
    runner: FeedRunner = Depends(get_runner),
) -> dict[str, Any]:
    sym = _require_symbol(symbol)
    latest = await runner.store.latest_timestamp(sym)
    if latest is None:
        raise HTTPException(status_code=404, detail="No data found for symbol")
    return {
        "success": True,
        "symbol": sym,
        "latestTimestamp": latest,
        "latestDate": _iso(latest),
    }


@router.get("/symbols")
async def get_symbols(runner: FeedRunner = Depends(get_runner)) -> dict[str, Any]:
    symbols = sorted(await runner.store.distinct_symbols())
    return {"success": True, "count": len(symbols), "symbols": symbols}


@router.get("/stats")
async def get_stats(runner: FeedRunner = Depends(get_runner)) -> dict[str, Any]:
    stats = (await runner.store.stats()).to_dict()
    stats["oldestDate"] = _iso(stats["oldestTimestamp"])
    stats["newestDate"] = _iso(stats["newestTimestamp"])
    return {"success": True, "stats": stats, "stream": runner.broadcaster.stats()}
