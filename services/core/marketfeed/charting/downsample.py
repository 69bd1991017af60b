"""Pure helpers for bucketing price series into chart-sized resolutions."""

from __future__ import annotations

from enum import IntEnum
from typing import Iterable, Sequence

from ..providers.base import ChartBucket, PricePoint


class BucketWidth(IntEnum):
    """Predefined chart bucket widths in seconds."""
    MINUTE_5 = 300
    MINUTE_15 = 900
    HOUR_1 = 3600
    HOUR_4 = 14400
    DAY_1 = 86400


def snap_width(seconds: float) -> BucketWidth:
    """Smallest predefined width covering `seconds`, else the largest."""
    for width in BucketWidth:
        if seconds <= width:
            return width
    return BucketWidth.DAY_1


def bucket_floor(timestamp: int, width: int) -> int:
    """Bucket start for a timestamp: floor(timestamp / width) * width."""
    return (int(timestamp) // int(width)) * int(width)


def _sorted(points: Sequence[PricePoint]) -> list[PricePoint]:
    # Skip the sort when already ascending
    for i in range(1, len(points)):
        if points[i].timestamp < points[i - 1].timestamp:
            return sorted(points, key=lambda p: p.timestamp)
    return list(points)


def downsample(points: Sequence[PricePoint], width: int) -> list[PricePoint]:
    """
    Collapse points into one averaged point per fixed-width bucket.

    Single pass: a bucket is emitted when a point from a later bucket arrives
    or the input ends. Each output point sits at its bucket's floor timestamp.

    Args:
        points: Price points (sorted first if needed)
        width: Bucket width in seconds

    Returns:
        Downsampled points in ascending order. Inputs of two or fewer points
        are returned unchanged.
    """
    if len(points) <= 2:
        return list(points)
    if width <= 0:
        raise ValueError("width must be positive")

    result: list[PricePoint] = []
    bucket_start: int | None = None
    symbol = ""
    total = 0.0
    count = 0

    for p in _sorted(points):
        current = bucket_floor(p.timestamp, width)
        if bucket_start is not None and current != bucket_start:
            result.append(PricePoint(symbol, bucket_start, total / count))
            total = 0.0
            count = 0
        if count == 0:
            bucket_start = current
            symbol = p.symbol
        total += p.price
        count += 1

    if count and bucket_start is not None:
        result.append(PricePoint(symbol, bucket_start, total / count))
    return result


def bucketize(points: Sequence[PricePoint], width: int) -> list[ChartBucket]:
    """
    Group points into fixed-width buckets keeping avg/min/max/count.

    Inputs of two or fewer points map to one single-point bucket each, at the
    point's own timestamp.
    """
    if len(points) <= 2:
        return [ChartBucket(p.timestamp, p.price, p.price, p.price, 1) for p in points]
    if width <= 0:
        raise ValueError("width must be positive")

    result: list[ChartBucket] = []
    bucket_start: int | None = None
    total = 0.0
    count = 0
    lo = float("inf")
    hi = float("-inf")

    for p in _sorted(points):
        current = bucket_floor(p.timestamp, width)
        if bucket_start is not None and current != bucket_start:
            result.append(_close_bucket(bucket_start, total, count, lo, hi))
            total = 0.0
            count = 0
            lo = float("inf")
            hi = float("-inf")
        bucket_start = current
        total += p.price
        count += 1
        lo = min(lo, p.price)
        hi = max(hi, p.price)

    if count and bucket_start is not None:
        result.append(_close_bucket(bucket_start, total, count, lo, hi))
    return result


def _close_bucket(start: int, total: float, count: int, lo: float, hi: float) -> ChartBucket:
    # Float summation can land the mean a hair outside [lo, hi]
    avg = min(max(total / count, lo), hi)
    return ChartBucket(timestamp=start, avg=avg, min=lo, max=hi, count=count)


def suggested_bucket_width(span_seconds: float, target_point_count: int = 120) -> BucketWidth:
    """
    Pick a bucket width yielding roughly `target_point_count` points.

    Compares span / target against the predefined widths in ascending order
    and returns the first one not exceeded, else the largest.
    """
    approx = span_seconds / max(1, target_point_count)
    return snap_width(approx)


def downsample_for_chart(
    points: Sequence[PricePoint],
    target_point_count: int = 120,
) -> tuple[list[PricePoint], BucketWidth | None]:
    """
    Downsample using the width suggested by the points' own time span.

    Returns:
        (points, width) where width is None when the input was returned as-is
    """
    if len(points) <= 2:
        return list(points), None
    width = suggested_bucket_width(span_of(points), target_point_count)
    return downsample(points, width), width


def span_of(points: Iterable[PricePoint]) -> int:
    timestamps = [p.timestamp for p in points]
    if not timestamps:
        return 0
    return max(timestamps) - min(timestamps)
