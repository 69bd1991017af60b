"""Tests for the SQLite time-series store using a real temporary database."""

import pytest
import pytest_asyncio

from marketfeed.errors import InvalidRequest, StorageUnavailable
from marketfeed.providers.base import ChartBucket, PricePoint, TickRecord
from marketfeed.storage.sqlite import TimeSeriesStore
from marketfeed.storage.ticks import SQLiteTickSink


BASE_TS = 1_700_000_100  # Multiple of 300


def points(symbol, start, count, step=60, price=100.0, slope=1.0):
    return [PricePoint(symbol, start + i * step, price + i * slope) for i in range(count)]


@pytest_asyncio.fixture
async def store(tmp_path):
    s = TimeSeriesStore(str(tmp_path / "prices.db"))
    await s.init()
    return s


@pytest.mark.asyncio
async def test_upsert_is_idempotent_and_overwrites(store):
    batch = points("BTC-USD", BASE_TS, 5)

    assert await store.upsert("BTC-USD", batch) == 5
    assert await store.upsert("BTC-USD", batch) == 5
    assert await store.count("BTC-USD") == 5

    await store.upsert("BTC-USD", [PricePoint("BTC-USD", BASE_TS, 999.0)])
    rows = await store.query("BTC-USD", start=BASE_TS, end=BASE_TS)
    assert rows == [PricePoint("BTC-USD", BASE_TS, 999.0)]


@pytest.mark.asyncio
async def test_failing_point_is_skipped_without_aborting_batch(store):
    batch = [
        PricePoint("ETH-USD", BASE_TS, 3200.0),
        PricePoint("ETH-USD", BASE_TS + 60, -1.0),  # Violates price >= 0
        PricePoint("ETH-USD", BASE_TS + 120, 3210.0),
    ]

    assert await store.upsert("ETH-USD", batch) == 2
    rows = await store.query("ETH-USD")
    assert [r.timestamp for r in rows] == [BASE_TS, BASE_TS + 120]


@pytest.mark.asyncio
async def test_symbol_is_normalized(store):
    await store.upsert(" btc-usd ", points("ignored", BASE_TS, 2))

    rows = await store.query("BTC-USD")
    assert len(rows) == 2
    assert all(r.symbol == "BTC-USD" for r in rows)
    assert await store.distinct_symbols() == {"BTC-USD"}


@pytest.mark.asyncio
async def test_upsert_requires_symbol(store):
    with pytest.raises(InvalidRequest):
        await store.upsert("  ", points("X", BASE_TS, 1))
    assert await store.upsert("BTC-USD", []) == 0


@pytest.mark.asyncio
async def test_query_bounds_are_inclusive_and_ascending(store):
    await store.upsert("BTC-USD", points("BTC-USD", BASE_TS, 10))

    rows = await store.query("BTC-USD", start=BASE_TS + 60, end=BASE_TS + 240)

    assert [r.timestamp for r in rows] == [BASE_TS + 60, BASE_TS + 120, BASE_TS + 180, BASE_TS + 240]


@pytest.mark.asyncio
async def test_query_limit_head_and_tail(store):
    await store.upsert("BTC-USD", points("BTC-USD", BASE_TS, 10))

    head = await store.query("BTC-USD", limit=3)
    tail = await store.query("BTC-USD", limit=3, tail=True)

    assert [r.timestamp for r in head] == [BASE_TS, BASE_TS + 60, BASE_TS + 120]
    assert [r.timestamp for r in tail] == [BASE_TS + 420, BASE_TS + 480, BASE_TS + 540]


@pytest.mark.asyncio
async def test_query_days_uses_reference_time(store):
    now = BASE_TS + 10 * 86400
    await store.upsert("BTC-USD", [
        PricePoint("BTC-USD", now - 3 * 86400, 1.0),
        PricePoint("BTC-USD", now - 86400 + 1, 2.0),
        PricePoint("BTC-USD", now, 3.0),
    ])

    rows = await store.query_days("BTC-USD", 1, now=now)
    assert [r.price for r in rows] == [2.0, 3.0]


@pytest.mark.asyncio
async def test_latest_timestamp_and_point(store):
    assert await store.latest_timestamp("BTC-USD") is None

    await store.upsert("BTC-USD", points("BTC-USD", BASE_TS, 4))

    assert await store.latest_timestamp("BTC-USD") == BASE_TS + 180
    latest = await store.latest_point("BTC-USD")
    assert latest.timestamp == BASE_TS + 180
    assert await store.latest_point("BTC-USD", start=BASE_TS + 181) is None


@pytest.mark.asyncio
async def test_aggregate_buckets(store):
    await store.upsert("BTC-USD", [
        PricePoint("BTC-USD", BASE_TS, 10.0),
        PricePoint("BTC-USD", BASE_TS + 100, 20.0),
        PricePoint("BTC-USD", BASE_TS + 299, 30.0),
        PricePoint("BTC-USD", BASE_TS + 300, 50.0),
    ])

    buckets = await store.aggregate("BTC-USD", BASE_TS, BASE_TS + 600, 300)

    assert buckets == [
        ChartBucket(timestamp=BASE_TS, avg=20.0, min=10.0, max=30.0, count=3),
        ChartBucket(timestamp=BASE_TS + 300, avg=50.0, min=50.0, max=50.0, count=1),
    ]


@pytest.mark.asyncio
async def test_aggregate_without_bucket_is_plain_range(store):
    batch = points("BTC-USD", BASE_TS, 3)
    await store.upsert("BTC-USD", batch)

    rows = await store.aggregate("BTC-USD", BASE_TS, BASE_TS + 3600)
    assert rows == batch


@pytest.mark.asyncio
async def test_stats(store):
    empty = await store.stats()
    assert empty.total_records == 0
    assert empty.oldest_timestamp is None

    await store.upsert("BTC-USD", points("BTC-USD", BASE_TS, 3))
    await store.upsert("ETH-USD", points("ETH-USD", BASE_TS + 1000, 2))

    stats = (await store.stats()).to_dict()
    assert stats == {
        "totalRecords": 5,
        "symbols": 2,
        "oldestTimestamp": BASE_TS,
        "newestTimestamp": BASE_TS + 1060,
    }


@pytest.mark.asyncio
async def test_unopenable_database_raises_storage_unavailable(tmp_path):
    # A directory cannot be opened as a database file
    store = TimeSeriesStore(str(tmp_path))

    with pytest.raises(StorageUnavailable):
        await store.init()


@pytest.mark.asyncio
async def test_tick_sink_appends_rows(tmp_path):
    sink = SQLiteTickSink(str(tmp_path / "ticks.db"))
    await sink.init()

    await sink.insert_ticks([
        TickRecord("BTC-USD", 1.5, 64990.0, 65010.0, 65000.0),
        TickRecord("BTC-USD", 1.5, None, 65010.0, 65010.0),
    ])
    await sink.insert_ticks([])

    assert sink.inserted == 2


@pytest.mark.asyncio
async def test_out_of_range_and_non_numeric_points_are_skipped(store):
    batch = [
        PricePoint("BTC-USD", BASE_TS, 1.0),
        PricePoint("BTC-USD", 10**20, 2.0),  # Too large for SQLite INTEGER
        PricePoint("BTC-USD", BASE_TS + 60, None),
        PricePoint("BTC-USD", BASE_TS + 120, "abc"),
        PricePoint("BTC-USD", BASE_TS + 180, 4.0),
    ]

    assert await store.upsert("BTC-USD", batch) == 2
    rows = await store.query("BTC-USD")
    assert [(r.timestamp, r.price) for r in rows] == [(BASE_TS, 1.0), (BASE_TS + 180, 4.0)]


@pytest.mark.asyncio
async def test_query_rejects_non_positive_limit(store):
    with pytest.raises(InvalidRequest):
        await store.query("BTC-USD", limit=0)
    with pytest.raises(InvalidRequest):
        await store.query("BTC-USD", limit=-5)
