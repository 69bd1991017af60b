"""
API tests through FastAPI's TestClient.

The runner is built with a fake price source, and polling and relaying are
switched off so every stored point comes from the test itself.
"""

import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from marketfeed.config import Settings
from marketfeed.errors import StorageUnavailable
from marketfeed.main import create_app
from marketfeed.providers.base import Quote
from marketfeed.storage.sqlite import TimeSeriesStore
from marketfeed.storage.ticks import NullTickSink
from marketfeed.streaming.runner import FeedRunner


class StaticSource:
    async def fetch_quotes(self, symbols):
        return [Quote(s, 1.0) for s in symbols]


@pytest.fixture
def runner(tmp_path):
    settings = Settings(
        sqlite_path=str(tmp_path / "api.db"),
        default_symbols="",
        poller_enabled=False,
        relay_enabled=False,
    )
    store = TimeSeriesStore(settings.sqlite_path)
    return FeedRunner(settings, store, source=StaticSource(), sink=NullTickSink())


@pytest.fixture
def client(runner):
    app = create_app(runner.settings, runner)
    with TestClient(app) as c:
        yield c


def post_points(client, symbol, points):
    return client.post("/api/v1/data/price", json={"symbol": symbol, "dataPoints": points})


class TestPriceIngest:

    def test_store_and_read_back(self, client):
        resp = post_points(client, "btc-usd", [
            {"timestamp": 1704067200000, "price": 42000.5},  # Milliseconds
            {"timestamp": 1704067260, "price": 42010.0},
        ])

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "symbol": "BTC-USD", "inserted": 2, "total": 2}

        data = client.get("/api/v1/data/price/BTC-USD").json()
        assert data["count"] == 2
        assert data["data"] == [
            {"timestamp": 1704067200, "price": 42000.5},
            {"timestamp": 1704067260, "price": 42010.0},
        ]

    def test_missing_fields_rejected(self, client):
        resp = client.post("/api/v1/data/price", json={"symbol": "BTC-USD"})

        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid request. Expected { symbol: string, dataPoints: array }"

    def test_no_valid_points_rejected(self, client):
        resp = post_points(client, "BTC-USD", [{"timestamp": "x", "price": 1}, {"price": 2}, 7])

        assert resp.status_code == 400
        assert resp.json()["error"] == "No valid data points provided"

    def test_malformed_body_is_bad_request(self, client):
        resp = client.post("/api/v1/data/price", json={"symbol": "BTC-USD", "dataPoints": "nope"})
        assert resp.status_code == 400

    def test_out_of_range_timestamps_are_dropped(self, client):
        resp = post_points(client, "BTC-USD", [
            {"timestamp": 1704067200, "price": 1.0},
            {"timestamp": 1e25, "price": 2.0},
        ])

        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert resp.json()["inserted"] == 1
        assert client.get("/api/v1/data/price/BTC-USD").json()["count"] == 1

        only_bad = post_points(client, "BTC-USD", [{"timestamp": 1e25, "price": 2.0}])
        assert only_bad.status_code == 400

    def test_rejected_points_are_reported(self, client):
        resp = post_points(client, "ETH-USD", [
            {"timestamp": 1704067200, "price": 2300.0},
            {"timestamp": 1704067260, "price": -5.0},
        ])

        assert resp.status_code == 200
        assert resp.json()["inserted"] == 1
        assert resp.json()["total"] == 2


class TestPriceQueries:

    def test_range_and_limit(self, client):
        post_points(client, "BTC-USD", [{"timestamp": 1704067200 + i * 60, "price": 100 + i} for i in range(10)])

        resp = client.get(
            "/api/v1/data/price/BTC-USD",
            params={"startDate": "2024-01-01T00:01:00Z", "endDate": str(1704067200 + 300), "limit": 3},
        )

        assert [p["timestamp"] for p in resp.json()["data"]] == [1704067260, 1704067320, 1704067380]

    def test_bad_date_rejected(self, client):
        resp = client.get("/api/v1/data/price/BTC-USD", params={"startDate": "yesterday-ish"})
        assert resp.status_code == 400

    def test_filter_requires_positive_days(self, client):
        assert client.get("/api/v1/data/price/BTC-USD/filter").status_code == 400
        assert client.get("/api/v1/data/price/BTC-USD/filter", params={"days": "abc"}).status_code == 400
        assert client.get("/api/v1/data/price/BTC-USD/filter", params={"days": "-1"}).status_code == 400

    def test_filter_with_interval_aggregates(self, client):
        now = int(time.time())
        base = (now - 3600) // 300 * 300
        post_points(client, "BTC-USD", [
            {"timestamp": base, "price": 10.0},
            {"timestamp": base + 60, "price": 30.0},
            {"timestamp": base + 300, "price": 50.0},
        ])

        resp = client.get("/api/v1/data/price/BTC-USD/filter", params={"days": 1, "interval": "5m"})

        body = resp.json()
        assert body["interval"] == 300
        assert body["data"] == [
            {"timestamp": base, "price": 20.0, "min": 10.0, "max": 30.0, "count": 2},
            {"timestamp": base + 300, "price": 50.0, "min": 50.0, "max": 50.0, "count": 1},
        ]

    def test_filter_rejects_bad_interval(self, client):
        resp = client.get("/api/v1/data/price/BTC-USD/filter", params={"days": 1, "interval": "soon"})
        assert resp.status_code == 400

    def test_filter_downsample(self, client):
        now = int(time.time())
        post_points(client, "ETH-USD", [
            {"timestamp": now - 86000 + i * 60, "price": 2000.0 + i} for i in range(1000)
        ])

        resp = client.get(
            "/api/v1/data/price/ETH-USD/filter",
            params={"days": 1, "downsample": "true", "target": 120},
        )

        body = resp.json()
        assert body["interval"] == 900
        assert 0 < body["count"] < 1000

    def test_latest(self, client):
        assert client.get("/api/v1/data/BTC-USD/latest").status_code == 404
        assert client.get("/api/v1/data/BTC-USD/latest").json() == {"error": "No data found for symbol"}

        post_points(client, "BTC-USD", [{"timestamp": 1704067200, "price": 1.0}])
        body = client.get("/api/v1/data/btc-usd/latest").json()

        assert body["latestTimestamp"] == 1704067200
        assert body["latestDate"] == "2024-01-01T00:00:00Z"

    def test_symbols_and_stats(self, client):
        post_points(client, "BTC-USD", [{"timestamp": 1704067200, "price": 1.0}])
        post_points(client, "ETH-USD", [{"timestamp": 1704067260, "price": 2.0}])

        assert client.get("/api/v1/data/symbols").json()["symbols"] == ["BTC-USD", "ETH-USD"]

        body = client.get("/api/v1/data/stats").json()
        assert body["stats"]["totalRecords"] == 2
        assert body["stats"]["oldestDate"] == "2024-01-01T00:00:00Z"
        assert body["stream"]["totalClients"] == 0

    def test_storage_failure_maps_to_503(self, client, runner):
        runner.store.query = AsyncMock(side_effect=StorageUnavailable("disk gone"))

        resp = client.get("/api/v1/data/price/BTC-USD")

        assert resp.status_code == 503
        assert resp.json() == {"error": "Storage unavailable", "message": "disk gone"}


class TestQuotesAndSubscriptions:

    def test_subscription_lifecycle(self, client):
        created = client.post("/api/v1/subscriptions", json={"symbols": ["btc-usd", "ETH-USD"]}).json()
        handle = created["handle"]
        assert created["symbols"] == ["BTC-USD", "ETH-USD"]

        assert client.get("/api/v1/subscriptions").json() == {"handles": 1, "symbols": ["BTC-USD", "ETH-USD"]}

        updated = client.put(f"/api/v1/subscriptions/{handle}", json={"symbols": ["SOL-USD"]})
        assert updated.json()["symbols"] == ["SOL-USD"]

        assert client.delete(f"/api/v1/subscriptions/{handle}").status_code == 200
        assert client.get("/api/v1/subscriptions").json()["symbols"] == []

    def test_unknown_handle_is_404(self, client):
        assert client.put("/api/v1/subscriptions/nope", json={"symbols": ["X"]}).status_code == 404
        assert client.delete("/api/v1/subscriptions/nope").status_code == 404

    def test_quotes_from_cache(self, client, runner):
        runner.cache.upsert(Quote("BTC-USD", 65000.0, bid=64990.0, ask=65010.0, time=1.0))

        body = client.get("/api/v1/quotes").json()

        assert body["count"] == 1
        assert body["quotes"][0] == {"symbol": "BTC-USD", "price": 65000.0, "bid": 64990.0, "ask": 65010.0, "time": 1.0}

    def test_poller_metrics_and_health(self, client):
        assert client.get("/api/v1/poller").json()["running"] is False
        health = client.get("/health").json()
        assert health["ok"] is True
        assert health["poller"] is False


class TestWebSocket:

    def test_subscribe_receives_history_and_live_updates(self, client):
        now = int(time.time())
        post_points(client, "BTC-USD", [{"timestamp": now - 60, "price": 64000.0}])

        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"

            ws.send_json({"type": "subscribe", "symbols": ["BTC-USD"]})
            historical = ws.receive_json()
            assert historical["type"] == "historical"
            assert historical["data"] == [{"timestamp": now - 60, "price": 64000.0}]
            assert ws.receive_json()["type"] == "subscribed"

            post_points(client, "BTC-USD", [{"timestamp": now, "price": 65000.0}])
            update = ws.receive_json()
            assert update["type"] == "price"
            assert update["price"] == 65000.0
            assert update["timestamp"] == now

    def test_invalid_message_keeps_connection_open(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()

            ws.send_text("{broken")
            assert ws.receive_json() == {"type": "error", "message": "Invalid message format"}

            ws.send_json({"type": "getLatest", "symbol": "BTC-USD"})
            latest = ws.receive_json()
            assert latest["type"] == "latest"
            assert latest["data"] is None

    def test_disconnect_cleans_up(self, client, runner):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe", "symbols": ["ETH-USD"]})
            ws.receive_json()

        # Server side handles the close asynchronously
        for _ in range(50):
            if not runner.broadcaster.clients:
                break
            time.sleep(0.02)
        assert runner.broadcaster.stats()["totalClients"] == 0
