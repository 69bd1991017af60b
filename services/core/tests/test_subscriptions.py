"""Tests for the subscription registry and quote cache."""

import random
import threading

from marketfeed.providers.base import Quote
from marketfeed.streaming.quote_cache import QuoteCache
from marketfeed.streaming.subscriptions import SubscriptionRegistry


class TestSubscriptionRegistry:

    def test_union_across_handles(self):
        registry = SubscriptionRegistry()
        a = registry.subscribe(["BTC-USD", "ETH-USD"])
        b = registry.subscribe(["ETH-USD", "SOL-USD"])

        assert a != b
        assert registry.current_union() == {"BTC-USD", "ETH-USD", "SOL-USD"}
        assert len(registry) == 2

    def test_symbols_are_normalized(self):
        registry = SubscriptionRegistry()
        handle = registry.subscribe([" btc-usd ", "", "Eth-Usd"])

        assert registry.symbols_for(handle) == {"BTC-USD", "ETH-USD"}

    def test_last_reference_removal_drops_symbol(self):
        registry = SubscriptionRegistry()
        a = registry.subscribe(["BTC-USD", "ETH-USD"])
        b = registry.subscribe(["ETH-USD"])

        assert registry.unsubscribe(a) is True
        assert registry.current_union() == {"ETH-USD"}

        assert registry.unsubscribe(b) is True
        assert registry.current_union() == frozenset()

    def test_update_replaces_interest_set(self):
        registry = SubscriptionRegistry()
        handle = registry.subscribe(["BTC-USD"])

        assert registry.update_subscription(handle, ["DOGE-USD"]) is True
        assert registry.current_union() == {"DOGE-USD"}

    def test_unknown_handle_changes_nothing(self):
        registry = SubscriptionRegistry()
        registry.subscribe(["BTC-USD"])

        assert registry.update_subscription("missing", ["ETH-USD"]) is False
        assert registry.unsubscribe("missing") is False
        assert registry.current_union() == {"BTC-USD"}

    def test_empty_interest_set_is_allowed(self):
        registry = SubscriptionRegistry()
        handle = registry.subscribe([])

        assert registry.symbols_for(handle) == frozenset()
        assert registry.current_union() == frozenset()

    def test_union_matches_naive_recompute_under_random_operations(self):
        rng = random.Random(42)
        universe = [f"SYM{i}-USD" for i in range(15)]
        registry = SubscriptionRegistry()
        expected: dict[str, set[str]] = {}

        for _ in range(500):
            op = rng.random()
            if op < 0.4 or not expected:
                symbols = set(rng.sample(universe, rng.randint(0, 5)))
                handle = registry.subscribe(symbols)
                expected[handle] = symbols
            elif op < 0.7:
                handle = rng.choice(list(expected))
                symbols = set(rng.sample(universe, rng.randint(0, 5)))
                assert registry.update_subscription(handle, symbols)
                expected[handle] = symbols
            else:
                handle = rng.choice(list(expected))
                assert registry.unsubscribe(handle)
                del expected[handle]

            naive = set().union(*expected.values()) if expected else set()
            assert registry.current_union() == naive

    def test_concurrent_mutations_from_threads(self):
        registry = SubscriptionRegistry()
        keep = registry.subscribe(["BTC-USD"])

        def churn(prefix: str):
            for i in range(200):
                handle = registry.subscribe([f"{prefix}{i}-USD"])
                registry.unsubscribe(handle)

        threads = [threading.Thread(target=churn, args=(f"T{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert registry.handles() == [keep]
        assert registry.current_union() == {"BTC-USD"}


class TestQuoteCache:

    def test_last_value_wins(self):
        cache = QuoteCache()
        cache.upsert(Quote("BTC-USD", 65000.0, time=1.0))
        cache.upsert(Quote("BTC-USD", 65100.0, time=2.0))

        assert cache.get("BTC-USD").price == 65100.0
        assert len(cache) == 1

    def test_get_returns_copy(self):
        cache = QuoteCache()
        cache.upsert(Quote("ETH-USD", 3200.0))

        row = cache.get("ETH-USD")
        row.price = 0.0

        assert cache.get("ETH-USD").price == 3200.0

    def test_upsert_many_and_snapshot(self):
        cache = QuoteCache()
        count = cache.upsert_many([Quote("BTC-USD", 1.0), Quote("ETH-USD", 2.0)])

        assert count == 2
        assert cache.symbols() == ["BTC-USD", "ETH-USD"]
        assert set(cache.snapshot()) == {"BTC-USD", "ETH-USD"}

        cache.clear()
        assert cache.get("BTC-USD") is None
