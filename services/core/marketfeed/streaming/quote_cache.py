from __future__ import annotations

import threading
from dataclasses import replace
from typing import Iterable

from ..providers.base import Quote


class QuoteCache:
    """Last-value-wins quote map. Written by the poller, read by anyone."""

    def __init__(self) -> None:
        self._rows: dict[str, Quote] = {}
        self._lock = threading.Lock()

    def upsert(self, quote: Quote) -> None:
        with self._lock:
            self._rows[quote.symbol] = quote

    def upsert_many(self, quotes: Iterable[Quote]) -> int:
        count = 0
        with self._lock:
            for q in quotes:
                self._rows[q.symbol] = q
                count += 1
        return count

    def get(self, symbol: str) -> Quote | None:
        with self._lock:
            row = self._rows.get(symbol)
        return replace(row) if row is not None else None

    def snapshot(self) -> dict[str, Quote]:
        with self._lock:
            return {s: replace(q) for s, q in self._rows.items()}

    def symbols(self) -> list[str]:
        with self._lock:
            return sorted(self._rows)

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)
