"""Tracks independent subscribers' symbol interest and their union."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Iterable

from ..providers.base import normalize_symbols


logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """
    Registry of subscription handles -> symbol sets.

    The observable state is the union across all live handles. The union is
    recomputed eagerly on every mutation, so dropping the last reference to a
    symbol removes it immediately. Mutations may come from any thread; a lock
    guards the handle map and the cached union.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, frozenset[str]] = {}
        self._union: frozenset[str] = frozenset()

    def subscribe(self, symbols: Iterable[str]) -> str:
        """Register a new interest set and return its handle."""
        handle = uuid.uuid4().hex
        normalized = frozenset(normalize_symbols(symbols))
        with self._lock:
            self._subscriptions[handle] = normalized
            self._recalculate()
        logger.info(f"Subscription {handle[:8]} added: {sorted(normalized)}")
        return handle

    def update_subscription(self, handle: str, symbols: Iterable[str]) -> bool:
        """
        Replace a handle's interest set.

        Returns:
            False if the handle is unknown (nothing changes), True otherwise
        """
        normalized = frozenset(normalize_symbols(symbols))
        with self._lock:
            if handle not in self._subscriptions:
                return False
            self._subscriptions[handle] = normalized
            self._recalculate()
        return True

    def unsubscribe(self, handle: str) -> bool:
        """Remove a handle. Returns False if it was not registered."""
        with self._lock:
            removed = self._subscriptions.pop(handle, None)
            self._recalculate()
        if removed is not None:
            logger.info(f"Subscription {handle[:8]} removed")
        return removed is not None

    def current_union(self) -> frozenset[str]:
        with self._lock:
            return self._union

    def symbols_for(self, handle: str) -> frozenset[str] | None:
        with self._lock:
            return self._subscriptions.get(handle)

    def handles(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _recalculate(self) -> None:
        # Caller holds the lock
        union: set[str] = set()
        for entry in self._subscriptions.values():
            union |= entry
        self._union = frozenset(union)
