# dcaengine/market/cache.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from dcaengine.bots.models import MarketContext
from dcaengine.market.providers import (
    HoldingsSource,
    HoldingsUnavailable,
    MarketContextProvider,
    MarketDataUnavailable,
)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    fetched_at: float


class ReadThroughCache(Generic[T]):
    """
    Per-key TTL cache in front of a loader.

    - fresh entry (age < ttl): returned without calling the loader
    - expired entry: loader is called; on success the entry is replaced
    - loader failure: the last value is returned flagged stale if one exists
      and is younger than max_stale; otherwise the error propagates
    """

    def __init__(
        self,
        loader: Callable[[str], T],
        ttl_seconds: float,
        max_stale_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.loader = loader
        self.ttl_seconds = float(ttl_seconds)
        self.max_stale_seconds = float(max_stale_seconds)
        self.clock = clock
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Tuple[T, bool]:
        """Returns (value, stale)."""
        key = key.upper()
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and (now - entry.fetched_at) < self.ttl_seconds:
            return entry.value, False

        try:
            value = self.loader(key)
        except Exception:
            if entry is not None and (now - entry.fetched_at) < self.max_stale_seconds:
                return entry.value, True
            raise

        with self._lock:
            self._entries[key] = CacheEntry(value=value, fetched_at=now)
        return value, False

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key.upper(), None)


class CachedMarketProvider:
    """
    Market context through a read-through cache. A stale fallback is marked
    `stale=True` so callers can decide whether to act on it.
    """

    def __init__(
        self,
        inner: MarketContextProvider,
        ttl_seconds: float,
        max_stale_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache: ReadThroughCache[MarketContext] = ReadThroughCache(
            inner.get_market_context, ttl_seconds, max_stale_seconds, clock
        )

    def get_market_context(self, symbol: str) -> MarketContext:
        try:
            ctx, stale = self._cache.get(symbol)
        except MarketDataUnavailable:
            raise
        except Exception as e:
            raise MarketDataUnavailable(symbol, f"{type(e).__name__}: {e}") from e
        return replace(ctx, stale=True) if stale else ctx

    def invalidate(self, symbol: Optional[str] = None) -> None:
        self._cache.invalidate(symbol)


class CachedHoldingsSource:
    """
    Holdings through a read-through cache. Stale values are never served as
    fresh: a failed refresh raises HoldingsUnavailable and the engine falls
    back to its last reconciliation snapshot.
    """

    def __init__(
        self,
        inner: HoldingsSource,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache: ReadThroughCache[float] = ReadThroughCache(
            inner.get_holdings, ttl_seconds, max_stale_seconds=0.0, clock=clock
        )

    def get_holdings(self, symbol: str) -> float:
        try:
            value, _ = self._cache.get(symbol)
        except HoldingsUnavailable:
            raise
        except Exception as e:
            raise HoldingsUnavailable(symbol, f"{type(e).__name__}: {e}") from e
        return value

    def invalidate(self, symbol: Optional[str] = None) -> None:
        self._cache.invalidate(symbol)
