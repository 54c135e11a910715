from __future__ import annotations

import logging
import time
from typing import Callable, Literal

from stockgate.schemas.quote import CacheEntry, Quote

logger = logging.getLogger(__name__)

CacheState = Literal["ABSENT", "FRESH", "STALE", "EXPIRED"]


class QuoteCache:
    """Last known quote per symbol, classified by age.

    Entries are never evicted in the background; an expired entry stays in
    place (classified, never served) until the next successful fetch
    overwrites it.
    """

    def __init__(
        self,
        fresh_ttl_sec: float = 300.0,
        stale_ttl_sec: float = 3600.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if stale_ttl_sec <= fresh_ttl_sec:
            raise ValueError("stale_ttl_sec must be greater than fresh_ttl_sec")
        self.fresh_ttl_sec = fresh_ttl_sec
        self.stale_ttl_sec = stale_ttl_sec
        self._clock = clock or time.monotonic
        self._rows: dict[str, CacheEntry] = {}
        self.upserts = 0

    def now(self) -> float:
        return self._clock()

    def get(self, symbol: str) -> CacheEntry | None:
        return self._rows.get(symbol)

    def put(self, symbol: str, quote: Quote, fetched_at: float | None = None) -> CacheEntry:
        stamp = self._clock() if fetched_at is None else fetched_at
        current = self._rows.get(symbol)
        if current is not None and current.fetched_at > stamp:
            logger.info(
                "[QUOTE][cache_put_skipped] symbol=%s current=%.3f incoming=%.3f",
                symbol,
                current.fetched_at,
                stamp,
            )
            return current
        entry = CacheEntry(quote=quote, fetched_at=stamp)
        self._rows[symbol] = entry
        self.upserts += 1
        return entry

    def age(self, entry: CacheEntry, now: float | None = None) -> float:
        ref = self._clock() if now is None else now
        return max(ref - entry.fetched_at, 0.0)

    def classify(self, entry: CacheEntry | None, now: float | None = None) -> CacheState:
        if entry is None:
            return "ABSENT"
        age = self.age(entry, now)
        if age < self.fresh_ttl_sec:
            return "FRESH"
        if age < self.stale_ttl_sec:
            return "STALE"
        return "EXPIRED"

    def size(self) -> int:
        return len(self._rows)

    def __len__(self) -> int:
        return len(self._rows)

    def metrics(self, now: float | None = None) -> dict[str, int]:
        ref = self._clock() if now is None else now
        states = [self.classify(entry, ref) for entry in self._rows.values()]
        return {
            "cached_symbols": len(states),
            "fresh": states.count("FRESH"),
            "stale": states.count("STALE"),
            "expired": states.count("EXPIRED"),
            "upserts": self.upserts,
        }
