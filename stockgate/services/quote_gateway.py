from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
from typing import Any, Awaitable, Callable

from stockgate.config.settings import Settings
from stockgate.errors import (
    CallerTimeoutError,
    InvalidInputError,
    QueueFullError,
    UpstreamError,
    UpstreamTimeoutError,
)
from stockgate.integrations.finnhub_rest import parse_quote_payload
from stockgate.schemas.quote import Quote, QuoteResult
from stockgate.services.dispatch_queue import DispatchQueue
from stockgate.services.quote_cache import QuoteCache
from stockgate.services.request_coalescer import RequestCoalescer
from stockgate.services.window_limiter import WindowLimiter

logger = logging.getLogger(__name__)

_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9.\-]{0,14}$")

# failures that only lower response quality; anything else propagates
_ABSORBED_ERRORS = (UpstreamError, UpstreamTimeoutError, QueueFullError, CallerTimeoutError)


def normalize_symbol(symbol: Any) -> str:
    value = str(symbol or "").strip().upper()
    if not value:
        raise InvalidInputError("SYMBOL_REQUIRED")
    if not _SYMBOL_RE.match(value):
        raise InvalidInputError("INVALID_SYMBOL", symbol=value)
    return value


class UpstreamQuoteLoader:
    """Dispatch-queue fetcher: provider call -> parsed Quote -> cache write."""

    def __init__(self, provider, quote_cache: QuoteCache, wall_clock: Callable[[], float] | None = None) -> None:
        self.provider = provider
        self.quote_cache = quote_cache
        self._wall_clock = wall_clock or time.time

    async def __call__(self, symbol: str) -> Quote:
        fetch = self.provider.get_quote
        if inspect.iscoroutinefunction(fetch):
            payload = await fetch(symbol)
        else:
            payload = await asyncio.to_thread(fetch, symbol)
        quote = parse_quote_payload(symbol, payload, now=self._wall_clock())
        self.quote_cache.put(symbol, quote)
        return quote


class QuoteGatewayService:
    """Layered quote read path: fresh cache, live fetch, stale cache, placeholder."""

    def __init__(
        self,
        *,
        quote_cache: QuoteCache,
        coalescer: RequestCoalescer,
        limiter: WindowLimiter,
        dispatch_queue: DispatchQueue,
        wall_clock: Callable[[], float] | None = None,
    ) -> None:
        self.quote_cache = quote_cache
        self._wall_clock = wall_clock or time.time
        self.coalescer = coalescer
        self.limiter = limiter
        self.dispatch_queue = dispatch_queue
        self.metrics_counters = {
            "fresh_hits": 0,
            "live_fetches": 0,
            "stale_served": 0,
            "synthetic_served": 0,
            "upstream_failures": 0,
        }

    async def get_quote(self, symbol: str) -> QuoteResult:
        symbol = normalize_symbol(symbol)
        now = self.quote_cache.now()
        entry = self.quote_cache.get(symbol)
        state = self.quote_cache.classify(entry, now)

        if state == "FRESH":
            self.metrics_counters["fresh_hits"] += 1
            logger.debug("[QUOTE][fresh_cache] symbol=%s", symbol)
            return QuoteResult(quote=entry.quote, state="FRESH", age_sec=self.quote_cache.age(entry, now))

        quote: Quote | None = None
        try:
            quote = await self.coalescer.fetch(symbol)
        except _ABSORBED_ERRORS as exc:
            self.metrics_counters["upstream_failures"] += 1
            logger.warning(
                "[QUOTE][live_fetch_failed] symbol=%s cache_state=%s error=%s",
                symbol,
                state,
                getattr(exc, "code", type(exc).__name__),
            )

        if quote is not None:
            self.metrics_counters["live_fetches"] += 1
            logger.info("[QUOTE][live] symbol=%s price=%s", symbol, quote.price)
            return QuoteResult(quote=quote, state="LIVE")

        # the live attempt may have waited long enough for a stale entry to expire
        later = self.quote_cache.now()
        if entry is not None and self.quote_cache.classify(entry, later) == "STALE":
            self.metrics_counters["stale_served"] += 1
            age = self.quote_cache.age(entry, later)
            logger.info("[QUOTE][stale_cache] symbol=%s age_sec=%.1f", symbol, age)
            return QuoteResult(quote=entry.quote, state="STALE", degraded=True, age_sec=age)

        self.metrics_counters["synthetic_served"] += 1
        logger.info("[QUOTE][synthetic] symbol=%s cache_state=%s", symbol, state)
        return QuoteResult(
            quote=Quote.placeholder(symbol, self._wall_clock()),
            state="SYNTHETIC",
            degraded=True,
        )

    def health(self) -> dict[str, int]:
        return {
            "queue_size": len(self.dispatch_queue),
            "cache_size": self.quote_cache.size(),
            "request_count": self.limiter.calls_in_window(),
            "inflight": self.coalescer.inflight_count(),
        }

    def metrics(self) -> dict[str, Any]:
        return {
            **self.metrics_counters,
            "cache": self.quote_cache.metrics(),
            "dispatch": self.dispatch_queue.metrics(),
            "limiter": self.limiter.metrics(),
            "coalescer": self.coalescer.metrics(),
        }

    async def aclose(self) -> None:
        await self.dispatch_queue.aclose()


def build_quote_gateway(
    settings: Settings,
    provider,
    *,
    clock: Callable[[], float] | None = None,
    wall_clock: Callable[[], float] | None = None,
    monotonic: Callable[[], float] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> QuoteGatewayService:
    quote_cache = QuoteCache(
        fresh_ttl_sec=settings.FRESH_TTL_SEC,
        stale_ttl_sec=settings.STALE_TTL_SEC,
        clock=clock or time.monotonic,
    )
    limiter = WindowLimiter(
        max_calls=settings.MAX_REQUESTS_PER_MINUTE,
        window_sec=settings.RATE_WINDOW_SEC,
        clock=monotonic or time.monotonic,
    )
    dispatch_queue = DispatchQueue(
        fetcher=UpstreamQuoteLoader(provider, quote_cache, wall_clock=wall_clock),
        limiter=limiter,
        max_size=settings.MAX_QUEUE_SIZE,
        request_interval_sec=settings.REQUEST_INTERVAL_SEC,
        call_timeout_sec=settings.UPSTREAM_TIMEOUT_SEC,
        sleep=sleep,
    )
    coalescer = RequestCoalescer(dispatch_queue, caller_timeout_sec=settings.CALLER_TIMEOUT_SEC)
    return QuoteGatewayService(
        quote_cache=quote_cache,
        coalescer=coalescer,
        limiter=limiter,
        dispatch_queue=dispatch_queue,
        wall_clock=wall_clock,
    )
