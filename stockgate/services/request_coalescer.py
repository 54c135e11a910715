from __future__ import annotations

import asyncio
import logging
from typing import Any

from stockgate.errors import CallerTimeoutError
from stockgate.services.dispatch_queue import DispatchQueue

logger = logging.getLogger(__name__)


def _mark_retrieved(future: asyncio.Future) -> None:
    # every caller may have timed out before a failed fetch settles
    if not future.cancelled():
        future.exception()


class RequestCoalescer:
    """At most one outstanding upstream fetch per symbol.

    The in-flight future is registered before the enqueue and before any
    await, so two callers arriving back to back can never both dispatch.
    """

    def __init__(self, dispatch_queue: DispatchQueue, caller_timeout_sec: float = 8.0) -> None:
        self.dispatch_queue = dispatch_queue
        self.caller_timeout_sec = caller_timeout_sec
        self._inflight: dict[str, asyncio.Future] = {}
        self.metrics_counters = {"started": 0, "coalesced": 0, "caller_timeouts": 0}

    def inflight_count(self) -> int:
        return len(self._inflight)

    def is_inflight(self, symbol: str) -> bool:
        return symbol in self._inflight

    def _settle(self, symbol: str, future: asyncio.Future, result: Any, error: BaseException | None) -> None:
        if self._inflight.get(symbol) is future:
            del self._inflight[symbol]
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def _start(self, symbol: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)
        self._inflight[symbol] = future
        try:
            self.dispatch_queue.enqueue(
                symbol,
                lambda result, error: self._settle(symbol, future, result, error),
            )
        except BaseException:
            self._inflight.pop(symbol, None)
            future.cancel()
            raise
        self.metrics_counters["started"] += 1
        return future

    async def fetch(self, symbol: str, timeout: float | None = None) -> Any:
        future = self._inflight.get(symbol)
        if future is None:
            future = self._start(symbol)
        else:
            self.metrics_counters["coalesced"] += 1
            logger.debug("[QUOTE][coalesced] symbol=%s", symbol)

        wait_sec = self.caller_timeout_sec if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=wait_sec)
        except asyncio.TimeoutError as exc:
            self.metrics_counters["caller_timeouts"] += 1
            logger.warning("[QUOTE][caller_timeout] symbol=%s timeout_sec=%s", symbol, wait_sec)
            raise CallerTimeoutError("CALLER_TIMEOUT", symbol=symbol) from exc

    def metrics(self) -> dict[str, int]:
        return {"inflight": self.inflight_count(), **self.metrics_counters}
