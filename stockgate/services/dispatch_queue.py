from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from stockgate.errors import QueueFullError, UpstreamError, UpstreamTimeoutError
from stockgate.services.window_limiter import WindowLimiter

logger = logging.getLogger(__name__)

SettleCallback = Callable[[Any, BaseException | None], None]
Fetcher = Callable[[str], Awaitable[Any]]


@dataclass
class QueueEntry:
    symbol: str
    on_settle: SettleCallback
    enqueued_at: float = field(default_factory=time.monotonic)


class DispatchQueue:
    """Bounded FIFO of upstream fetches drained by one worker task.

    The worker asks the limiter before every call and sleeps a fixed spacing
    after every call, failed or not, so the upstream sees a smooth rate.
    """

    def __init__(
        self,
        *,
        fetcher: Fetcher,
        limiter: WindowLimiter,
        max_size: int = 100,
        request_interval_sec: float = 1.2,
        call_timeout_sec: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.limiter = limiter
        self.max_size = max_size
        self.request_interval_sec = request_interval_sec
        self.call_timeout_sec = call_timeout_sec
        self._sleep = sleep or asyncio.sleep
        self.queue: deque[QueueEntry] = deque()
        self._worker: asyncio.Task | None = None
        self.metrics_counters = {
            "enqueued": 0,
            "rejected": 0,
            "dispatched": 0,
            "succeeded": 0,
            "failed": 0,
            "timed_out": 0,
        }

    def _inc(self, key: str, value: int = 1) -> None:
        self.metrics_counters[key] = self.metrics_counters.get(key, 0) + value

    def __len__(self) -> int:
        return len(self.queue)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def enqueue(self, symbol: str, on_settle: SettleCallback) -> QueueEntry:
        if len(self.queue) >= self.max_size:
            self._inc("rejected")
            logger.warning("[DISPATCH][queue_full] symbol=%s depth=%s", symbol, len(self.queue))
            raise QueueFullError("QUEUE_FULL", symbol=symbol)

        entry = QueueEntry(symbol=symbol, on_settle=on_settle)
        self.queue.append(entry)
        self._inc("enqueued")
        self.start()
        return entry

    def start(self) -> None:
        if self.running:
            return
        if not self.queue:
            return
        self._worker = asyncio.get_running_loop().create_task(
            self._run(), name="stockgate-dispatch-worker"
        )

    async def _run(self) -> None:
        while self.queue:
            entry = self.queue.popleft()
            try:
                await self._wait_for_admission()
                await self._dispatch(entry)
            except asyncio.CancelledError:
                self._settle(entry, None, UpstreamError("DISPATCH_STOPPED", symbol=entry.symbol))
                raise
            await self._sleep(self.request_interval_sec)

    async def _wait_for_admission(self) -> None:
        while True:
            admission = self.limiter.try_admit()
            if admission.admitted:
                return
            logger.info("[DISPATCH][rate_limit_wait] wait_sec=%.3f", admission.wait_sec)
            await self._sleep(admission.wait_sec)

    async def _dispatch(self, entry: QueueEntry) -> None:
        self._inc("dispatched")
        try:
            result = await asyncio.wait_for(self.fetcher(entry.symbol), timeout=self.call_timeout_sec)
        except asyncio.TimeoutError:
            self._inc("timed_out")
            logger.warning(
                "[DISPATCH][upstream_timeout] symbol=%s timeout_sec=%s", entry.symbol, self.call_timeout_sec
            )
            self._settle(entry, None, UpstreamTimeoutError("UPSTREAM_TIMEOUT", symbol=entry.symbol))
            return
        except (UpstreamError, UpstreamTimeoutError) as exc:
            self._inc("failed")
            logger.warning("[DISPATCH][upstream_error] symbol=%s error=%s", entry.symbol, exc)
            self._settle(entry, None, exc)
            return
        except Exception as exc:
            self._inc("failed")
            logger.warning("[DISPATCH][upstream_error] symbol=%s error=%r", entry.symbol, exc)
            error = UpstreamError(str(exc) or type(exc).__name__, symbol=entry.symbol)
            error.__cause__ = exc
            self._settle(entry, None, error)
            return

        self._inc("succeeded")
        self._settle(entry, result, None)

    @staticmethod
    def _settle(entry: QueueEntry, result: Any, error: BaseException | None) -> None:
        entry.on_settle(result, error)

    async def aclose(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        while self.queue:
            entry = self.queue.popleft()
            self._settle(entry, None, UpstreamError("DISPATCH_STOPPED", symbol=entry.symbol))

    def metrics(self) -> dict[str, int | bool]:
        return {
            "queue_depth": len(self.queue),
            "worker_running": self.running,
            **self.metrics_counters,
        }
