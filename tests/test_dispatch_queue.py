import asyncio
import unittest

from stockgate.errors import QueueFullError, UpstreamError, UpstreamTimeoutError
from stockgate.services.dispatch_queue import DispatchQueue
from stockgate.services.window_limiter import WindowLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, sec: float) -> None:
        self.now += sec


class RecordingSleep:
    """Advances the fake clock instead of waiting."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, sec: float) -> None:
        self.calls.append(sec)
        self.clock.advance(sec)
        await asyncio.sleep(0)


class Settlements:
    def __init__(self, expected: int) -> None:
        self.expected = expected
        self.rows: list[tuple[str, object, BaseException | None]] = []
        self.done = asyncio.Event()

    def callback(self, symbol: str):
        def on_settle(result, error):
            self.rows.append((symbol, result, error))
            if len(self.rows) >= self.expected:
                self.done.set()

        return on_settle

    async def wait(self, timeout: float = 2.0) -> None:
        await asyncio.wait_for(self.done.wait(), timeout)


class RecordingFetcher:
    def __init__(self, clock: FakeClock | None = None, fail_symbols: set[str] | None = None) -> None:
        self.clock = clock
        self.fail_symbols = fail_symbols or set()
        self.calls: list[tuple[str, float | None]] = []

    async def __call__(self, symbol: str) -> dict:
        self.calls.append((symbol, self.clock() if self.clock else None))
        if symbol in self.fail_symbols:
            raise UpstreamError("boom", symbol=symbol)
        return {"symbol": symbol}


class DispatchQueueTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.sleep = RecordingSleep(self.clock)
        self.queues: list[DispatchQueue] = []

    async def asyncTearDown(self):
        for queue in self.queues:
            await queue.aclose()

    def make_queue(self, fetcher, *, max_calls=50, max_size=100, interval=0.0, call_timeout=5.0, sleep=None):
        queue = DispatchQueue(
            fetcher=fetcher,
            limiter=WindowLimiter(max_calls=max_calls, window_sec=60, clock=self.clock),
            max_size=max_size,
            request_interval_sec=interval,
            call_timeout_sec=call_timeout,
            sleep=sleep or self.sleep,
        )
        self.queues.append(queue)
        return queue

    async def test_dispatches_in_fifo_order_and_settles_each_entry(self):
        fetcher = RecordingFetcher()
        queue = self.make_queue(fetcher)
        settled = Settlements(3)

        for symbol in ["TSLA", "AAPL", "GOOGL"]:
            queue.enqueue(symbol, settled.callback(symbol))
        await settled.wait()

        self.assertEqual([c[0] for c in fetcher.calls], ["TSLA", "AAPL", "GOOGL"])
        self.assertEqual([r[0] for r in settled.rows], ["TSLA", "AAPL", "GOOGL"])
        self.assertEqual(settled.rows[1][1], {"symbol": "AAPL"})
        self.assertIsNone(settled.rows[1][2])
        self.assertEqual(queue.metrics()["succeeded"], 3)

    async def test_full_queue_rejects_immediately(self):
        queue = self.make_queue(RecordingFetcher(), max_size=2)
        queue.enqueue("TSLA", lambda r, e: None)
        queue.enqueue("AAPL", lambda r, e: None)

        with self.assertRaises(QueueFullError):
            queue.enqueue("GOOGL", lambda r, e: None)

        self.assertEqual(len(queue), 2)
        self.assertEqual(queue.metrics()["rejected"], 1)

    async def test_spacing_sleep_follows_every_call_even_on_error(self):
        fetcher = RecordingFetcher(fail_symbols={"AAPL"})
        queue = self.make_queue(fetcher, interval=1.2)
        settled = Settlements(3)

        for symbol in ["TSLA", "AAPL", "GOOGL"]:
            queue.enqueue(symbol, settled.callback(symbol))
        await settled.wait()
        await asyncio.sleep(0)

        self.assertEqual(self.sleep.calls, [1.2, 1.2, 1.2])
        self.assertIsInstance(settled.rows[1][2], UpstreamError)
        self.assertEqual(queue.metrics()["failed"], 1)

    async def test_waits_out_limiter_when_window_budget_is_spent(self):
        fetcher = RecordingFetcher(clock=self.clock)
        queue = self.make_queue(fetcher, max_calls=2)
        settled = Settlements(5)

        for symbol in ["A", "B", "C", "D", "E"]:
            queue.enqueue(symbol, settled.callback(symbol))
        await settled.wait()

        times = [t - 1000.0 for _, t in fetcher.calls]
        self.assertEqual(times, [0.0, 0.0, 60.0, 60.0, 120.0])
        self.assertIn(60.0, self.sleep.calls)

    async def test_calls_in_any_window_stay_within_budget_with_spacing(self):
        fetcher = RecordingFetcher(clock=self.clock)
        queue = self.make_queue(fetcher, max_calls=3, interval=20.0)
        symbols = [f"S{i}" for i in range(10)]
        settled = Settlements(len(symbols))

        for symbol in symbols:
            queue.enqueue(symbol, settled.callback(symbol))
        await settled.wait()

        times = [t for _, t in fetcher.calls]
        for start in times:
            in_window = [t for t in times if start <= t < start + 60]
            self.assertLessEqual(len(in_window), 3)

    async def test_upstream_call_timeout_settles_with_timeout_error(self):
        gate = asyncio.Event()

        async def hanging_fetcher(symbol):
            await gate.wait()

        queue = self.make_queue(hanging_fetcher, call_timeout=0.05, sleep=asyncio.sleep)
        settled = Settlements(1)

        queue.enqueue("TSLA", settled.callback("TSLA"))
        await settled.wait()

        self.assertIsInstance(settled.rows[0][2], UpstreamTimeoutError)
        self.assertEqual(queue.metrics()["timed_out"], 1)

    async def test_unexpected_provider_error_is_wrapped(self):
        async def broken_fetcher(symbol):
            raise ConnectionResetError("reset by peer")

        queue = self.make_queue(broken_fetcher)
        settled = Settlements(1)

        queue.enqueue("TSLA", settled.callback("TSLA"))
        await settled.wait()

        error = settled.rows[0][2]
        self.assertIsInstance(error, UpstreamError)
        self.assertIsInstance(error.__cause__, ConnectionResetError)

    async def test_worker_start_is_idempotent_and_restarts_after_draining(self):
        fetcher = RecordingFetcher()
        queue = self.make_queue(fetcher)
        first = Settlements(2)

        queue.enqueue("TSLA", first.callback("TSLA"))
        worker = queue._worker
        queue.enqueue("AAPL", first.callback("AAPL"))
        queue.start()
        self.assertIs(queue._worker, worker)

        await first.wait()
        await worker
        self.assertFalse(queue.running)

        second = Settlements(1)
        queue.enqueue("GOOGL", second.callback("GOOGL"))
        self.assertTrue(queue.running)
        await second.wait()

        self.assertEqual([c[0] for c in fetcher.calls], ["TSLA", "AAPL", "GOOGL"])

    async def test_aclose_fails_pending_entries(self):
        gate = asyncio.Event()

        async def hanging_fetcher(symbol):
            await gate.wait()

        queue = self.make_queue(hanging_fetcher, sleep=asyncio.sleep)
        settled = Settlements(2)
        queue.enqueue("TSLA", settled.callback("TSLA"))
        queue.enqueue("AAPL", settled.callback("AAPL"))
        await asyncio.sleep(0.01)

        await queue.aclose()
        await settled.wait()

        self.assertFalse(queue.running)
        self.assertEqual(len(queue), 0)
        for _, _, error in settled.rows:
            self.assertIsInstance(error, UpstreamError)
            self.assertEqual(str(error), "DISPATCH_STOPPED")


if __name__ == "__main__":
    unittest.main()
