from __future__ import annotations

import asyncio
from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from skinmentor.services.errors import ClassifiedError, ErrorKind
from skinmentor.services.retry import run_with_retry


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class TestRunWithRetry(unittest.IsolatedAsyncioTestCase):
    async def test_returns_first_success(self) -> None:
        sleep = RecordingSleep()

        async def op() -> str:
            return "ok"

        self.assertEqual(await run_with_retry(op, sleep=sleep), "ok")
        self.assertEqual(sleep.calls, [])

    async def test_network_failure_exhausts_attempts_with_exponential_backoff(self) -> None:
        sleep = RecordingSleep()
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise ConnectionError("network timeout")

        with self.assertRaises(ClassifiedError) as ctx:
            await run_with_retry(op, max_attempts=3, initial_delay_ms=1000, sleep=sleep)

        self.assertEqual(calls, 3)
        self.assertEqual(ctx.exception.kind, ErrorKind.NETWORK)
        self.assertEqual(sleep.calls, [1.0, 2.0])

    async def test_three_retries_after_first_call_means_four_attempts(self) -> None:
        sleep = RecordingSleep()
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise ConnectionError("network timeout")

        with self.assertRaises(ClassifiedError):
            await run_with_retry(op, max_attempts=3 + 1, initial_delay_ms=1000, sleep=sleep)

        self.assertEqual(calls, 4)
        self.assertEqual(sleep.calls, [1.0, 2.0, 4.0])

    async def test_validation_failure_is_not_retried(self) -> None:
        sleep = RecordingSleep()
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise ValueError("invalid image")

        with self.assertRaises(ClassifiedError) as ctx:
            await run_with_retry(op, max_attempts=3, initial_delay_ms=1000, sleep=sleep)

        self.assertEqual(calls, 1)
        self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION)
        self.assertEqual(sleep.calls, [])

    async def test_recovers_after_transient_failures(self) -> None:
        sleep = RecordingSleep()
        retries: list[tuple[int, int, float]] = []
        calls = 0

        async def op() -> int:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RuntimeError("503 service unavailable")
            return 42

        result = await run_with_retry(
            op,
            max_attempts=4,
            initial_delay_ms=10,
            on_retry=lambda attempt, max_attempts, delay, err: retries.append((attempt, max_attempts, delay)),
            sleep=sleep,
        )

        self.assertEqual(result, 42)
        self.assertEqual(retries, [(1, 4, 10), (2, 4, 20)])
        self.assertEqual(sleep.calls, [0.01, 0.02])

    async def test_cancellation_aborts_pending_backoff(self) -> None:
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise ConnectionError("connection reset")

        task = asyncio.create_task(run_with_retry(op, max_attempts=5, initial_delay_ms=10_000))
        await asyncio.sleep(0.05)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(calls, 1)

    async def test_rejects_non_positive_attempts(self) -> None:
        async def op() -> None:
            return None

        with self.assertRaises(ValueError):
            await run_with_retry(op, max_attempts=0)


if __name__ == "__main__":
    unittest.main()
