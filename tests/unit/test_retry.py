import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from trendsync.services.retry import JITTER_SECONDS, backoff_delay, with_retry


class TestBackoff(unittest.TestCase):
    def test_delay_doubles_per_attempt(self):
        self.assertEqual(backoff_delay(2, 0.3), 0.3)
        self.assertAlmostEqual(backoff_delay(3, 0.3), 0.6)
        self.assertAlmostEqual(backoff_delay(4, 0.3), 1.2)


class TestWithRetry(unittest.IsolatedAsyncioTestCase):
    async def test_first_success_makes_one_call(self):
        func = AsyncMock(return_value="ok")
        with patch("trendsync.services.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            self.assertEqual(await with_retry(func, 1, retries=3), "ok")
        func.assert_awaited_once_with(1)
        sleep.assert_not_awaited()

    async def test_recovers_after_failures(self):
        func = AsyncMock(side_effect=[ValueError("a"), ValueError("b"), "ok"])
        with patch("trendsync.services.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            self.assertEqual(await with_retry(func, retries=3, base_delay=0.3), "ok")
        self.assertEqual(func.await_count, 3)
        delays = [call.args[0] for call in sleep.await_args_list]
        self.assertEqual(len(delays), 2)
        self.assertTrue(0.3 <= delays[0] <= 0.3 + JITTER_SECONDS)
        self.assertTrue(0.6 <= delays[1] <= 0.6 + JITTER_SECONDS)

    async def test_exhausted_retries_raise_last_error(self):
        func = AsyncMock(side_effect=[KeyError("1"), KeyError("2"), KeyError("3")])
        with patch("trendsync.services.retry.asyncio.sleep", new=AsyncMock()):
            with self.assertRaises(KeyError) as ctx:
                await with_retry(func, retries=2)
        self.assertEqual(ctx.exception.args[0], "3")
        self.assertEqual(func.await_count, 3)

    async def test_zero_retries_is_single_attempt(self):
        func = AsyncMock(side_effect=RuntimeError("nope"))
        with self.assertRaises(RuntimeError):
            await with_retry(func, retries=0)
        func.assert_awaited_once()

    async def test_observer_sees_every_failure(self):
        func = AsyncMock(side_effect=[RuntimeError("x"), "ok"])
        observer = MagicMock()
        with patch("trendsync.services.retry.asyncio.sleep", new=AsyncMock()):
            await with_retry(func, retries=2, on_retry=observer)
        observer.assert_called_once()
        self.assertEqual(observer.call_args.args[0], 1)
        self.assertIsInstance(observer.call_args.args[1], RuntimeError)

    async def test_observer_errors_are_ignored(self):
        func = AsyncMock(side_effect=[RuntimeError("x"), "ok"])
        observer = AsyncMock(side_effect=Exception("observer broke"))
        with patch("trendsync.services.retry.asyncio.sleep", new=AsyncMock()):
            self.assertEqual(await with_retry(func, retries=1, on_retry=observer), "ok")
        observer.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
