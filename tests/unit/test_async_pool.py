import asyncio
import unittest

from trendsync.services.async_pool import async_pool


class TestAsyncPool(unittest.IsolatedAsyncioTestCase):
    async def test_results_keep_input_order(self):
        async def mapper(n):
            await asyncio.sleep(0.01 * (5 - n))
            return n * 10

        self.assertEqual(await async_pool(3, [1, 2, 3, 4], mapper), [10, 20, 30, 40])

    async def test_never_exceeds_limit(self):
        in_flight = 0
        peak = 0

        async def mapper(n):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return n

        await async_pool(2, range(8), mapper)
        self.assertEqual(peak, 2)

    async def test_empty_input(self):
        async def mapper(n):
            return n

        self.assertEqual(await async_pool(4, [], mapper), [])

    async def test_first_error_propagates_and_cancels_siblings(self):
        finished = []

        async def mapper(n):
            if n == 0:
                raise RuntimeError("boom")
            await asyncio.sleep(0.5)
            finished.append(n)
            return n

        with self.assertRaises(RuntimeError):
            await async_pool(3, [0, 1, 2], mapper)
        self.assertEqual(finished, [])

    async def test_rejects_limit_below_one(self):
        async def mapper(n):
            return n

        with self.assertRaises(ValueError):
            await async_pool(0, [1], mapper)


if __name__ == "__main__":
    unittest.main()
