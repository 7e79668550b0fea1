import unittest
from unittest.mock import AsyncMock

from sqlalchemy import select

from trendsync.models import SyncJob, SyncTask
from trendsync.schemas import TrendingMoviePayload, TrendingShowPayload, parse_task_payload
from trendsync.services.jobs import create_job, enqueue_tasks, get_task_stats, run_trending_coordinator

from dbutil import DatabaseTestCase, fake_clients, trending_item


class TestTrendingCoordinator(DatabaseTestCase):
    async def tasks(self):
        async with self.session_factory() as session:
            return list((await session.execute(select(SyncTask).order_by(SyncTask.id))).scalars())

    async def test_queues_one_task_per_candidate_with_tmdb_id(self):
        clients = fake_clients()
        clients.trakt.get_trending = AsyncMock(return_value=[
            trending_item(101, watchers=50), trending_item(102, watchers=30), trending_item(None, watchers=5),
        ])

        result = await run_trending_coordinator(clients, "show", session_factory=self.session_factory)

        self.assertEqual(result.trending_fetched, 3)
        self.assertEqual(result.tasks_queued, 2)
        async with self.session_factory() as session:
            job = await session.get(SyncJob, result.job_id)
        self.assertEqual(job.kind, "trending-shows")
        self.assertEqual(job.status, "running")
        self.assertEqual(job.stats_dict(), {"trending_fetched": 3, "tasks_queued": 2})

        tasks = await self.tasks()
        self.assertEqual([t.tmdb_id for t in tasks], [101, 102])
        self.assertTrue(all(t.status == "pending" and t.attempts == 0 for t in tasks))
        payload = parse_task_payload(tasks[0].payload)
        self.assertIsInstance(payload, TrendingShowPayload)
        self.assertEqual(payload.watchers, 50)

    async def test_movie_payloads_are_tagged(self):
        clients = fake_clients()
        clients.trakt.get_trending = AsyncMock(return_value=[trending_item(7)])

        result = await run_trending_coordinator(clients, "movie", session_factory=self.session_factory)

        tasks = await self.tasks()
        self.assertEqual(tasks[0].media_type, "movie")
        self.assertIsInstance(parse_task_payload(tasks[0].payload), TrendingMoviePayload)
        async with self.session_factory() as session:
            self.assertEqual((await session.get(SyncJob, result.job_id)).kind, "trending-movies")

    async def test_duplicates_within_a_job_are_skipped(self):
        clients = fake_clients()
        clients.trakt.get_trending = AsyncMock(return_value=[trending_item(1)])
        result = await run_trending_coordinator(clients, "show", session_factory=self.session_factory)

        queued = await enqueue_tasks(self.session_factory, result.job_id, "show", [trending_item(1), trending_item(2)])

        self.assertEqual(queued, 1)
        self.assertEqual(sorted(t.tmdb_id for t in await self.tasks()), [1, 2])

    async def test_upstream_failure_propagates(self):
        clients = fake_clients()
        clients.trakt.get_trending = AsyncMock(side_effect=RuntimeError("trakt down"))
        with self.assertRaises(RuntimeError):
            await run_trending_coordinator(clients, "show", session_factory=self.session_factory)
        self.assertEqual(await self.tasks(), [])

    async def test_task_stats(self):
        clients = fake_clients()
        clients.trakt.get_trending = AsyncMock(return_value=[trending_item(1), trending_item(2)])
        result = await run_trending_coordinator(clients, "show", session_factory=self.session_factory)

        stats = await get_task_stats(self.session_factory, job_id=result.job_id)

        self.assertEqual(stats["pending"], 2)
        self.assertEqual(stats["done"], 0)
        self.assertEqual(stats["total"], 2)

    async def test_unknown_job_kind_rejected(self):
        with self.assertRaises(ValueError):
            await create_job(self.session_factory, "reindex")


class TestTaskPayloads(unittest.TestCase):
    def test_unknown_kind_rejected(self):
        with self.assertRaises(ValueError):
            parse_task_payload('{"kind": "trending-books", "watchers": 1, "media": {}}')


if __name__ == "__main__":
    unittest.main()
