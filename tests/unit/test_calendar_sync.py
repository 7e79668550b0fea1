import unittest
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from trendsync.models import ShowAiring, SyncJob
from trendsync.schemas import TraktCalendarEntry
from trendsync.services.calendar_sync import eligible_shows, prune_calendar, run_calendar_sync

from dbutil import DatabaseTestCase, fake_clients


def airing(tmdb_id, season=1, episode=1, first_aired="2024-05-01T01:00:00.000Z", title="Episode"):
    return TraktCalendarEntry.model_validate({
        "first_aired": first_aired,
        "episode": {"season": season, "number": episode, "title": title},
        "show": {"title": f"Show {tmdb_id}", "network": "HBO", "ids": {"trakt": tmdb_id + 1000, "tmdb": tmdb_id}},
    })


class TestCalendarSync(DatabaseTestCase):
    async def airings(self):
        async with self.session_factory() as session:
            return list((await session.execute(select(ShowAiring).order_by(ShowAiring.id))).scalars())

    async def test_only_eligible_shows_are_synced(self):
        eligible_id = await self.add_item(1, trending_score=70, rating_trakt=8.1)
        await self.add_item(2, trending_score=70)  # no community rating
        await self.add_item(3, media_type="movie", trending_score=70, rating_trakt=7.0)
        clients = fake_clients()
        clients.trakt.get_calendar_shows = AsyncMock(return_value=[airing(1), airing(2), airing(3), airing(99)])

        with patch("trendsync.services.calendar_sync.today_iso", return_value="2024-04-30"):
            result = await run_calendar_sync(clients, days=7, session_factory=self.session_factory)

        clients.trakt.get_calendar_shows.assert_awaited_once_with("2024-04-30", 7)
        self.assertEqual((result.processed, result.inserted, result.updated), (1, 1, 0))
        rows = await self.airings()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].media_item_id, eligible_id)
        self.assertEqual(rows[0].network, "HBO")
        self.assertEqual(rows[0].air_date.day, 1)

    async def test_resync_updates_in_place(self):
        await self.add_item(1, trending_score=70, rating_trakt=8.1)
        clients = fake_clients()
        clients.trakt.get_calendar_shows = AsyncMock(return_value=[airing(1, title="Old")])
        await run_calendar_sync(clients, session_factory=self.session_factory)
        clients.trakt.get_calendar_shows = AsyncMock(return_value=[airing(1, title="New", first_aired="2024-05-08T01:00:00.000Z")])

        result = await run_calendar_sync(clients, session_factory=self.session_factory)

        self.assertEqual((result.inserted, result.updated), (0, 1))
        rows = await self.airings()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].episode_title, "New")
        self.assertEqual(rows[0].air_date.day, 8)

    async def test_window_is_clamped_and_job_recorded(self):
        clients = fake_clients()
        await run_calendar_sync(clients, days=365, session_factory=self.session_factory)

        self.assertEqual(clients.trakt.get_calendar_shows.await_args.args[1], 30)
        async with self.session_factory() as session:
            job = (await session.execute(select(SyncJob))).scalar_one()
        self.assertEqual(job.kind, "calendar")
        self.assertEqual(job.stats_dict()["airings_fetched"], 0)

    async def test_prune_removes_orphaned_and_ineligible_airings(self):
        await self.add_item(1, trending_score=70, rating_trakt=8.1)
        await self.add_item(2, trending_score=None, rating_trakt=8.1)
        async with self.session_factory() as session:
            async with session.begin():
                for tmdb_id in (1, 2, 3):
                    session.add(ShowAiring(tmdb_id=tmdb_id, season=1, episode=1))

        deleted = await prune_calendar(self.session_factory)

        self.assertEqual(deleted, 2)
        self.assertEqual([a.tmdb_id for a in await self.airings()], [1])
        self.assertEqual(await prune_calendar(self.session_factory), 0)

    async def test_prune_respects_limit(self):
        async with self.session_factory() as session:
            async with session.begin():
                for episode in range(1, 6):
                    session.add(ShowAiring(tmdb_id=9, season=1, episode=episode))

        self.assertEqual(await prune_calendar(self.session_factory, limit=3), 3)
        self.assertEqual(len(await self.airings()), 2)

    async def test_eligible_shows_map(self):
        item_id = await self.add_item(1, trending_score=10, rating_trakt=5.0)
        self.assertEqual(await eligible_shows(self.session_factory), {1: item_id})


if __name__ == "__main__":
    unittest.main()
