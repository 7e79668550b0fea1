import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from trendsync.core.metrics import Timer
from trendsync.schemas import TMDBCastMember, TMDBTranslation, TMDBVideo, TraktMedia, TraktWatchedItem, WatchProvider
from trendsync.services.enrichment import (
    is_excluded_entity,
    is_excluded_title,
    merge_providers,
    select_videos,
    top_cast,
)
from trendsync.services.monthly import build_monthly_maps

from dbutil import details, fake_clients


class TestFilters(unittest.TestCase):
    def test_title_keywords(self):
        self.assertTrue(is_excluded_title("Best ANIME of 2024"))
        self.assertTrue(is_excluded_title(None, "Нове аніме"))
        self.assertFalse(is_excluded_title("The Bear", None))

    def test_animation_genre_excludes_shows_only(self):
        animated = details(1, genres=[{"id": 16, "name": "Animation"}])
        self.assertTrue(is_excluded_entity("show", animated, None))
        self.assertFalse(is_excluded_entity("movie", animated, None))

    def test_localized_title_checked(self):
        self.assertTrue(is_excluded_entity("movie", details(1), TMDBTranslation(title="Аніме фільм")))


class TestSelections(unittest.TestCase):
    def test_videos_preferred_types_on_youtube(self):
        videos = [
            TMDBVideo(site="YouTube", key="c", type="Clip"),
            TMDBVideo(site="YouTube", key="t2", type="Trailer", official=False),
            TMDBVideo(site="YouTube", key="t1", type="Trailer", official=True),
            TMDBVideo(site="YouTube", key="b", type="Bloopers"),
            TMDBVideo(site="Vimeo", key="v", type="Trailer"),
            TMDBVideo(site="YouTube", key="t1", type="Trailer", official=True),
        ]
        self.assertEqual([v.key for v in select_videos(videos)], ["t1", "t2", "c"])

    def test_top_cast_orders_and_caps(self):
        cast = [TMDBCastMember(id=i, name=str(i), order=20 - i) for i in range(20)] + [TMDBCastMember(id=99, name="x")]
        top = top_cast(cast)
        self.assertEqual(len(top), 12)
        self.assertEqual(top[0].id, 19)

    def test_merge_providers_first_offer_wins(self):
        ua = [WatchProvider(region="UA", provider_id=8, category="flatrate"), WatchProvider(region="UA", provider_id=8, category="rent")]
        us = [WatchProvider(region="US", provider_id=8, category="buy")]
        merged = merge_providers(ua, us)
        self.assertEqual([(p.region, p.category) for p in merged], [("UA", "flatrate"), ("US", "buy")])


class TestMonthlyMaps(unittest.IsolatedAsyncioTestCase):
    async def test_six_months_newest_first(self):
        clients = fake_clients()
        clients.trakt.get_watched = AsyncMock(side_effect=lambda media_type, period, start, limit: [
            TraktWatchedItem(watcher_count=int(start[5:7]), media=TraktMedia(ids={"tmdb": 1})),
        ])
        maps = await build_monthly_maps(clients, "show", now=datetime(2024, 3, 10, tzinfo=timezone.utc))
        self.assertEqual([m[1] for m in maps], [3, 2, 1, 12, 11, 10])

    async def test_any_failure_gives_empty_maps(self):
        clients = fake_clients()
        clients.trakt.get_watched = AsyncMock(side_effect=RuntimeError("trakt down"))
        maps = await build_monthly_maps(clients, "movie")
        self.assertEqual(maps, [{}] * 6)


class TestTimer(unittest.IsolatedAsyncioTestCase):
    async def test_records_elapsed_time(self):
        with patch("trendsync.core.metrics.timing", new=AsyncMock()) as timing:
            async with Timer("unit.block") as t:
                pass
        self.assertGreaterEqual(t.elapsed_ms, 0)
        timing.assert_awaited_once()
        self.assertEqual(timing.await_args.args[0], "unit.block")


if __name__ == "__main__":
    unittest.main()
