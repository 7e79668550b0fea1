import unittest
from unittest.mock import AsyncMock

from trendsync.schemas import TMDBRecommendation, TraktMedia
from trendsync.services.cache import EnrichmentCaches
from trendsync.services.related import (
    PROVENANCE_PRIMARY,
    PROVENANCE_SECONDARY,
    RELATED_LIMIT,
    build_bootstrap_records,
    passes_genre_filter,
    resolve_related,
)

from dbutil import DatabaseTestCase, fake_clients


def trakt_media(tmdb_id):
    return TraktMedia(title=f"Related {tmdb_id}", ids={"trakt": tmdb_id, "tmdb": tmdb_id})


class TestGenreFilter(unittest.TestCase):
    def test_denylisted_genre_always_excluded(self):
        self.assertFalse(passes_genre_filter([18], [18, 16]))
        self.assertFalse(passes_genre_filter([], [10764]))

    def test_unknown_genres_pass(self):
        self.assertTrue(passes_genre_filter([], [35]))
        self.assertTrue(passes_genre_filter([18], []))

    def test_requires_overlap_when_both_known(self):
        self.assertTrue(passes_genre_filter([18, 80], [80]))
        self.assertFalse(passes_genre_filter([18], [35]))


class TestResolveRelated(unittest.IsolatedAsyncioTestCase):
    async def test_primary_source_with_positional_rank(self):
        clients = fake_clients()
        clients.trakt.get_related = AsyncMock(return_value=[trakt_media(201), trakt_media(202), trakt_media(203)])
        clients.tmdb.get_genre_ids = AsyncMock(side_effect=lambda media_type, tmdb_id: {201: [18], 202: [35], 203: [18, 9648]}[tmdb_id])

        result = await resolve_related(clients, EnrichmentCaches(), "show", 100, trakt_lookup_id="show-100", base_genre_ids=[18])

        self.assertEqual(result.provenance, PROVENANCE_PRIMARY)
        self.assertEqual(result.ids, [201, 203])
        self.assertEqual(result.links().ranked, [(201, 1), (203, 3)])
        clients.tmdb.get_recommendations.assert_not_awaited()

    async def test_secondary_fallback_when_primary_empty(self):
        clients = fake_clients()
        clients.trakt.get_related = AsyncMock(return_value=[])
        clients.tmdb.get_recommendations = AsyncMock(return_value=[
            TMDBRecommendation(id=201, genre_ids=[18]),
            TMDBRecommendation(id=202, genre_ids=[99]),
            TMDBRecommendation(id=203, genre_ids=[35]),
            TMDBRecommendation(id=204, genre_ids=None),
        ])
        clients.tmdb.get_genre_ids = AsyncMock(return_value=[])

        result = await resolve_related(clients, EnrichmentCaches(), "show", 100, trakt_lookup_id="x", base_genre_ids=[18])

        self.assertEqual(result.provenance, PROVENANCE_SECONDARY)
        self.assertEqual(result.ids, [201, 204])

    async def test_primary_failure_falls_back(self):
        clients = fake_clients()
        clients.trakt.get_related = AsyncMock(side_effect=RuntimeError("trakt down"))
        clients.tmdb.get_recommendations = AsyncMock(return_value=[TMDBRecommendation(id=300, genre_ids=[18])])

        result = await resolve_related(clients, EnrichmentCaches(), "movie", 1, trakt_lookup_id="x", base_genre_ids=[18])

        self.assertEqual(result.provenance, PROVENANCE_SECONDARY)
        self.assertEqual(result.ids, [300])

    async def test_self_reference_and_duplicates_dropped(self):
        clients = fake_clients()
        clients.trakt.get_related = AsyncMock(return_value=[trakt_media(100), trakt_media(201), trakt_media(201)])

        result = await resolve_related(clients, EnrichmentCaches(), "show", 100, trakt_lookup_id="x", base_genre_ids=[])

        self.assertEqual(result.ids, [201])

    async def test_failed_genre_lookup_counts_as_unknown(self):
        clients = fake_clients()
        clients.trakt.get_related = AsyncMock(return_value=[trakt_media(201)])
        clients.tmdb.get_genre_ids = AsyncMock(side_effect=RuntimeError("tmdb down"))

        result = await resolve_related(clients, EnrichmentCaches(), "show", 100, trakt_lookup_id="x", base_genre_ids=[18])

        self.assertEqual(result.ids, [201])

    async def test_capped_at_limit(self):
        clients = fake_clients()
        clients.trakt.get_related = AsyncMock(return_value=[trakt_media(i) for i in range(500, 530)])

        result = await resolve_related(clients, EnrichmentCaches(), "show", 1, trakt_lookup_id="x", base_genre_ids=[])

        self.assertEqual(len(result.ids), RELATED_LIMIT)

    async def test_no_sources_gives_empty_primary(self):
        clients = fake_clients()
        result = await resolve_related(clients, EnrichmentCaches(), "show", 1, trakt_lookup_id=None, base_genre_ids=[18])
        self.assertEqual(result.ids, [])
        self.assertEqual(result.provenance, PROVENANCE_PRIMARY)


class TestBootstrapRecords(DatabaseTestCase):
    async def test_only_missing_items_are_bootstrapped(self):
        await self.add_item(201)
        clients = fake_clients()

        records = await build_bootstrap_records(clients, EnrichmentCaches(), self.session_factory, "show", [201, 202])

        self.assertEqual([r["tmdb_id"] for r in records], [202])
        self.assertTrue(records[0]["is_bootstrap"])
        self.assertEqual(records[0]["title"], "Show 202")

    async def test_failed_details_skip_the_record(self):
        clients = fake_clients()
        clients.tmdb.get_details = AsyncMock(side_effect=RuntimeError("404"))

        records = await build_bootstrap_records(clients, EnrichmentCaches(), self.session_factory, "show", [300])

        self.assertEqual(records, [])


if __name__ == "__main__":
    unittest.main()
