import unittest
from unittest.mock import AsyncMock, patch

from sqlalchemy import func, select

from trendsync.models import (
    MediaCast,
    MediaItem,
    MediaRatingBucket,
    MediaRelated,
    MediaWatchProvider,
    WatchersSnapshot,
    WatchProviderRegistry,
)
from trendsync.schemas import TMDBCastMember, WatchProvider
from trendsync.services.upserts import (
    EntityBundle,
    RelatedLinks,
    append_watchers_snapshot,
    ensure_related_items,
    insert_for,
    link_related,
    normalize_distribution,
    persist_entity,
    slugify,
    upsert_cast,
    upsert_media_item,
    upsert_provider_registry,
    upsert_rating_buckets,
    upsert_watch_providers,
)

from dbutil import DatabaseTestCase


def provider(provider_id, region="UA", category="flatrate", name="Netflix", rank=1):
    return WatchProvider(region=region, provider_id=provider_id, provider_name=name, category=category, rank=rank)


class TestHelpers(unittest.TestCase):
    def test_normalize_distribution_keeps_valid_buckets(self):
        raw = {"1": 5, "10": 7, "0": 3, "11": 1, "x": 2, "5": -1, 6: "4"}
        self.assertEqual(normalize_distribution(raw), {1: 5, 10: 7, 6: 4})

    def test_slugify(self):
        self.assertEqual(slugify("Amazon Prime Video"), "amazon-prime-video")
        self.assertEqual(slugify("  Disney+ "), "disney")


class TestUpserts(DatabaseTestCase):
    async def count(self, model) -> int:
        async with self.session_factory() as session:
            return (await session.execute(select(func.count()).select_from(model))).scalar_one()

    async def test_media_item_update_keeps_optional_fields(self):
        async with self.session_factory() as session:
            async with session.begin():
                await upsert_media_item(session, "show", 1, {"title": "One", "imdb_id": "tt1", "overview": "a"})
        async with self.session_factory() as session:
            async with session.begin():
                item, created = await upsert_media_item(session, "show", 1, {"title": "One!", "imdb_id": None, "overview": None})
        self.assertFalse(created)
        stored = await self.get_item(1)
        self.assertEqual(stored.title, "One!")
        self.assertEqual(stored.imdb_id, "tt1")
        self.assertIsNone(stored.overview)
        self.assertEqual(await self.count(MediaItem), 1)

    async def test_snapshot_written_only_on_change(self):
        item_id = await self.add_item(1)
        results = []
        for watchers in (10, 10, 12, 12, 10):
            async with self.session_factory() as session:
                async with session.begin():
                    results.append(await append_watchers_snapshot(session, item_id, watchers))
        self.assertEqual(results, [True, False, True, False, True])
        self.assertEqual(await self.count(WatchersSnapshot), 3)

    async def test_rating_buckets_upserted_by_key(self):
        item_id = await self.add_item(1)
        async with self.session_factory() as session:
            async with session.begin():
                await upsert_rating_buckets(session, item_id, "trakt", {"1": 1, "10": 2, "42": 9})
        async with self.session_factory() as session:
            async with session.begin():
                await upsert_rating_buckets(session, item_id, "trakt", {"10": 5})
        async with self.session_factory() as session:
            rows = {r.bucket: r.count for r in (await session.execute(select(MediaRatingBucket))).scalars()}
        self.assertEqual(rows, {1: 1, 10: 5})

    async def test_providers_keyed_by_region_provider_category(self):
        item_id = await self.add_item(1)
        offers = [provider(8), provider(8, category="rent"), provider(8, region="US"), provider(9, name="Apple TV")]
        for _ in range(2):
            async with self.session_factory() as session:
                async with session.begin():
                    await upsert_provider_registry(session, offers)
                    await upsert_watch_providers(session, item_id, offers)
        self.assertEqual(await self.count(MediaWatchProvider), 4)
        self.assertEqual(await self.count(WatchProviderRegistry), 2)

    async def test_cast_without_character_is_stable(self):
        item_id = await self.add_item(1)
        cast = [TMDBCastMember(id=5, name="A"), TMDBCastMember(id=5, name="A", character="Hero")]
        for _ in range(2):
            async with self.session_factory() as session:
                async with session.begin():
                    await upsert_cast(session, item_id, cast)
        self.assertEqual(await self.count(MediaCast), 2)

    async def test_related_links_are_insert_only(self):
        base = await self.add_item(1)
        await self.add_item(2)
        await self.add_item(3)
        async with self.session_factory() as session:
            async with session.begin():
                added = await link_related(session, base, "show", RelatedLinks("primary", [(2, 1), (3, 2), (99, 3), (1, 4)]))
        self.assertEqual(added, 2)
        async with self.session_factory() as session:
            async with session.begin():
                added = await link_related(session, base, "show", RelatedLinks("secondary", [(2, 5)]))
        self.assertEqual(added, 0)
        async with self.session_factory() as session:
            rows = list((await session.execute(select(MediaRelated).order_by(MediaRelated.rank))).scalars())
        self.assertEqual([(r.provenance, r.rank) for r in rows], [("primary", 1), ("primary", 2)])

    async def test_persist_entity_writes_bootstrap_and_links(self):
        bundle = EntityBundle(
            media_type="show",
            tmdb_id=1,
            fields={"title": "Base", "watchers": 40},
            ratings={"tmdb": (8.0, 100), "imdb": (None, None)},
            rating_distributions={"trakt": {"8": 10}},
            providers=[provider(8)],
            content_ratings={"UA": "16+", "US": None},
            watchers=40,
            related=RelatedLinks("primary", [(2, 1)]),
            bootstrap=[{"tmdb_id": 2, "title": "Related", "is_bootstrap": True}],
        )
        result = await persist_entity(self.session_factory, bundle)
        self.assertTrue(result.created)
        self.assertEqual(result.ratings, 1)
        self.assertEqual(result.content_ratings, 1)
        self.assertTrue(result.snapshot_inserted)
        self.assertEqual(result.related_bootstrapped, 1)
        self.assertEqual(result.related_links_added, 1)
        related = await self.get_item(2)
        self.assertTrue(related.is_bootstrap)

    async def test_persist_entity_rolls_back_on_failure(self):
        bundle = EntityBundle(
            media_type="show",
            tmdb_id=1,
            fields={"title": "Base"},
            providers=[provider(8)],
            watchers="not-a-number",
        )
        # The snapshot step fails after the item and providers were flushed
        with self.assertRaises(ValueError):
            await persist_entity(self.session_factory, bundle)
        self.assertEqual(await self.count(MediaItem), 0)
        self.assertEqual(await self.count(WatchProviderRegistry), 0)


class TestSharedRowConflicts(DatabaseTestCase):
    """Shared rows may be committed by a sibling entity between our lookup and our insert;
    the write then merges into that row instead of failing the whole entity."""

    async def count(self, model) -> int:
        async with self.session_factory() as session:
            return (await session.execute(select(func.count()).select_from(model))).scalar_one()

    async def test_insert_follows_session_dialect(self):
        async with self.session_factory() as session:
            stmt = insert_for(session, MediaItem)
        self.assertTrue(stmt.__module__.startswith("sqlalchemy.dialects.sqlite"))

    async def test_media_item_committed_by_sibling_is_updated(self):
        await self.add_item(1, title="Bootstrap", is_bootstrap=True)
        async with self.session_factory() as session:
            async with session.begin():
                stored = (await session.execute(select(MediaItem).where(MediaItem.tmdb_id == 1))).scalar_one()
                # First lookup misses: the sibling's row only becomes visible to our insert
                lookup = AsyncMock(side_effect=[None, stored])
                with patch("trendsync.services.upserts._find_media_item", new=lookup):
                    item, created = await upsert_media_item(session, "show", 1, {"title": "Real", "is_bootstrap": False})
        self.assertFalse(created)
        self.assertEqual(item.id, stored.id)
        row = await self.get_item(1)
        self.assertEqual(row.title, "Real")
        self.assertFalse(row.is_bootstrap)
        self.assertEqual(await self.count(MediaItem), 1)

    async def test_bootstrap_skips_item_committed_by_sibling(self):
        await self.add_item(2, title="Already there")
        with patch("trendsync.services.upserts.existing_tmdb_ids", new=AsyncMock(return_value={})):
            async with self.session_factory() as session:
                async with session.begin():
                    inserted = await ensure_related_items(session, "show", [
                        {"tmdb_id": 3, "title": "New"},
                        {"tmdb_id": 2, "title": "Duplicate"},
                    ])
        self.assertEqual(inserted, 1)
        self.assertEqual((await self.get_item(2)).title, "Already there")
        self.assertTrue((await self.get_item(3)).is_bootstrap)
        self.assertEqual(await self.count(MediaItem), 2)

    async def test_registry_merges_into_existing_provider(self):
        first = WatchProvider(region="UA", provider_id=8, provider_name="Netflix", category="flatrate", rank=3, logo_path="/n.png")
        second = WatchProvider(region="US", provider_id=8, provider_name="Netflix Standard", category="flatrate")
        for offer in (first, second):
            async with self.session_factory() as session:
                async with session.begin():
                    await upsert_provider_registry(session, [offer])
        async with self.session_factory() as session:
            rows = list((await session.execute(select(WatchProviderRegistry))).scalars())
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].name, "Netflix Standard")
        self.assertEqual(rows[0].slug, "netflix-standard")
        self.assertEqual(rows[0].logo_path, "/n.png")
        self.assertEqual(rows[0].display_priority, 3)

    async def test_related_link_committed_by_sibling_is_not_duplicated(self):
        base = await self.add_item(1)
        await self.add_item(2)
        async with self.session_factory() as session:
            async with session.begin():
                await link_related(session, base, "show", RelatedLinks("primary", [(2, 1)]))
        # The existing-pair read misses the committed link
        with patch("trendsync.services.upserts._linked_ids", new=AsyncMock(return_value=set())):
            async with self.session_factory() as session:
                async with session.begin():
                    added = await link_related(session, base, "show", RelatedLinks("secondary", [(2, 5)]))
        self.assertEqual(added, 0)
        async with self.session_factory() as session:
            rows = list((await session.execute(select(MediaRelated))).scalars())
        self.assertEqual([(r.provenance, r.rank) for r in rows], [("primary", 1)])


if __name__ == "__main__":
    unittest.main()
