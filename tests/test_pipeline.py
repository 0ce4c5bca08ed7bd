import asyncio
import os
from collections import Counter
from datetime import timedelta

from feedrecs.cache import FeedCache, MemoryCacheStore, feed_key
from feedrecs.embedding import EmbeddingService
from feedrecs.errors import ProviderError
from feedrecs.models import EventKind
from feedrecs.pipeline import RecommendationService
from feedrecs.reducer import ReducerRegistry
from feedrecs.stores import MemoryCorpusStore, MemoryInteractionStore, MemoryProfileStore

from conftest import D_HIGH, NOW, TOPICS, FakeProvider, event, make_item


def _ids(payload):
    return [it["id"] for it in payload["items"]]


def test_new_user_gets_trending_fallback(service):
    async def main():
        await service.force_rebuild_index()
        first = await service.get_feed("newbie", limit=5)
        second = await service.get_feed("newbie", limit=5)
        return first, second

    first, second = asyncio.run(main())
    assert first["tier"] == "trending"
    assert first["status"] == "ok"
    assert len(first["items"]) == 5
    assert first["cached"] is False
    assert second["cached"] is True
    assert _ids(second) == _ids(first)


def test_fallback_tier_is_idempotent_without_new_interactions(service):
    async def main():
        await service.force_rebuild_index()
        a = await service.compute_feed("u", 1, 8)
        b = await service.compute_feed("u", 1, 8)
        return a, b

    a, b = asyncio.run(main())
    assert a["tier"] == b["tier"] == "trending"
    assert _ids(a) == _ids(b)


def test_like_outweighs_view_end_to_end(service, provider):
    async def main():
        await service.force_rebuild_index()
        await service.record_interaction(event("u", "sports-0", EventKind.LIKE, 20))
        await service.record_interaction(event("u", "cooking-0", EventKind.VIEW, 10))
        await service.drain()
        outcome = await service.updater.update("u")
        return outcome, await service.get_feed("u", limit=5)

    outcome, feed = asyncio.run(main())
    assert outcome == "updated"
    lines = provider.calls[-1].splitlines()
    assert sum(1 for ln in lines if ln.startswith("sports story sports-0")) == 3
    assert sum(1 for ln in lines if ln.startswith("cooking story cooking-0")) == 1

    assert feed["tier"] == "personalized"
    ids = _ids(feed)
    assert len(ids) == 5
    assert all(cid.startswith("sports-") for cid in ids)
    # interacted items are not recommended back
    assert "sports-0" not in ids and "cooking-0" not in ids


def test_empty_corpus_returns_no_content(settings):
    svc = RecommendationService(
        settings,
        corpus=MemoryCorpusStore(),
        interactions=MemoryInteractionStore(),
        profiles=MemoryProfileStore(),
        reducers=ReducerRegistry(),
        embedder=EmbeddingService(FakeProvider(), D_HIGH),
        cache=FeedCache(MemoryCacheStore()),
        clock=lambda: NOW,
    )

    async def main():
        stats = await svc.force_rebuild_index()
        return stats, await svc.get_feed("u")

    stats, feed = asyncio.run(main())
    assert stats["size"] == 0
    assert feed["items"] == []
    assert feed["status"] == "no_content"


def test_everything_seen_falls_back_to_newest(service):
    async def main():
        await service.force_rebuild_index()
        for item in await service.corpus.all_items():
            await service.record_interaction(event("u", item.id, EventKind.VIEW))
        return await service.get_feed("u", limit=4)

    feed = asyncio.run(main())
    assert feed["tier"] == "newest"
    assert len(feed["items"]) == 4


def test_provider_failure_marks_profile_stale_with_backoff(service, provider):
    provider.fail = ProviderError("provider down")

    async def main():
        await service.force_rebuild_index()
        await service.record_interaction(event("u", "sports-0", EventKind.LIKE))
        await service.drain()
        first = await service.profiles.get_status("u")
        first_next = first.next_attempt
        await service.updater.update("u")
        second = await service.profiles.get_status("u")
        summary = await service.updater.recompute_stale()
        feed = await service.get_feed("u", limit=3)
        stats = await service.stats()
        return first_next, second, summary, feed, stats

    first_next, second, summary, feed, stats = asyncio.run(main())
    assert first_next == NOW + timedelta(seconds=300)
    assert second.stale and second.failures == 2
    assert second.next_attempt == NOW + timedelta(seconds=600)
    assert "provider down" in second.reason
    # still backing off: nothing is due
    assert summary["users"] == 0
    assert feed["tier"] == "trending" and feed["items"]
    assert stats["stale_profiles"] == 1
    assert stats["stale"][0]["user_id"] == "u"


def test_backoff_is_capped(service):
    assert service.updater._backoff(1) == 300
    assert service.updater._backoff(3) == 1200
    assert service.updater._backoff(50) == service.settings.retry_max_seconds


def test_retrain_bumps_generation_and_requires_recompute(service):
    async def main():
        await service.force_rebuild_index()
        await service.record_interaction(event("u", "travel-0", EventKind.LIKE))
        await service.drain()
        before = await service.profiles.get("u")

        stats = await service.force_rebuild_index(retrain=True)
        status = await service.profiles.get_status("u")
        stale_feed = await service.compute_feed("u", 1, 5)

        summary = await service.updater.recompute_stale()
        after = await service.profiles.get("u")
        fresh_feed = await service.compute_feed("u", 1, 5)
        return before, stats, status, stale_feed, summary, after, fresh_feed

    before, stats, status, stale_feed, summary, after, fresh_feed = asyncio.run(main())
    assert before.generation == 1
    assert stats["generation"] == 2
    assert status.stale and status.reason == "reducer generation changed"
    assert stale_feed["tier"] == "trending"
    assert summary["updated"] == 1
    assert after.generation == 2
    assert fresh_feed["tier"] == "personalized"
    assert all(it["id"].startswith("travel-") for it in fresh_feed["items"])
    assert os.path.exists(service.settings.reducer_path)


def test_retrain_reprojects_corpus(service):
    async def main():
        await service.force_rebuild_index()
        await service.force_rebuild_index(retrain=True)
        return await service.corpus.all_items()

    items = asyncio.run(main())
    assert all(it.reduced_generation == 2 for it in items)
    assert all(len(it.embedding_reduced) == service.settings.d_low for it in items)


def test_material_interactions_invalidate_cached_pages(service):
    key = feed_key("u", "personalized", 1, 5)

    async def main():
        await service.force_rebuild_index()
        await service.get_feed("u", limit=5)
        assert await service.cache.get(key) is not None
        await service.record_interaction(event("u", "finance-3", EventKind.VIEW))
        after_view = await service.cache.get(key)
        await service.record_interaction(event("u", "finance-3", EventKind.LIKE))
        after_like = await service.cache.get(key)
        await service.drain()
        return after_view, after_like

    after_view, after_like = asyncio.run(main())
    assert after_view is not None
    assert after_like is None


def test_interactions_update_counters(service):
    async def main():
        await service.record_interaction(event("u", "sports-1", EventKind.VIEW))
        await service.record_interaction(event("u", "sports-1", EventKind.LIKE))
        await service.record_interaction(event("u", "sports-1", EventKind.SAVE))
        await service.record_interaction(event("u", "sports-1", EventKind.UNSAVE))
        await service.drain()
        n = await service.refresh_engagement_scores()
        return (await service.corpus.get_many(["sports-1"]))["sports-1"], n

    item, n = asyncio.run(main())
    assert (item.views, item.likes, item.saves) == (1, 1, 0)
    assert n == 24
    assert item.engagement_score > 0


def test_feed_pages_respect_source_cap(service):
    async def main():
        await service.force_rebuild_index()
        return [await service.get_feed("u", page=p, limit=6, mode=mode)
                for mode in ("trending", "diverse", "newest") for p in (1, 2)]

    for feed in asyncio.run(main()):
        assert feed["items"]
        counts = Counter(it["source"] for it in feed["items"])
        assert max(counts.values()) <= 2


def test_diverse_and_newest_modes_use_their_tiers(service):
    async def main():
        await service.force_rebuild_index()
        return await service.get_feed("u", mode="diverse"), await service.get_feed("u", mode="newest")

    diverse, newest = asyncio.run(main())
    assert diverse["tier"] == "diverse"
    assert newest["tier"] == "newest"


def test_warm_user_populates_first_page(service):
    async def main():
        await service.force_rebuild_index()
        result = await service.warmer.force_warm("u")
        return result, await service.cache.get(feed_key("u", "personalized", 1, 20))

    result, cached = asyncio.run(main())
    assert result == "warmed"
    assert cached and cached["items"]


def test_invalidate_drops_user_pages(service):
    async def main():
        await service.force_rebuild_index()
        await service.get_feed("u", page=1, limit=5)
        await service.get_feed("u", page=2, limit=5)
        return await service.invalidate("u")

    assert asyncio.run(main()) == 2


def test_small_corpus_without_reducer_still_serves_feeds(settings):
    items = [
        make_item("a", "sports", source="s1", age_days=2, likes=3, views=10),
        make_item("b", "cooking", source="s2", age_days=3),
        make_item("fresh", "travel", source="s3", age_days=0.1, embedding=None),
    ]
    svc = RecommendationService(
        settings,
        corpus=MemoryCorpusStore(items),
        interactions=MemoryInteractionStore(),
        profiles=MemoryProfileStore(),
        reducers=ReducerRegistry(),
        embedder=EmbeddingService(FakeProvider(), D_HIGH),
        cache=FeedCache(MemoryCacheStore()),
        clock=lambda: NOW,
    )

    async def main():
        stats = await svc.force_rebuild_index()
        return stats, await svc.get_feed("u"), await svc.get_feed("u", mode="newest")

    stats, feed, newest = asyncio.run(main())
    assert svc.reducers.model is None
    assert stats["size"] == 3 and stats["vectors"] == 0
    assert feed["status"] == "ok" and feed["tier"] == "trending"
    assert set(_ids(feed)) == {"a", "b", "fresh"}
    assert _ids(newest)[0] == "fresh"


def test_interaction_during_running_update_is_not_lost(service, provider):
    async def main():
        await service.force_rebuild_index()
        provider.delays = [0.05]
        await service.record_interaction(event("u", "sports-0", EventKind.LIKE, 5))
        await asyncio.sleep(0)
        await service.record_interaction(event("u", "travel-0", EventKind.LIKE, 1))
        await service.drain()
        return await service.profiles.get("u"), await service.profiles.get_status("u")

    profile, status = asyncio.run(main())
    assert len(provider.calls) == 2
    assert "travel" not in provider.calls[0]
    assert "travel" in provider.calls[1]
    assert profile.embedding[TOPICS["travel"]] > 0
    assert profile.embedding[TOPICS["sports"]] > 0
    assert status.stale is False


def test_concurrent_updates_for_one_user_coalesce(service, provider):
    async def main():
        await service.force_rebuild_index()
        await service.record_interaction(event("u", "sports-0", EventKind.LIKE))
        await service.drain()
        provider.delays = [0.02]
        return await asyncio.gather(*(service.updater.update("u") for _ in range(3)))

    outcomes = asyncio.run(main())
    assert sorted(outcomes) == ["queued", "queued", "updated"]


def test_warm_and_request_share_one_build(service):
    calls = []
    compute = service.compute_feed

    async def counting(*args, **kwargs):
        calls.append(args)
        await asyncio.sleep(0.01)
        return await compute(*args, **kwargs)

    service.compute_feed = counting

    async def main():
        await service.force_rebuild_index()
        return await asyncio.gather(service.get_feed("u", 1, 20), service.warmer.force_warm("u"))

    feed, warmed = asyncio.run(main())
    assert warmed == "warmed"
    assert feed["items"]
    assert len(calls) == 1
