import asyncio
from datetime import timedelta

import orjson

from feedrecs.models import EventKind, InteractionEvent
from feedrecs.stores import MemoryInteractionStore, MemoryProfileStore, content_to_record, load_corpus_ndjson

from conftest import NOW, event, make_item


def test_interactions_are_kept_in_time_order_and_filtered():
    store = MemoryInteractionStore()

    async def main():
        await store.append(event("u", "b", EventKind.VIEW, 5))
        await store.append(event("u", "a", EventKind.LIKE, 50))
        await store.append(event("v", "a", EventKind.VIEW, 500))
        all_u = await store.query("u")
        likes = await store.query("u", kinds=[EventKind.LIKE])
        recent = await store.query("u", since=NOW - timedelta(minutes=10))
        active = await store.active_users(NOW - timedelta(minutes=60))
        return all_u, likes, recent, active

    all_u, likes, recent, active = asyncio.run(main())
    assert [e.content_id for e in all_u] == ["a", "b"]
    assert [e.content_id for e in likes] == ["a"]
    assert [e.content_id for e in recent] == ["b"]
    assert active == ["u"]


def test_prune_drops_events_past_retention():
    store = MemoryInteractionStore(retention_days=90)

    async def main():
        await store.append(InteractionEvent("u", "old", EventKind.VIEW, NOW - timedelta(days=100)))
        await store.append(InteractionEvent("w", "older", EventKind.VIEW, NOW - timedelta(days=120)))
        await store.append(event("u", "new", EventKind.VIEW))
        removed = await store.prune(NOW)
        return removed, await store.query("u"), await store.query("w")

    removed, u_events, w_events = asyncio.run(main())
    # "old" already dropped on append once "new" arrived
    assert removed == 1
    assert [e.content_id for e in u_events] == ["new"]
    assert w_events == []


def test_mark_all_stale_covers_every_known_user():
    store = MemoryProfileStore()

    async def main():
        for uid in ("a", "b"):
            status = await store.get_status(uid)
            status.stale = False
            status.next_attempt = NOW
        n = await store.mark_all_stale("reducer generation changed")
        return n, await store.statuses()

    n, statuses = asyncio.run(main())
    assert n == 2
    assert all(s.stale and s.next_attempt is None for s in statuses)


def test_load_corpus_ndjson_skips_malformed(tmp_path):
    path = tmp_path / "content.ndjson"
    good = content_to_record(make_item("a", published_at=NOW))
    path.write_bytes(orjson.dumps(good) + b"\n\n" + orjson.dumps({"title": "no id"}) + b"\n")
    corpus = load_corpus_ndjson(path)
    assert len(corpus) == 1
    items = asyncio.run(corpus.all_items())
    assert items[0].published_at == NOW
    assert items[0].categories == ("sports",)
