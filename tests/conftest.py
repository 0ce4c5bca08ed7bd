from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from feedrecs.cache import FeedCache, MemoryCacheStore
from feedrecs.embedding import EmbeddingService
from feedrecs.models import ContentItem, EventKind, InteractionEvent
from feedrecs.pipeline import RecommendationService
from feedrecs.reducer import ReducerRegistry
from feedrecs.settings import Settings
from feedrecs.stores import MemoryCorpusStore, MemoryInteractionStore, MemoryProfileStore

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
D_HIGH = 16
D_LOW = 4
TOPICS = {"sports": 0, "cooking": 1, "finance": 2, "travel": 3}


def topic_vector(topic: str, noise: float = 0.05, seed: int = 0) -> list:
    rng = np.random.default_rng(seed)
    v = rng.normal(0.0, noise, D_HIGH)
    v[TOPICS[topic]] += 1.0
    return v.tolist()


def make_item(
    cid: str,
    topic: str = "sports",
    source: str = "src0",
    age_days: float = 1.0,
    seed: int = 0,
    **kw,
) -> ContentItem:
    fields = dict(
        id=cid,
        source=source,
        title=f"{topic} story {cid}",
        snippet=f"all about {topic}",
        kind="article",
        embedding=topic_vector(topic, seed=seed),
        published_at=NOW - timedelta(days=age_days),
        categories=(topic,),
    )
    fields.update(kw)
    return ContentItem(**fields)


def make_corpus_items(per_topic: int = 6) -> list:
    items = []
    n = 0
    for topic in TOPICS:
        for i in range(per_topic):
            items.append(make_item(f"{topic}-{i}", topic, source=f"src{n % 6}", age_days=1 + i, seed=n))
            n += 1
    return items


def event(user: str, cid: str, kind: EventKind, minutes_ago: float = 10, duration=None) -> InteractionEvent:
    return InteractionEvent(user, cid, kind, NOW - timedelta(minutes=minutes_ago), duration)


class FakeProvider:
    """Sums one topic axis per matching line of text."""

    def __init__(self, fail: Exception | None = None, delays=()):
        self.fail = fail
        self.delays = list(delays)
        self.calls = []

    async def embed(self, text: str) -> list:
        self.calls.append(text)
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        if self.fail is not None:
            raise self.fail
        v = np.zeros(D_HIGH)
        for line in text.splitlines():
            for topic, axis in TOPICS.items():
                if topic in line.lower():
                    v[axis] += 1.0
        if not v.any():
            v[D_HIGH - 1] = 1.0
        return v.tolist()

    async def close(self) -> None:
        return None


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        embed_backend="local",
        d_high=D_HIGH,
        d_low=D_LOW,
        reducer_min_samples=10,
        reducer_path=str(tmp_path / "reducer.joblib"),
        inter_batch_delay=0.0,
        candidate_pool=50,
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def service(settings, provider) -> RecommendationService:
    return RecommendationService(
        settings,
        corpus=MemoryCorpusStore(make_corpus_items()),
        interactions=MemoryInteractionStore(settings.retention_days),
        profiles=MemoryProfileStore(),
        reducers=ReducerRegistry(),
        embedder=EmbeddingService(provider, D_HIGH, timeout=1.0),
        cache=FeedCache(MemoryCacheStore(), settings.feed_ttl, settings.global_ttl),
        clock=lambda: NOW,
    )
