"""Profile recomputation and the feed request surface."""
from __future__ import annotations

import asyncio
import logging
import os
import random
import zlib
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

import numpy as np

from .cache import FeedCache, feed_key, make_cache_store
from .embedding import EmbeddingService, build_profile_text, make_provider
from .errors import DataError, EmptyStateError, InsufficientSampleError, ProviderError, StaleModelError
from .index import IndexSnapshot, SimilarityIndex
from .models import MATERIAL_KINDS, QUALIFYING_KINDS, InteractionEvent, ProfileStatus, UserProfile, utcnow
from .profile import aggregate_interests
from .ranking import (
    RankedItem,
    RankWeights,
    banded_shuffle,
    combine_scores,
    dedupe_titles,
    engagement_score,
    paginate_with_source_cap,
    recency_score,
)
from .reducer import ReducerRegistry, draw_training_sample, fit, load_model, project, project_many, save_model
from .settings import Settings
from .stores import MemoryCorpusStore, MemoryInteractionStore, MemoryProfileStore, load_corpus_ndjson
from .warmer import CacheWarmer

log = logging.getLogger(__name__)

MODES = ("personalized", "trending", "diverse", "newest")
TIERS_BY_MODE = {
    "personalized": ("personalized", "trending", "newest"),
    "trending": ("trending", "newest"),
    "diverse": ("diverse", "newest"),
    "newest": ("newest",),
}


class ProfileUpdater:
    """aggregate -> embed -> project -> persist, one user at a time."""

    def __init__(
        self,
        settings: Settings,
        corpus,
        interactions,
        profiles,
        reducers: ReducerRegistry,
        embedder: EmbeddingService,
        cache: FeedCache,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.corpus = corpus
        self.interactions = interactions
        self.profiles = profiles
        self.reducers = reducers
        self.embedder = embedder
        self.cache = cache
        self.clock = clock
        self._running: Set[str] = set()
        self._dirty: Set[str] = set()
        self._slots: Optional[asyncio.Semaphore] = None
        self._slots_loop: Optional[asyncio.AbstractEventLoop] = None

    def _backoff(self, failures: int) -> float:
        s = self.settings
        return min(s.retry_base_seconds * (2 ** max(0, failures - 1)), s.retry_max_seconds)

    async def _mark_failed(self, status: ProfileStatus, now: datetime, reason: str) -> None:
        status.stale = True
        status.failures += 1
        status.reason = reason
        status.next_attempt = now + timedelta(seconds=self._backoff(status.failures))
        await self.profiles.put_status(status)

    async def update(self, user_id: str) -> str:
        """Recompute one profile; returns updated, reset, skipped, failed or queued.

        Calls for a user whose update is already running return ``queued``; the
        running update then reruns so it sees every event recorded meanwhile.
        A failed run is not repeated; the stale status carries it to the next
        scheduled pass.
        """
        if user_id in self._running:
            self._dirty.add(user_id)
            return "queued"
        self._running.add(user_id)
        try:
            while True:
                self._dirty.discard(user_id)
                outcome = await self._update_once(user_id)
                if user_id not in self._dirty or outcome in ("failed", "skipped"):
                    return outcome
                log.debug(f"Profile for {user_id} changed during update, recomputing")
        finally:
            self._running.discard(user_id)
            self._dirty.discard(user_id)

    def _embed_slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._slots is None or self._slots_loop is not loop:
            self._slots = asyncio.Semaphore(self.settings.update_concurrency)
            self._slots_loop = loop
        return self._slots

    async def _update_once(self, user_id: str) -> str:
        now = self.clock()
        status = await self.profiles.get_status(user_id)
        status.last_attempt = now
        try:
            outcome = await self._update(user_id, now)
        except ProviderError as e:
            log.warning(f"Embedding failed for user {user_id}, retrying next cycle: {e}")
            await self._mark_failed(status, now, f"provider error: {e}")
            return "failed"
        except EmptyStateError as e:
            log.info(f"Profile for {user_id} not computed: {e}")
            await self._mark_failed(status, now, str(e))
            return "skipped"
        except DataError as e:
            log.warning(f"Profile for {user_id} rejected: {e}")
            await self._mark_failed(status, now, f"data error: {e}")
            return "failed"

        status.stale = False
        status.failures = 0
        status.reason = outcome
        status.next_attempt = None
        await self.profiles.put_status(status)
        await self.cache.invalidate_user(user_id)
        return outcome

    async def _update(self, user_id: str, now: datetime) -> str:
        s = self.settings
        events = await self.interactions.query(user_id, since=now - timedelta(days=s.profile_window_days))
        contents = await self.corpus.get_many({e.content_id for e in events})
        interests = aggregate_interests(
            events,
            {cid: c.categories for cid, c in contents.items()},
            now=now,
            window_days=s.profile_window_days,
            max_items=s.profile_max_items,
        )
        text = build_profile_text(interests, contents) if not interests.is_empty else ""
        if not text:
            await self.profiles.put(
                UserProfile(user_id=user_id, disliked_categories=interests.disliked_categories, updated_at=now)
            )
            log.info(f"No positive signal for user {user_id}, profile reset")
            return "reset"

        model = self.reducers.require()
        async with self._embed_slots():
            embedding = await self.embedder.embed(text)
        reduced = project(model, embedding)
        profile = UserProfile(
            user_id=user_id,
            embedding=embedding.tolist(),
            embedding_reduced=reduced.tolist(),
            generation=model.generation,
            disliked_categories=interests.disliked_categories,
            updated_at=now,
        )
        profile.check_dims(s.d_high, s.d_low)
        await self.profiles.put(profile)
        log.info(f"Updated profile for {user_id} from {len(interests.items)} items (generation={model.generation})")
        return "updated"

    async def _due_users(self, now: datetime) -> List[str]:
        s = self.settings
        active = await self.interactions.active_users(now - timedelta(days=s.profile_window_days))
        due: Set[str] = set()
        for uid in active:
            status = await self.profiles.get_status(uid)
            if status.next_attempt is not None and status.next_attempt > now:
                continue
            profile = await self.profiles.get(uid)
            too_old = (
                profile is None
                or profile.updated_at is None
                or (now - profile.updated_at).total_seconds() > s.profile_max_age
            )
            if status.stale or too_old:
                due.add(uid)
        for status in await self.profiles.statuses():
            if status.stale and (status.next_attempt is None or status.next_attempt <= now):
                due.add(status.user_id)
        return sorted(due)

    async def recompute_stale(self) -> dict:
        """Batch recompute of stale profiles with bounded concurrency."""
        s = self.settings
        users = await self._due_users(self.clock())
        summary = {"users": len(users), "updated": 0, "reset": 0, "skipped": 0, "failed": 0, "queued": 0}
        if not users:
            return summary
        n_batches = (len(users) + s.batch_size - 1) // s.batch_size
        for b, start in enumerate(range(0, len(users), s.batch_size)):
            batch = users[start:start + s.batch_size]
            results = await asyncio.gather(*(self.update(uid) for uid in batch), return_exceptions=True)
            for uid, res in zip(batch, results):
                if isinstance(res, BaseException):
                    summary["failed"] += 1
                    log.error(f"Unexpected error updating profile {uid}: {res!r}")
                else:
                    summary[res] = summary.get(res, 0) + 1
            log.info(f"Profile batch {b + 1}/{n_batches} done: {summary}")
            if start + s.batch_size < len(users) and s.inter_batch_delay > 0:
                await asyncio.sleep(s.inter_batch_delay)
        return summary


def _shuffle_seed(user_id: str, page: int, now: datetime, salt: Optional[str]) -> int:
    return zlib.crc32(f"{user_id}:{page}:{now.strftime('%Y%m%d')}:{salt or ''}".encode("utf-8"))


class RecommendationService:
    def __init__(
        self,
        settings: Settings,
        corpus,
        interactions,
        profiles,
        reducers: ReducerRegistry,
        embedder: EmbeddingService,
        cache: FeedCache,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.corpus = corpus
        self.interactions = interactions
        self.profiles = profiles
        self.reducers = reducers
        self.embedder = embedder
        self.cache = cache
        self.clock = clock
        self.index = SimilarityIndex(corpus, reducers, settings.d_low)
        self.updater = ProfileUpdater(settings, corpus, interactions, profiles, reducers, embedder, cache, clock)
        self.warmer = CacheWarmer(
            self._warm_user,
            warm_interval=settings.warm_interval,
            active_window=settings.active_window,
            concurrency=settings.warm_concurrency,
        )
        self.weights = RankWeights(settings.w_similarity, settings.w_engagement, settings.w_recency)
        self._tasks: Set[asyncio.Task] = set()
        self.tier_counts: Dict[str, int] = {}

    # ---------- feed ----------
    async def get_feed(
        self,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        mode: str = "personalized",
        salt: Optional[str] = None,
    ) -> dict:
        limit = self.settings.feed_limit if limit is None else limit
        if mode not in TIERS_BY_MODE:
            raise ValueError(f"unknown feed mode: {mode}")
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be >= 1")
        self.warmer.mark_active(user_id)
        key = feed_key(user_id, mode, page, limit, salt)
        payload, from_cache = await self.cache.get_or_compute(
            key,
            self.cache.ttl_for(mode),
            lambda: self.compute_feed(user_id, page, limit, mode, salt),
        )
        return {**payload, "cached": from_cache}

    async def _excluded_ids(self, user_id: str, now: datetime) -> Set[str]:
        since = now - timedelta(days=self.settings.profile_window_days)
        return {e.content_id for e in await self.interactions.query(user_id, since=since)}

    async def compute_feed(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        mode: str = "personalized",
        salt: Optional[str] = None,
    ) -> dict:
        """Run the fallback chain for ``mode`` and rank one page, bypassing the cache."""
        s = self.settings
        now = self.clock()
        snap = await self.index.ensure_built()
        profile = await self.profiles.get(user_id)
        exclude = await self._excluded_ids(user_id, now)
        disliked = profile.disliked_categories if profile else frozenset()
        pool = max(s.candidate_pool, page * limit * 3)
        rng = random.Random(_shuffle_seed(user_id, page, now, salt))

        page_items: List[RankedItem] = []
        tier_used = None
        for tier in TIERS_BY_MODE[mode]:
            ranked = await self._tier(tier, snap, user_id, profile, exclude, disliked, pool, now, rng)
            if not ranked:
                continue
            page_items = paginate_with_source_cap(dedupe_titles(ranked), page, limit, s.per_source_cap)
            if page_items:
                tier_used = tier
                break

        self.tier_counts[tier_used or "none"] = self.tier_counts.get(tier_used or "none", 0) + 1
        page_items = banded_shuffle(page_items, s.shuffle_band, rng)
        contents = await self.corpus.get_many([it.content_id for it in page_items])
        items = []
        for it in page_items:
            content = contents.get(it.content_id)
            if content is None:
                continue
            items.append({**content.to_public(), "score": round(it.score, 6), "similarity": round(it.similarity, 6)})
        return {
            "items": items,
            "tier": tier_used,
            "status": "ok" if items else "no_content",
            "page": page,
            "limit": limit,
            "generated_at": now.isoformat(),
        }

    def _ranked_from_rows(self, snap: IndexSnapshot, rows: List[int]) -> List[RankedItem]:
        n = len(rows)
        return [
            RankedItem(
                content_id=snap.ids[r],
                source=snap.sources[r],
                title=snap.titles[r],
                score=float(n - i) / n,
            )
            for i, r in enumerate(rows)
        ]

    def _scored(
        self,
        snap: IndexSnapshot,
        rows: List[int],
        sims: List[float],
        now: datetime,
        disliked: frozenset,
        weights: RankWeights,
    ) -> List[RankedItem]:
        eng = snap.engagement_at(now)
        items = []
        for r, sim in zip(rows, sims):
            ts = snap.published_ts[r]
            published = None if np.isnan(ts) else datetime.fromtimestamp(float(ts), tz=now.tzinfo)
            items.append(
                RankedItem(
                    content_id=snap.ids[r],
                    source=snap.sources[r],
                    title=snap.titles[r],
                    score=0.0,
                    similarity=float(sim),
                    engagement=float(eng[r]),
                    recency=recency_score(published, now),
                )
            )
        return combine_scores(
            items,
            weights,
            disliked_categories=disliked,
            categories=[snap.categories[r] for r in rows],
            dislike_penalty=self.settings.dislike_penalty,
        )

    async def _tier(self, tier, snap, user_id, profile, exclude, disliked, pool, now, rng) -> List[RankedItem]:
        s = self.settings
        if tier == "personalized":
            if profile is None or profile.is_empty:
                return []
            try:
                cands = snap.query_profile(profile, pool, exclude, s.min_similarity)
            except StaleModelError as e:
                log.info(f"Skipping personalization for {user_id}: {e}")
                status = await self.profiles.get_status(user_id)
                if not status.stale:
                    status.stale = True
                    status.reason = "reducer generation changed"
                    await self.profiles.put_status(status)
                return []
            except DataError as e:
                log.warning(f"Personalized query failed for {user_id}: {e}")
                return []
            return self._scored(snap, [c.row for c in cands], [c.similarity for c in cands], now, disliked, self.weights)
        if tier == "trending":
            rows = snap.trending(pool, exclude, now, s.trending_max_age_days)
            weights = RankWeights(0.0, self.weights.engagement, self.weights.recency)
            return self._scored(snap, rows, [0.0] * len(rows), now, disliked, weights)
        if tier == "diverse":
            return self._ranked_from_rows(snap, snap.diverse(pool, exclude, rng, now))
        if tier == "newest":
            rows = snap.newest(pool, exclude)
            if not rows and exclude:
                rows = snap.newest(pool)
            return self._ranked_from_rows(snap, rows)
        raise ValueError(f"unknown tier: {tier}")

    async def _warm_user(self, user_id: str) -> None:
        # shares the in-flight build with any concurrent request for the same page
        limit = self.settings.feed_limit
        await self.cache.get_or_compute(
            feed_key(user_id, "personalized", 1, limit),
            self.cache.ttl_for("personalized"),
            lambda: self.compute_feed(user_id, 1, limit, "personalized"),
            refresh=True,
        )

    # ---------- writes ----------
    async def invalidate(self, user_id: str) -> int:
        return await self.cache.invalidate_user(user_id)

    async def record_interaction(self, event: InteractionEvent) -> None:
        await self.interactions.append(event)
        await self.corpus.apply_event(event)
        self.warmer.mark_active(event.user_id)
        if event.kind not in QUALIFYING_KINDS:
            return
        status = await self.profiles.get_status(event.user_id)
        status.stale = True
        status.reason = f"new {event.kind.value} interaction"
        await self.profiles.put_status(status)
        if event.kind in MATERIAL_KINDS:
            await self.invalidate(event.user_id)
        self.spawn(self.updater.update(event.user_id), name=f"profile-{event.user_id}")

    def spawn(self, coro, name: Optional[str] = None) -> asyncio.Task:
        """Fire-and-forget; failures are logged, never raised to the caller."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                log.error(f"Background task {t.get_name()} failed: {t.exception()!r}")

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------- maintenance ----------
    async def retrain_reducer(self, persist: bool = False):
        s = self.settings
        items = await self.corpus.all_items()
        sample = draw_training_sample(items, s.reducer_sample_caps)
        model = await asyncio.to_thread(
            fit,
            sample,
            d_low=s.d_low,
            min_samples=s.reducer_min_samples,
            generation=self.reducers.generation + 1,
            d_high=s.d_high,
        )
        self.reducers.install(model)

        valid = [
            it for it in items
            if it.embedding is not None and len(it.embedding) == s.d_high and np.all(np.isfinite(it.embedding))
        ]
        if valid:
            reduced = await asyncio.to_thread(project_many, model, np.asarray([it.embedding for it in valid]))
            await self.corpus.update_embeddings({
                it.id: {"embedding_reduced": reduced[i].tolist(), "reduced_generation": model.generation}
                for i, it in enumerate(valid)
            })
        marked = await self.profiles.mark_all_stale("reducer generation changed")
        log.info(f"Reducer generation {model.generation}: reprojected {len(valid)} items, {marked} profiles stale")
        if persist:
            await asyncio.to_thread(save_model, model, s.reducer_path)
        return model

    async def force_rebuild_index(self, retrain: bool = False) -> dict:
        if retrain or self.reducers.model is None:
            try:
                await self.retrain_reducer(persist=retrain)
            except InsufficientSampleError as e:
                log.warning(f"Reducer not trained: {e}")
        await self.index.rebuild()
        return self.index.stats()

    async def refresh_engagement_scores(self) -> int:
        now = self.clock()
        items = await self.corpus.all_items()
        scores = {
            it.id: engagement_score(it.likes, it.views, it.dislikes, it.published_at, now)
            for it in items
        }
        return await self.corpus.update_engagement_scores(scores)

    async def stats(self) -> dict:
        statuses = await self.profiles.statuses()
        stale = [st.to_public() for st in statuses if st.stale]
        return {
            "index": self.index.stats(),
            "reducer_generation": self.reducers.generation,
            "cache": self.cache.stats(),
            "warmer": self.warmer.stats(),
            "tiers": dict(self.tier_counts),
            "stale_profiles": len(stale),
            "stale": stale[:100],
            "background_tasks": len(self._tasks),
        }

    async def close(self) -> None:
        for t in list(self._tasks):
            t.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.embedder.close()
        await self.cache.store.close()


def build_service(settings: Settings, corpus=None, reducers: Optional[ReducerRegistry] = None) -> RecommendationService:
    """Assemble a service from settings with in-memory stores."""
    if corpus is None:
        corpus = load_corpus_ndjson(settings.corpus_path) if settings.corpus_path else MemoryCorpusStore()
    if reducers is None:
        model = load_model(settings.reducer_path) if os.path.exists(settings.reducer_path) else None
        if model is None:
            log.warning(f"No reducer at {settings.reducer_path}; one will be fitted on first rebuild")
        reducers = ReducerRegistry(model)
    return RecommendationService(
        settings,
        corpus=corpus,
        interactions=MemoryInteractionStore(settings.retention_days),
        profiles=MemoryProfileStore(),
        reducers=reducers,
        embedder=EmbeddingService(make_provider(settings), settings.d_high, settings.embed_timeout),
        cache=FeedCache(make_cache_store(settings.redis_url), settings.feed_ttl, settings.global_ttl),
    )
