"""In-memory similarity index over reduced content vectors.

A snapshot is an immutable arena: one unit-normalized (n, d_low) matrix plus
parallel metadata arrays indexed by row. Every unflagged item gets a row;
items without a usable vector keep a zero row and are only reachable through
the trending, newest and diverse listings. Rebuilds produce a new snapshot and
swap the reference, so readers never see a half-built index.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from functools import cached_property
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import DataError, StaleModelError
from .models import ContentItem, UserProfile, utcnow
from .ranking import engagement_scores
from .reducer import ReducerModel, project

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    content_id: str
    row: int
    similarity: float


@dataclass(frozen=True)
class BuildReport:
    indexed: int
    skipped: int
    reprojected: int


@dataclass(frozen=True)
class IndexSnapshot:
    generation: int
    d_low: int
    ids: Tuple[str, ...]
    vecs: np.ndarray             # (n, d_low) float32, unit rows or zeros
    has_vec: np.ndarray          # (n,) bool
    likes: np.ndarray
    views: np.ndarray
    dislikes: np.ndarray
    published_ts: np.ndarray     # epoch seconds, NaN when unknown
    sources: Tuple[str, ...]
    titles: Tuple[str, ...]
    categories: Tuple[frozenset, ...]
    built_at: datetime = field(default_factory=utcnow)

    def __len__(self) -> int:
        return len(self.ids)

    @property
    def vector_count(self) -> int:
        return int(self.has_vec.sum())

    @cached_property
    def row_of(self) -> Dict[str, int]:
        return {cid: i for i, cid in enumerate(self.ids)}

    def _mask(self, exclude_ids: Iterable[str]) -> np.ndarray:
        mask = np.ones(len(self.ids), dtype=bool)
        if exclude_ids:
            rows = self.row_of
            for cid in exclude_ids:
                ix = rows.get(cid)
                if ix is not None:
                    mask[ix] = False
        return mask

    def engagement_at(self, now: datetime) -> np.ndarray:
        return engagement_scores(self.likes, self.views, self.dislikes, self.published_ts, now.timestamp())

    def query(
        self,
        profile_vector: Sequence[float],
        k: int,
        exclude_ids: Iterable[str] = (),
        min_score: float = 0.1,
    ) -> List[Candidate]:
        """Top-k rows by cosine similarity to ``profile_vector``."""
        u = np.asarray(profile_vector, dtype=np.float32)
        if u.ndim != 1 or u.shape[0] != self.d_low:
            raise DataError(f"expected {self.d_low}D query vector, got shape {u.shape}")
        if len(self.ids) == 0 or k <= 0:
            return []
        n = float(np.linalg.norm(u))
        if not np.isfinite(n) or n == 0.0:
            return []
        sims = self.vecs @ (u / n)
        valid = self.has_vec & self._mask(exclude_ids) & (sims >= min_score)
        idx = np.flatnonzero(valid)
        if idx.size == 0:
            return []
        k = min(k, idx.size)
        top = idx[np.argpartition(-sims[idx], k - 1)[:k]]
        top = top[np.lexsort((top, -sims[top]))]
        return [Candidate(self.ids[i], int(i), float(sims[i])) for i in top]

    def query_profile(
        self,
        profile: UserProfile,
        k: int,
        exclude_ids: Iterable[str] = (),
        min_score: float = 0.1,
    ) -> List[Candidate]:
        if profile.generation != self.generation:
            raise StaleModelError(self.generation, profile.generation)
        return self.query(profile.reduced_vector(), k, exclude_ids, min_score)

    def trending(
        self,
        k: int,
        exclude_ids: Iterable[str] = (),
        now: Optional[datetime] = None,
        max_age_days: int = 7,
    ) -> List[int]:
        """Rows ranked by engagement with recency decay, recent items only."""
        now = now or utcnow()
        if len(self.ids) == 0 or k <= 0:
            return []
        cutoff = (now - timedelta(days=max_age_days)).timestamp()
        with np.errstate(invalid="ignore"):
            recent = self.published_ts >= cutoff
        idx = np.flatnonzero(self._mask(exclude_ids) & recent)
        if idx.size == 0:
            return []
        eng = self.engagement_at(now)
        pub = np.nan_to_num(self.published_ts, nan=0.0)
        order = idx[np.lexsort((-pub[idx], -eng[idx]))]
        return [int(i) for i in order[:k]]

    def newest(self, k: int, exclude_ids: Iterable[str] = ()) -> List[int]:
        """Rows by publication date, then views."""
        if len(self.ids) == 0 or k <= 0:
            return []
        idx = np.flatnonzero(self._mask(exclude_ids))
        if idx.size == 0:
            return []
        pub = np.nan_to_num(self.published_ts, nan=-np.inf)
        order = idx[np.lexsort((-self.views[idx], -pub[idx]))]
        return [int(i) for i in order[:k]]

    def diverse(
        self,
        k: int,
        exclude_ids: Iterable[str] = (),
        rng: Optional[random.Random] = None,
        now: Optional[datetime] = None,
    ) -> List[int]:
        """One row per distinct source, then random fill."""
        rng = rng or random.Random()
        if len(self.ids) == 0 or k <= 0:
            return []
        idx = np.flatnonzero(self._mask(exclude_ids))
        eng = self.engagement_at(now or utcnow())
        order = idx[np.argsort(-eng[idx], kind="stable")]
        picked: List[int] = []
        seen_sources = set()
        for i in order:
            src = self.sources[i]
            if src in seen_sources:
                continue
            seen_sources.add(src)
            picked.append(int(i))
            if len(picked) >= k:
                return picked
        taken = set(picked)
        rest = [int(i) for i in idx if int(i) not in taken]
        rng.shuffle(rest)
        picked.extend(rest[: k - len(picked)])
        return picked


def empty_snapshot(d_low: int, generation: int = 0) -> IndexSnapshot:
    return IndexSnapshot(
        generation=generation,
        d_low=d_low,
        ids=(),
        vecs=np.zeros((0, d_low), dtype=np.float32),
        has_vec=np.zeros(0, dtype=bool),
        likes=np.zeros(0, dtype=np.int64),
        views=np.zeros(0, dtype=np.int64),
        dislikes=np.zeros(0, dtype=np.int64),
        published_ts=np.zeros(0, dtype=np.float64),
        sources=(),
        titles=(),
        categories=(),
    )


def _reduced_vector(item: ContentItem, model: ReducerModel) -> Tuple[Optional[np.ndarray], bool]:
    """Reduced vector for the model's generation; (vector, was_reprojected)."""
    if item.embedding_reduced is not None and item.reduced_generation == model.generation:
        v = np.asarray(item.embedding_reduced, dtype=np.float32)
        if v.ndim == 1 and v.shape[0] == model.d_low and np.all(np.isfinite(v)):
            return v, False
    if item.embedding is not None and len(item.embedding) > 0:
        try:
            return project(model, item.embedding), True
        except DataError:
            return None, False
    return None, False


def build_snapshot(
    items: Iterable[ContentItem],
    model: Optional[ReducerModel],
    d_low: Optional[int] = None,
) -> Tuple[IndexSnapshot, BuildReport]:
    """Snapshot of every unflagged item; vectors only where ``model`` can supply one."""
    d = model.d_low if model is not None else d_low
    if d is None:
        raise ValueError("d_low is required when no reducer model is given")
    ids, vecs, has_vec, likes, views, dislikes, pub = [], [], [], [], [], [], []
    sources, titles, cats = [], [], []
    skipped = reprojected = 0
    seen = set()
    zero = np.zeros(d, dtype=np.float32)
    for item in items:
        if item.flagged or item.id in seen:
            continue
        seen.add(item.id)
        v, was_reprojected = None, False
        if model is not None:
            try:
                v, was_reprojected = _reduced_vector(item, model)
            except (TypeError, ValueError) as e:
                log.warning(f"Content {item.id} has a malformed vector, listing only: {e}")
        norm = float(np.linalg.norm(v)) if v is not None else 0.0
        if v is None or not np.isfinite(norm) or norm == 0.0:
            skipped += 1
            vecs.append(zero)
            has_vec.append(False)
        else:
            reprojected += int(was_reprojected)
            vecs.append(v / norm)
            has_vec.append(True)
        ids.append(item.id)
        likes.append(item.likes)
        views.append(item.views)
        dislikes.append(item.dislikes)
        pub.append(item.published_at.timestamp() if item.published_at else np.nan)
        sources.append(item.source)
        titles.append(item.title)
        cats.append(frozenset(item.categories))

    generation = model.generation if model is not None else 0
    if not ids:
        snap = empty_snapshot(d, generation)
    else:
        snap = IndexSnapshot(
            generation=generation,
            d_low=d,
            ids=tuple(ids),
            vecs=np.vstack(vecs).astype(np.float32),
            has_vec=np.asarray(has_vec, dtype=bool),
            likes=np.asarray(likes, dtype=np.int64),
            views=np.asarray(views, dtype=np.int64),
            dislikes=np.asarray(dislikes, dtype=np.int64),
            published_ts=np.asarray(pub, dtype=np.float64),
            sources=tuple(sources),
            titles=tuple(titles),
            categories=tuple(cats),
        )
    return snap, BuildReport(indexed=snap.vector_count, skipped=skipped, reprojected=reprojected)


class SimilarityIndex:
    """Holder of the current snapshot; one rebuild at a time, atomic swap."""

    def __init__(self, corpus, reducers, d_low: int):
        self.corpus = corpus
        self.reducers = reducers
        self.d_low = d_low
        self._snapshot: Optional[IndexSnapshot] = None
        self._lock = asyncio.Lock()
        self.last_report: Optional[BuildReport] = None
        self.rebuilds = 0

    @property
    def current(self) -> Optional[IndexSnapshot]:
        return self._snapshot

    @property
    def is_built(self) -> bool:
        return self._snapshot is not None

    async def _rebuild_locked(self) -> IndexSnapshot:
        model = self.reducers.model
        items = await self.corpus.all_items()
        if model is None:
            log.warning("No reducer model installed; indexing metadata only")
        snap, report = await asyncio.to_thread(build_snapshot, items, model, self.d_low)
        self._snapshot = snap
        self.last_report = report
        self.rebuilds += 1
        log.info(
            f"Index rebuilt: generation={snap.generation} indexed={report.indexed} "
            f"skipped={report.skipped} reprojected={report.reprojected}"
        )
        return snap

    async def rebuild(self) -> IndexSnapshot:
        async with self._lock:
            return await self._rebuild_locked()

    async def ensure_built(self) -> IndexSnapshot:
        snap = self._snapshot
        if snap is not None:
            return snap
        async with self._lock:
            if self._snapshot is not None:
                return self._snapshot
            log.info("Index not built, building now...")
            return await self._rebuild_locked()

    def stats(self) -> dict:
        snap = self._snapshot
        return {
            "built": snap is not None,
            "size": len(snap) if snap is not None else 0,
            "vectors": snap.vector_count if snap is not None else 0,
            "generation": snap.generation if snap is not None else None,
            "built_at": snap.built_at.isoformat() if snap is not None else None,
            "rebuilds": self.rebuilds,
            "last_skipped": self.last_report.skipped if self.last_report else 0,
        }
