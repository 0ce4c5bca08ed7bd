"""Scoring, de-duplication, per-source caps and banded shuffling."""
from __future__ import annotations

import math
import random
import re
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

import numpy as np

RECENCY_DAYS = 30.0
UNKNOWN_RECENCY = 0.5
SECONDS_PER_DAY = 86400.0


def recency_score(published_at: Optional[datetime], now: datetime) -> float:
    if published_at is None:
        return UNKNOWN_RECENCY
    days = max(0.0, (now - published_at).total_seconds() / SECONDS_PER_DAY)
    return math.exp(-days / RECENCY_DAYS)


def engagement_score(
    likes: int,
    views: int,
    dislikes: int,
    published_at: Optional[datetime],
    now: datetime,
) -> float:
    like_ratio = likes / views if views > 0 else 0.0
    dislike_ratio = dislikes / views if views > 0 else 0.0
    base = likes * 2 + views * 0.1 - dislikes * 0.5
    score = base * recency_score(published_at, now) * (1 + like_ratio - dislike_ratio)
    return max(0.0, score)


def engagement_scores(
    likes: np.ndarray,
    views: np.ndarray,
    dislikes: np.ndarray,
    published_ts: np.ndarray,
    now_ts: float,
) -> np.ndarray:
    """Vectorized engagement_score; NaN in published_ts means unknown date."""
    likes = likes.astype(np.float64)
    views = views.astype(np.float64)
    dislikes = dislikes.astype(np.float64)
    safe_views = np.where(views > 0, views, 1.0)
    like_ratio = np.where(views > 0, likes / safe_views, 0.0)
    dislike_ratio = np.where(views > 0, dislikes / safe_views, 0.0)
    days = np.maximum(0.0, (now_ts - np.nan_to_num(published_ts, nan=now_ts)) / SECONDS_PER_DAY)
    recency = np.where(np.isnan(published_ts), UNKNOWN_RECENCY, np.exp(-days / RECENCY_DAYS))
    base = likes * 2 + views * 0.1 - dislikes * 0.5
    return np.maximum(0.0, base * recency * (1 + like_ratio - dislike_ratio))


@dataclass(frozen=True)
class RankedItem:
    content_id: str
    source: str
    title: str
    score: float
    similarity: float = 0.0
    engagement: float = 0.0
    recency: float = 0.0


@dataclass(frozen=True)
class RankWeights:
    similarity: float = 0.6
    engagement: float = 0.25
    recency: float = 0.15


def combine_scores(
    items: Sequence[RankedItem],
    weights: RankWeights,
    disliked_categories: frozenset = frozenset(),
    categories: Optional[Sequence[Iterable[str]]] = None,
    dislike_penalty: float = 0.85,
) -> List[RankedItem]:
    """Weighted sum of similarity, pool-normalized engagement and recency, sorted desc."""
    if not items:
        return []
    max_eng = max(it.engagement for it in items)
    out = []
    for i, it in enumerate(items):
        eng_norm = it.engagement / max_eng if max_eng > 0 else 0.0
        score = weights.similarity * it.similarity + weights.engagement * eng_norm + weights.recency * it.recency
        if disliked_categories and categories is not None and disliked_categories.intersection(categories[i]):
            score *= dislike_penalty
        out.append(replace(it, score=float(score)))
    out.sort(key=lambda it: (-it.score, it.content_id))
    return out


def _norm_title(s: str) -> str:
    s = (s or "").lower().strip()
    s = re.sub(r"\s+", " ", s)
    return re.sub(r"[^\w\s]", "", s)


def dedupe_titles(ranked: Sequence[RankedItem]) -> List[RankedItem]:
    """Keep the highest-scored item per normalized title; input must be sorted."""
    seen = set()
    out = []
    for it in ranked:
        key = _norm_title(it.title) or f"id:{it.content_id}"
        if key in seen:
            continue
        seen.add(key)
        out.append(it)
    return out


def paginate_with_source_cap(
    ranked: Sequence[RankedItem],
    page: int,
    limit: int,
    cap: int = 2,
) -> List[RankedItem]:
    """Return page ``page`` (1-based) with at most ``cap`` items per source.

    Pages are carved greedily from the ranked list: each page takes the best
    remaining items that still fit the cap, and lower-ranked items from other
    sources move up to fill the gaps. The cap is relaxed only when the
    remaining pool has fewer than ``limit / 2`` distinct sources; otherwise a
    page that cannot be filled under the cap comes back short.
    """
    remaining = list(ranked)
    current: List[RankedItem] = []
    for _ in range(max(1, page)):
        if not remaining:
            return []
        current, leftovers = [], []
        counts: Counter = Counter()
        for it in remaining:
            if len(current) < limit and counts[it.source] < cap:
                current.append(it)
                counts[it.source] += 1
            else:
                leftovers.append(it)
        if len(current) < limit and leftovers and len({it.source for it in remaining}) < limit / 2:
            fill = leftovers[: limit - len(current)]
            current.extend(fill)
            taken = {id(x) for x in fill}
            leftovers = [x for x in leftovers if id(x) not in taken]
            current.sort(key=lambda it: (-it.score, it.content_id))
        remaining = leftovers
    return current


def banded_shuffle(items: Sequence[RankedItem], band: float, rng: random.Random) -> List[RankedItem]:
    """Shuffle within runs of near-equal scores; never across wider gaps."""
    out: List[RankedItem] = []
    i = 0
    n = len(items)
    while i < n:
        head = items[i].score
        j = i + 1
        while j < n and head - items[j].score <= band:
            j += 1
        group = list(items[i:j])
        rng.shuffle(group)
        out.extend(group)
        i = j
    return out
