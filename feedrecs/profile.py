"""Turn a user's interaction history into a weighted interest set."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .models import EventKind, InteractionEvent

# Signal strength per event kind; read is scaled by duration
DEFAULT_WEIGHTS = {
    EventKind.LIKE: 3.0,
    EventKind.SAVE: 2.5,
    EventKind.COMMENT: 3.5,
    EventKind.VIEW: 1.0,
    EventKind.READ: 1.5,
}
READ_DURATION_UNIT = 10.0
READ_MAX_MULTIPLIER = 2.0


def read_weight(duration: Optional[float], base: float) -> float:
    d = duration if duration and duration > 0 else 1.0
    return min(d / READ_DURATION_UNIT, READ_MAX_MULTIPLIER) * base


@dataclass(frozen=True)
class WeightedItem:
    content_id: str
    weight: float
    last_seen: datetime


@dataclass
class InterestSet:
    items: List[WeightedItem] = field(default_factory=list)
    disliked_categories: frozenset = frozenset()
    disliked_ids: frozenset = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.items

    def weights(self) -> Dict[str, float]:
        return {it.content_id: it.weight for it in self.items}


def aggregate_interests(
    events: Iterable[InteractionEvent],
    categories_by_content: Mapping[str, Iterable[str]],
    *,
    now: datetime,
    window_days: int = 30,
    max_items: int = 30,
    weights: Optional[Mapping[EventKind, float]] = None,
) -> InterestSet:
    """Max-weight merge of positive signals, dislikes kept apart.

    Each content item keeps the strongest of its active signals; repeated
    exposure never adds up. An ``unsave`` cancels an earlier ``save`` and a
    ``dislike`` removes the item from the positive set entirely.
    """
    weights = dict(DEFAULT_WEIGHTS if weights is None else weights)
    cutoff = now - timedelta(days=window_days)
    ordered = sorted(
        (e for e in events if cutoff <= e.timestamp <= now),
        key=lambda e: e.timestamp,
    )

    # content_id -> {signal kind: weight}; the save entry is dropped on unsave
    signals: Dict[str, Dict[EventKind, float]] = {}
    last_seen: Dict[str, datetime] = {}
    disliked_ids = set()

    for e in ordered:
        kind = EventKind(e.kind)
        if kind == EventKind.DISLIKE:
            disliked_ids.add(e.content_id)
            continue
        if kind == EventKind.UNSAVE:
            signals.get(e.content_id, {}).pop(EventKind.SAVE, None)
            continue
        if kind == EventKind.READ:
            w = read_weight(e.duration, weights.get(EventKind.READ, 0.0))
        else:
            w = weights.get(kind)
            if w is None:
                continue
        per_item = signals.setdefault(e.content_id, {})
        per_item[kind] = max(per_item.get(kind, 0.0), w)
        last_seen[e.content_id] = e.timestamp

    disliked_categories = set()
    for cid in disliked_ids:
        disliked_categories.update(categories_by_content.get(cid, ()))

    merged: List[Tuple[str, float, datetime]] = []
    for cid, per_item in signals.items():
        if cid in disliked_ids or not per_item:
            continue
        w = max(per_item.values())
        if w <= 0:
            continue
        merged.append((cid, w, last_seen[cid]))

    merged.sort(key=lambda t: (-t[1], -t[2].timestamp(), t[0]))
    return InterestSet(
        items=[WeightedItem(cid, w, ts) for cid, w, ts in merged[:max_items]],
        disliked_categories=frozenset(disliked_categories),
        disliked_ids=frozenset(disliked_ids),
    )
