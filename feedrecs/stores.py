"""Boundary stores: corpus, interactions and profiles.

The in-memory implementations back tests and single-process deployments; a
database-backed store only has to provide the same coroutine methods.
"""
from __future__ import annotations

import bisect
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import orjson

from .models import ContentItem, EventKind, InteractionEvent, ProfileStatus, UserProfile, as_utc, utcnow

log = logging.getLogger(__name__)

_COUNTER_FIELDS = {
    EventKind.VIEW: "views",
    EventKind.LIKE: "likes",
    EventKind.DISLIKE: "dislikes",
    EventKind.SAVE: "saves",
}


class MemoryCorpusStore:
    def __init__(self, items: Iterable[ContentItem] = ()):
        self._items: Dict[str, ContentItem] = {}
        for item in items:
            self._items[item.id] = item

    def __len__(self) -> int:
        return len(self._items)

    async def all_items(self, include_flagged: bool = False) -> List[ContentItem]:
        return [i for i in self._items.values() if include_flagged or not i.flagged]

    async def get_many(self, ids: Iterable[str]) -> Dict[str, ContentItem]:
        return {cid: self._items[cid] for cid in ids if cid in self._items}

    async def upsert(self, items: Iterable[ContentItem]) -> int:
        n = 0
        for item in items:
            self._items[item.id] = item
            n += 1
        return n

    async def update_embeddings(self, updates: Dict[str, dict]) -> int:
        """Batch upsert of embedding fields, keyed by content id."""
        n = 0
        for cid, values in updates.items():
            item = self._items.get(cid)
            if item is None:
                continue
            for key in ("embedding", "embedding_reduced", "reduced_generation"):
                if key in values:
                    setattr(item, key, values[key])
            n += 1
        return n

    async def update_engagement_scores(self, scores: Dict[str, float]) -> int:
        n = 0
        for cid, score in scores.items():
            item = self._items.get(cid)
            if item is not None:
                item.engagement_score = float(score)
                n += 1
        return n

    async def apply_event(self, event: InteractionEvent) -> None:
        item = self._items.get(event.content_id)
        if item is None:
            return
        if event.kind == EventKind.UNSAVE:
            item.saves = max(0, item.saves - 1)
            return
        attr = _COUNTER_FIELDS.get(event.kind)
        if attr:
            setattr(item, attr, getattr(item, attr) + 1)

    async def flag(self, content_id: str) -> bool:
        item = self._items.get(content_id)
        if item is None:
            return False
        item.flagged = True
        return True


class MemoryInteractionStore:
    """Append-only event log with TTL pruning by retention window."""

    def __init__(self, retention_days: int = 90):
        self.retention = timedelta(days=retention_days)
        self._by_user: Dict[str, List[InteractionEvent]] = defaultdict(list)

    async def append(self, event: InteractionEvent) -> None:
        event = InteractionEvent(
            user_id=event.user_id,
            content_id=event.content_id,
            kind=EventKind(event.kind),
            timestamp=as_utc(event.timestamp),
            duration=event.duration,
        )
        events = self._by_user[event.user_id]
        # keep per-user lists ordered by timestamp
        keys = [e.timestamp for e in events]
        events.insert(bisect.bisect_right(keys, event.timestamp), event)
        cutoff = events[-1].timestamp - self.retention
        if events[0].timestamp < cutoff:
            self._by_user[event.user_id] = [e for e in events if e.timestamp >= cutoff]

    async def query(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> List[InteractionEvent]:
        kinds = set(kinds) if kinds else None
        out = []
        for e in self._by_user.get(user_id, ()):
            if since is not None and e.timestamp < since:
                continue
            if kinds is not None and e.kind not in kinds:
                continue
            out.append(e)
        return out

    async def active_users(self, since: datetime) -> List[str]:
        return sorted(
            uid for uid, events in self._by_user.items() if events and events[-1].timestamp >= since
        )

    async def prune(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - self.retention
        removed = 0
        for uid in list(self._by_user):
            events = self._by_user[uid]
            keep = [e for e in events if e.timestamp >= cutoff]
            removed += len(events) - len(keep)
            if keep:
                self._by_user[uid] = keep
            else:
                del self._by_user[uid]
        if removed:
            log.info(f"Pruned {removed} interaction events older than {cutoff.isoformat()}")
        return removed


class MemoryProfileStore:
    def __init__(self):
        self._profiles: Dict[str, UserProfile] = {}
        self._status: Dict[str, ProfileStatus] = {}

    async def get(self, user_id: str) -> Optional[UserProfile]:
        return self._profiles.get(user_id)

    async def put(self, profile: UserProfile) -> None:
        self._profiles[profile.user_id] = profile

    async def get_status(self, user_id: str) -> ProfileStatus:
        status = self._status.get(user_id)
        if status is None:
            status = ProfileStatus(user_id=user_id)
            self._status[user_id] = status
        return status

    async def put_status(self, status: ProfileStatus) -> None:
        self._status[status.user_id] = status

    async def statuses(self) -> List[ProfileStatus]:
        return list(self._status.values())

    async def mark_all_stale(self, reason: str) -> int:
        n = 0
        for uid in set(self._profiles) | set(self._status):
            status = await self.get_status(uid)
            status.stale = True
            status.reason = reason
            status.next_attempt = None
            n += 1
        return n


def _parse_dt(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def content_from_record(m: dict) -> ContentItem:
    return ContentItem(
        id=str(m["id"]),
        source=str(m.get("source") or "unknown"),
        title=m.get("title") or "",
        snippet=m.get("snippet") or m.get("content") or m.get("description") or "",
        kind=m.get("kind") or "article",
        embedding=m.get("embedding") or None,
        embedding_reduced=m.get("embedding_reduced") or None,
        reduced_generation=m.get("reduced_generation"),
        views=int(m.get("views") or 0),
        likes=int(m.get("likes") or 0),
        dislikes=int(m.get("dislikes") or 0),
        saves=int(m.get("saves") or 0),
        published_at=_parse_dt(m.get("published_at")),
        categories=tuple(m.get("categories") or ()),
        flagged=bool(m.get("flagged", False)),
    )


def content_to_record(item: ContentItem) -> dict:
    rec = {
        "id": item.id,
        "source": item.source,
        "title": item.title,
        "snippet": item.snippet,
        "kind": item.kind,
        "views": item.views,
        "likes": item.likes,
        "dislikes": item.dislikes,
        "saves": item.saves,
        "published_at": item.published_at.isoformat() if item.published_at else None,
        "categories": list(item.categories),
        "flagged": item.flagged,
    }
    if item.embedding is not None:
        rec["embedding"] = [float(x) for x in item.embedding]
    if item.embedding_reduced is not None:
        rec["embedding_reduced"] = [float(x) for x in item.embedding_reduced]
        rec["reduced_generation"] = item.reduced_generation
    return rec


def stream_ndjson(path):
    with open(path, "rb") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            yield orjson.loads(line)


def load_corpus_ndjson(path) -> MemoryCorpusStore:
    items = []
    skipped = 0
    for rec in stream_ndjson(Path(path)):
        try:
            items.append(content_from_record(rec))
        except (KeyError, ValueError, TypeError) as e:
            skipped += 1
            log.warning(f"Skipping malformed corpus record: {e}")
    log.info(f"Loaded {len(items)} content items from {path} ({skipped} skipped)")
    return MemoryCorpusStore(items)
