from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from .errors import DataError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventKind(str, Enum):
    VIEW = "view"
    LIKE = "like"
    DISLIKE = "dislike"
    SAVE = "save"
    UNSAVE = "unsave"
    READ = "read"
    COMMENT = "comment"


# kinds that change the positive/negative signal enough to drop cached feeds
MATERIAL_KINDS = frozenset({EventKind.LIKE, EventKind.DISLIKE, EventKind.SAVE, EventKind.UNSAVE, EventKind.COMMENT})
QUALIFYING_KINDS = MATERIAL_KINDS | {EventKind.READ}


@dataclass
class ContentItem:
    id: str
    source: str
    title: str = ""
    snippet: str = ""
    kind: str = "article"
    embedding: Optional[Sequence[float]] = None
    embedding_reduced: Optional[Sequence[float]] = None
    reduced_generation: Optional[int] = None
    views: int = 0
    likes: int = 0
    dislikes: int = 0
    saves: int = 0
    published_at: Optional[datetime] = None
    categories: tuple = ()
    engagement_score: float = 0.0
    flagged: bool = False

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "title": self.title,
            "kind": self.kind,
            "categories": list(self.categories),
            "views": self.views,
            "likes": self.likes,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }


@dataclass(frozen=True)
class InteractionEvent:
    user_id: str
    content_id: str
    kind: EventKind
    timestamp: datetime
    duration: Optional[float] = None


@dataclass
class UserProfile:
    user_id: str
    embedding: list = field(default_factory=list)
    embedding_reduced: list = field(default_factory=list)
    generation: Optional[int] = None
    disliked_categories: frozenset = frozenset()
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        has_high = len(self.embedding) > 0
        has_low = len(self.embedding_reduced) > 0
        if has_high != has_low:
            raise DataError(f"profile {self.user_id}: embeddings must be both empty or both populated")

    @property
    def is_empty(self) -> bool:
        return not self.embedding

    def check_dims(self, d_high: int, d_low: int) -> None:
        if self.is_empty:
            return
        if len(self.embedding) != d_high or len(self.embedding_reduced) != d_low:
            raise DataError(
                f"profile {self.user_id}: expected {d_high}/{d_low} dims, "
                f"got {len(self.embedding)}/{len(self.embedding_reduced)}"
            )

    def reduced_vector(self) -> np.ndarray:
        return np.asarray(self.embedding_reduced, dtype=np.float32)


@dataclass
class ProfileStatus:
    user_id: str
    stale: bool = True
    reason: str = "never computed"
    last_attempt: Optional[datetime] = None
    failures: int = 0
    next_attempt: Optional[datetime] = None

    def to_public(self) -> dict:
        return {
            "user_id": self.user_id,
            "stale": self.stale,
            "reason": self.reason,
            "failures": self.failures,
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "next_attempt": self.next_attempt.isoformat() if self.next_attempt else None,
        }
