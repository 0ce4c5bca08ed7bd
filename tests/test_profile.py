from datetime import timedelta

import pytest

from feedrecs.models import EventKind
from feedrecs.profile import aggregate_interests, read_weight

from conftest import NOW, event


def _weights(events, cats=None, **kw):
    return aggregate_interests(events, cats or {}, now=NOW, **kw).weights()


def test_duplicate_signals_keep_max_not_sum():
    events = [event("u", "a", EventKind.VIEW, m) for m in (30, 20, 10)]
    events.append(event("u", "a", EventKind.LIKE, 5))
    events.append(event("u", "a", EventKind.LIKE, 1))
    assert _weights(events) == {"a": 3.0}


def test_reapplying_same_events_is_idempotent():
    events = [event("u", "a", EventKind.LIKE), event("u", "b", EventKind.VIEW)]
    assert _weights(events) == _weights(events + events)


def test_read_weight_scales_with_duration_and_caps():
    assert read_weight(10, 1.5) == pytest.approx(1.5)
    assert read_weight(100, 1.5) == pytest.approx(3.0)
    # missing duration counts as one second
    assert read_weight(None, 1.5) == pytest.approx(0.15)


def test_unsave_cancels_save_and_later_save_restores_it():
    events = [
        event("u", "a", EventKind.VIEW, 30),
        event("u", "a", EventKind.SAVE, 20),
        event("u", "a", EventKind.UNSAVE, 10),
    ]
    assert _weights(events) == {"a": 1.0}
    assert _weights(events + [event("u", "a", EventKind.SAVE, 1)]) == {"a": 2.5}


def test_unsave_alone_leaves_no_signal():
    assert _weights([event("u", "a", EventKind.UNSAVE)]) == {}


def test_dislike_removes_item_and_collects_categories():
    events = [event("u", "a", EventKind.LIKE, 20), event("u", "a", EventKind.DISLIKE, 10)]
    out = aggregate_interests(events, {"a": ("politics", "news")}, now=NOW)
    assert out.is_empty
    assert out.disliked_ids == frozenset({"a"})
    assert out.disliked_categories == frozenset({"politics", "news"})


def test_events_outside_window_are_ignored():
    old = event("u", "a", EventKind.LIKE)
    old = type(old)(old.user_id, old.content_id, old.kind, NOW - timedelta(days=31))
    assert _weights([old, event("u", "b", EventKind.VIEW)], window_days=30) == {"b": 1.0}


def test_output_sorted_and_capped():
    events = [event("u", f"v{i}", EventKind.VIEW, 100 - i) for i in range(5)]
    events.append(event("u", "liked", EventKind.LIKE, 200))
    out = aggregate_interests(events, {}, now=NOW, max_items=3)
    ids = [it.content_id for it in out.items]
    # like first, then views by most recent
    assert ids == ["liked", "v4", "v3"]


def test_empty_history_is_an_empty_set():
    out = aggregate_interests([], {}, now=NOW)
    assert out.is_empty
    assert out.disliked_categories == frozenset()
