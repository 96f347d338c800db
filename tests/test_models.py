import dataclasses
import uuid
from datetime import datetime, timezone

import pytest

from gator.models import Feed, FeedFollow, Post, User

WHEN = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_user_equality_by_value():
    user_id = uuid.uuid4()
    a = User(user_id, WHEN, WHEN, "alice")
    b = User(user_id, WHEN, WHEN, "alice")
    assert a == b
    assert hash(a) == hash(b)


def test_user_differs_by_name():
    user_id = uuid.uuid4()
    assert User(user_id, WHEN, WHEN, "alice") != User(user_id, WHEN, WHEN, "bob")


def test_feed_last_fetched_defaults_to_none():
    feed = Feed(uuid.uuid4(), WHEN, WHEN, "news", "https://example.com/rss", None)
    assert feed.last_fetched_at is None
    assert feed.user_id is None


def test_feed_is_frozen():
    feed = Feed(uuid.uuid4(), WHEN, WHEN, "news", "https://example.com/rss", None)
    with pytest.raises(dataclasses.FrozenInstanceError):
        feed.name = "other"
    assert feed.name == "news"


def test_post_replace_keeps_other_fields():
    post = Post(uuid.uuid4(), WHEN, WHEN, "t", "https://example.com/a", None, None, uuid.uuid4())
    changed = dataclasses.replace(post, description="d")
    assert changed.description == "d"
    assert dataclasses.replace(changed, description=None) == post


def test_feed_follow_set_deduplicates():
    fields = (uuid.uuid4(), WHEN, WHEN, uuid.uuid4(), uuid.uuid4())
    assert len({FeedFollow(*fields), FeedFollow(*fields)}) == 1