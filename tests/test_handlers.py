import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from unittest import mock

import pytest

from gator.config import Command, Config, State
from gator.handlers import (
    HandlerError,
    add_feed,
    agg,
    handler_browse,
    handler_feeds,
    handler_follow,
    handler_following,
    handler_list,
    handler_login,
    handler_register,
    handler_reset,
    handler_unfollow,
    parse_duration,
    scrape_feed,
    scrape_feeds,
)
from gator.models import Feed
from gator.queries import Queries

RSS = (
    b'<?xml version="1.0"?><rss version="2.0"><channel>'
    b"<title>Example</title><link>http://example.com/</link><description>d</description>"
    b"<item><title>First &amp;amp; post</title><link>http://example.com/1</link>"
    b"<pubDate>Mon, 02 Jan 2006 15:04:05 -0700</pubDate><description>one</description></item>"
    b"<item><title>Second</title><link>http://example.com/2</link>"
    b"<pubDate>not a date</pubDate><description>two</description></item>"
    b"</channel></rss>"
)


class _Stop(Exception):
    pass


class _FeedHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path == "/feed.xml":
            self.send_response(200)
            self.send_header("Content-Type", "application/rss+xml")
            self.send_header("Content-Length", str(len(RSS)))
            self.end_headers()
            self.wfile.write(RSS)
        else:
            self.send_response(404)
            self.send_header("Content-Length", "0")
            self.end_headers()

    def log_message(self, *args):
        pass


@pytest.fixture
def feed_server(monkeypatch):
    for name in ("http_proxy", "HTTP_PROXY", "https_proxy", "HTTPS_PROXY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("no_proxy", "*")
    monkeypatch.setenv("NO_PROXY", "*")
    server = HTTPServer(("127.0.0.1", 0), _FeedHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def state():
    connection = sqlite3.connect(":memory:")
    queries = Queries(connection)
    queries.create_schema()
    yield State(Config(), queries)
    connection.close()


def _register(state, name):
    return handler_register(state, Command("register", [name]))


def _add(state, user, name, url):
    return add_feed(state, Command("addfeed", [name, url]), user)


# parse_duration


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("1.5s", timedelta(seconds=1.5)),
        ("-2m", timedelta(minutes=-2)),
        ("+3ms", timedelta(milliseconds=3)),
        ("0", timedelta(0)),
        ("10us", timedelta(microseconds=10)),
        ("7\u00b5s", timedelta(microseconds=7)),
        (".5h", timedelta(minutes=30)),
    ],
)
def test_parse_duration_values(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "-", ".s", "abc"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError, match="invalid duration"):
        parse_duration(text)


def test_parse_duration_missing_unit():
    with pytest.raises(ValueError, match="missing unit"):
        parse_duration("5")


def test_parse_duration_unknown_unit():
    with pytest.raises(ValueError, match="unknown unit"):
        parse_duration("5x")


# users


def test_register_sets_current_user(state, capsys):
    user = _register(state, "alice")
    assert user.name == "alice"
    assert state.config.current_user_name == "alice"
    assert state.db.get_user("alice").id == user.id
    assert "User creation successful, Name: alice" in capsys.readouterr().out


def test_register_requires_name(state):
    with pytest.raises(HandlerError, match="username required for registration"):
        handler_register(state, Command("register", []))


def test_register_duplicate(state):
    _register(state, "alice")
    with pytest.raises(HandlerError, match="already exists"):
        _register(state, "alice")


def test_login_switches_user(state, capsys):
    alice = _register(state, "alice")
    _register(state, "bob")
    user = handler_login(state, Command("login", ["alice"]))
    assert user.id == alice.id
    assert state.config.current_user_name == "alice"
    assert "Current user set to alice" in capsys.readouterr().out


def test_login_requires_name(state):
    with pytest.raises(HandlerError, match="login username required"):
        handler_login(state, Command("login", []))


def test_login_unknown_user(state):
    with pytest.raises(HandlerError, match="does not exist"):
        handler_login(state, Command("login", ["nobody"]))
    assert state.config.current_user_name == ""


def test_list_marks_current(state, capsys):
    _register(state, "alice")
    _register(state, "bob")
    handler_login(state, Command("login", ["alice"]))
    capsys.readouterr()
    users = handler_list(state, Command("users", []))
    assert [user.name for user in users] == ["alice", "bob"]
    lines = capsys.readouterr().out.splitlines()
    assert lines == ["* alice (current)", "* bob"]


def test_reset_removes_users(state):
    _register(state, "alice")
    _register(state, "bob")
    handler_reset(state, Command("reset", []))
    assert state.db.list_users() == []


# feeds and follows


def test_add_feed_follows_it(state, capsys):
    user = _register(state, "alice")
    feed = _add(state, user, "Tech", "http://example.com/rss")
    assert feed.name == "Tech"
    assert feed.user_id == user.id
    out = capsys.readouterr().out
    assert "User alice is now following feed Tech" in out
    follows = state.db.get_feed_follows_for_user(user.id)
    assert [f.feed_id for f in follows] == [feed.id]


def test_add_feed_requires_arguments(state):
    user = _register(state, "alice")
    with pytest.raises(HandlerError, match="requires feed name and URL"):
        add_feed(state, Command("addfeed", ["only"]), user)


def test_add_feed_duplicate_url(state):
    user = _register(state, "alice")
    _add(state, user, "Tech", "http://example.com/rss")
    with pytest.raises(HandlerError, match="failed to create feed"):
        _add(state, user, "Other", "http://example.com/rss")


def test_feeds_lists_adder(state, capsys):
    user = _register(state, "alice")
    _add(state, user, "Tech", "http://example.com/rss")
    capsys.readouterr()
    feeds = handler_feeds(state, Command("feeds", []))
    assert [(f.feed_name, f.feeds_url, f.user_name) for f in feeds] == [
        ("Tech", "http://example.com/rss", "alice")
    ]
    out = capsys.readouterr().out
    assert "Feed Name: Tech" in out
    assert "Feed Adder: alice" in out


def test_follow_by_other_user(state, capsys):
    alice = _register(state, "alice")
    _add(state, alice, "Tech", "http://example.com/rss")
    bob = _register(state, "bob")
    rows = handler_follow(state, Command("follow", ["http://example.com/rss"]), bob)
    assert [(r.user_name, r.feed_name) for r in rows] == [("bob", "Tech")]
    assert "User bob is now following feed Tech" in capsys.readouterr().out


def test_follow_errors(state):
    alice = _register(state, "alice")
    with pytest.raises(HandlerError, match="URL required"):
        handler_follow(state, Command("follow", []), alice)
    with pytest.raises(HandlerError, match="failed to retrieve feed"):
        handler_follow(state, Command("follow", ["http://example.com/none"]), alice)
    _add(state, alice, "Tech", "http://example.com/rss")
    with pytest.raises(HandlerError, match="failed to create feed follows entry"):
        handler_follow(state, Command("follow", ["http://example.com/rss"]), alice)


def test_following_and_unfollow(state, capsys):
    alice = _register(state, "alice")
    _add(state, alice, "Tech", "http://example.com/rss")
    capsys.readouterr()
    follows = handler_following(state, Command("following", []), alice)
    assert [f.feed_name for f in follows] == ["Tech"]
    assert "1. Tech" in capsys.readouterr().out

    handler_unfollow(state, Command("unfollow", ["http://example.com/rss"]), alice)
    assert "Feed with URL http://example.com/rss unfollowed" in capsys.readouterr().out
    assert handler_following(state, Command("following", []), alice) == []
    assert "Follow command success, no feeds followed" in capsys.readouterr().out


def test_unfollow_requires_url(state):
    alice = _register(state, "alice")
    with pytest.raises(HandlerError, match="URL required"):
        handler_unfollow(state, Command("unfollow", []), alice)


# browse


def _posts(state, user, count):
    feed = _add(state, user, "Tech", "http://example.com/rss")
    for day in range(1, count + 1):
        moment = datetime(2024, 1, day, tzinfo=timezone.utc)
        state.db.create_post(
            uuid.uuid4(), moment, moment, f"p{day}", f"http://example.com/p{day}",
            f"text {day}", moment, feed.id,
        )


def test_browse_default_limit(state, capsys):
    alice = _register(state, "alice")
    _posts(state, alice, 3)
    capsys.readouterr()
    posts = handler_browse(state, Command("browse", []), alice)
    assert [p.title for p in posts] == ["p3", "p2"]
    out = capsys.readouterr().out
    assert "Found 2 posts for user alice:" in out
    assert "Wed Jan 3 from Tech" in out
    assert "--- p3 ---" in out
    assert "Link: http://example.com/p3" in out


def test_browse_explicit_limit(state):
    alice = _register(state, "alice")
    _posts(state, alice, 3)
    posts = handler_browse(state, Command("browse", ["5"]), alice)
    assert [p.title for p in posts] == ["p3", "p2", "p1"]


def test_browse_invalid_limit(state):
    alice = _register(state, "alice")
    with pytest.raises(HandlerError, match="invalid limit"):
        handler_browse(state, Command("browse", ["abc"]), alice)


def test_browse_negative_limit(state):
    alice = _register(state, "alice")
    with pytest.raises(HandlerError, match="couldn't get posts for user"):
        handler_browse(state, Command("browse", ["-1"]), alice)


# scraping


def test_scrape_feed_stores_posts(state, feed_server):
    alice = _register(state, "alice")
    feed = _add(state, alice, "Example", f"{feed_server}/feed.xml")
    assert scrape_feed(state.db, feed) == 2
    posts = {p.url: p for p in state.db.get_posts_for_user(alice.id, 10)}
    assert set(posts) == {"http://example.com/1", "http://example.com/2"}
    first = posts["http://example.com/1"]
    assert first.title == "First & post"
    assert first.description == "one"
    assert first.published_at == datetime(
        2006, 1, 2, 15, 4, 5, tzinfo=timezone(timedelta(hours=-7))
    )
    assert posts["http://example.com/2"].published_at is None
    assert state.db.get_feed_by_url(feed.url).last_fetched_at is not None


def test_scrape_feed_skips_duplicates(state, feed_server):
    alice = _register(state, "alice")
    feed = _add(state, alice, "Example", f"{feed_server}/feed.xml")
    scrape_feed(state.db, feed)
    assert scrape_feed(state.db, feed) == 2
    assert len(state.db.get_posts_for_user(alice.id, 10)) == 2


def test_scrape_feed_fetch_failure(state, caplog, feed_server):
    caplog.set_level(logging.INFO, logger="gator.handlers")
    alice = _register(state, "alice")
    feed = _add(state, alice, "Missing", f"{feed_server}/missing.xml")
    assert scrape_feed(state.db, feed) == 0
    assert "failed to get feed" in caplog.text
    assert state.db.get_feed_by_url(feed.url).last_fetched_at is not None


def test_scrape_feed_unknown_feed(state, caplog):
    caplog.set_level(logging.INFO, logger="gator.handlers")
    now = datetime.now(timezone.utc)
    ghost = Feed(uuid.uuid4(), now, now, "Ghost", "http://example.com/ghost", None)
    assert scrape_feed(state.db, ghost) == 0
    assert "failed to mark next feed" in caplog.text


def test_scrape_feeds_without_feeds(state, caplog):
    caplog.set_level(logging.INFO, logger="gator.handlers")
    assert scrape_feeds(state) is None
    assert "Failed to grab next feed" in caplog.text


def test_scrape_feeds_picks_unfetched_first(state):
    alice = _register(state, "alice")
    first = _add(state, alice, "One", "ftp://example.com/one")
    second = _add(state, alice, "Two", "ftp://example.com/two")
    assert scrape_feeds(state).id == first.id
    assert scrape_feeds(state).id == second.id


# agg


def test_agg_requires_interval(state):
    with pytest.raises(HandlerError, match="time between requests required"):
        agg(state, Command("agg", []))


def test_agg_invalid_interval(state):
    with pytest.raises(HandlerError, match="invalid duration"):
        agg(state, Command("agg", ["soon"]))


def test_agg_non_positive_interval(state):
    with pytest.raises(HandlerError, match="non-positive"):
        agg(state, Command("agg", ["0s"]))


def test_agg_scrapes_until_interrupted(state, capsys):
    alice = _register(state, "alice")
    feed = _add(state, alice, "Tech", "ftp://example.com/feed")
    capsys.readouterr()
    with mock.patch("time.sleep", side_effect=_Stop) as sleep:
        with pytest.raises(_Stop):
            agg(state, Command("agg", ["1m"]))
    assert "Collecting feeds every 1m0s" in capsys.readouterr().out
    delay = sleep.call_args.args[0]
    assert 0 < delay <= 60
    assert state.db.get_feed_by_url(feed.url).last_fetched_at is not None