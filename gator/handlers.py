"""Command handlers: users, feeds, follows, browsing and feed aggregation."""

from __future__ import annotations

import logging
import math
import re
import sqlite3
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from gator.config import Command, State
from gator.models import Feed, Post, User
from gator.queries import (
    DuplicateRecordError,
    FeedFollowRow,
    FeedWithUser,
    NoRowsError,
    PostWithFeed,
    Queries,
)
from gator.rss import FeedFetchError, fetch_feed

_LOG = logging.getLogger(__name__)

DEFAULT_BROWSE_LIMIT = 2

_DB_ERRORS = (NoRowsError, DuplicateRecordError, sqlite3.Error)

_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_NUMBER = re.compile(r"([0-9]*)(?:\.([0-9]*))?")
_UNIT = re.compile(r"[^0-9.]*")
_MAX_NS = (1 << 63) - 1

_DAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_RFC1123Z = re.compile(
    r"(?:Mon|Tue|Wed|Thu|Fri|Sat|Sun), ([0-9]{2}) "
    r"(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec) ([0-9]{4}) "
    r"([0-9]{2}):([0-9]{2}):([0-9]{2})(?:[.,]([0-9]+))? ([+-])([0-9]{2})([0-9]{2})"
)
_INTEGER = re.compile(r"[+-]?[0-9]+")


class HandlerError(Exception):
    """Raised when a command cannot be carried out."""


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "1h30m", "1.5s" or "300ms"."""
    invalid = ValueError(f'time: invalid duration "{text}"')
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise invalid

    total = 0
    while rest:
        number = _NUMBER.match(rest)
        whole, fraction = number.group(1), number.group(2) or ""
        if not whole and not fraction:
            raise invalid
        rest = rest[number.end():]
        unit = _UNIT.match(rest).group(0)
        if not unit:
            raise ValueError(f'time: missing unit in duration "{text}"')
        if unit not in _UNITS:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{text}"')
        rest = rest[len(unit):]
        scale = _UNITS[unit]
        total += int(whole or "0") * scale
        if fraction:
            total += int(fraction) * scale // 10 ** len(fraction)
        if total > _MAX_NS + 1:
            raise invalid
    if not negative and total > _MAX_NS:
        raise invalid

    micros = total // 1000
    return timedelta(microseconds=-micros if negative else micros)


def _fraction(value: int, digits: int) -> str:
    whole, rest = divmod(value, 10**digits)
    if not rest:
        return str(whole)
    return f"{whole}." + f"{rest:0{digits}d}".rstrip("0")


def _format_duration(interval: timedelta) -> str:
    micros = (interval.days * 86400 + interval.seconds) * 1_000_000 + interval.microseconds
    sign = "-" if micros < 0 else ""
    ns = abs(micros) * 1000
    if ns == 0:
        return "0s"
    if ns < 1_000:
        return f"{sign}{ns}ns"
    if ns < 1_000_000:
        return f"{sign}{_fraction(ns, 3)}\u00b5s"
    if ns < 1_000_000_000:
        return f"{sign}{_fraction(ns, 6)}ms"
    seconds = ns // 1_000_000_000
    text = _fraction(ns % (60 * 1_000_000_000), 9) + "s"
    if seconds >= 60:
        text = f"{seconds // 60 % 60}m" + text
    if seconds >= 3600:
        text = f"{seconds // 3600}h" + text
    return sign + text


def _format_day(moment: datetime) -> str:
    return f"{_DAYS[moment.weekday()]} {_MONTHS[moment.month - 1]} {moment.day}"


def _parse_rfc1123z(text: str) -> Optional[datetime]:
    match = _RFC1123Z.fullmatch(text)
    if match is None:
        return None
    day, month, year, hour, minute, second, fraction, sign, off_h, off_m = match.groups()
    micros = int((fraction or "0")[:6].ljust(6, "0"))
    offset = timedelta(hours=int(off_h), minutes=int(off_m))
    try:
        zone = timezone(-offset if sign == "-" else offset)
        return datetime(
            int(year),
            _MONTHS.index(month) + 1,
            int(day),
            int(hour),
            int(minute),
            int(second),
            micros,
            tzinfo=zone,
        )
    except ValueError:
        return None


def handler_login(state: State, command: Command) -> User:
    """Make an existing user the current one."""
    if not command.args:
        raise HandlerError("login username required")
    name = command.args[0]
    try:
        user = state.db.get_user(name)
    except _DB_ERRORS as exc:
        raise HandlerError(f"User with name {name} does not exist") from exc
    state.config.current_user_name = name
    print(f"Current user set to {name}")
    return user


def handler_register(state: State, command: Command) -> User:
    """Create a new user and make it the current one."""
    if not command.args:
        raise HandlerError("username required for registration")
    name = command.args[0]
    try:
        state.db.get_user(name)
    except NoRowsError:
        pass
    else:
        raise HandlerError(f"User with name '{name}' already exists")

    now = datetime.now()
    try:
        user = state.db.create_user(uuid.uuid4(), now, now, name)
    except _DB_ERRORS as exc:
        raise HandlerError("User creation failed, user already exists") from exc
    state.config.current_user_name = user.name
    print(f"User creation successful, Name: {user.name} ID: {user.id} Time: {now}")
    return user


def handler_reset(state: State, command: Command) -> None:
    """Delete every user and everything that belongs to them."""
    try:
        state.db.reset()
    except sqlite3.Error as exc:
        _LOG.error("reset failed: %s", exc)


def handler_list(state: State, command: Command) -> list[User]:
    """Print every user, marking the current one."""
    try:
        users = state.db.list_users()
    except _DB_ERRORS as exc:
        raise HandlerError("Failed to find users for listing") from exc
    current = state.config.current_user_name
    for user in users:
        suffix = " (current)" if user.name == current else ""
        print(f"* {user.name}{suffix}")
    return users


def scrape_feeds(state: State) -> Optional[Feed]:
    """Fetch the feed that was fetched longest ago and store its posts."""
    try:
        feed = state.db.get_next_feed_to_fetch()
    except _DB_ERRORS as exc:
        _LOG.error("Failed to grab next feed, err: %s", exc)
        return None
    _LOG.info("Fetching feed %s", feed)
    scrape_feed(state.db, feed)
    return feed


def scrape_feed(queries: Queries, feed: Feed) -> int:
    """Mark the feed fetched, download it and store new posts; return items found."""
    try:
        queries.mark_feed_fetched(feed.id)
    except _DB_ERRORS as exc:
        _LOG.error("failed to mark next feed, err: %s", exc)
        return 0
    try:
        fetched = fetch_feed(feed.url)
    except FeedFetchError as exc:
        _LOG.error("failed to get feed, err: %s", exc)
        return 0

    for item in fetched.items:
        now = datetime.now(timezone.utc)
        try:
            queries.create_post(
                post_id=uuid.uuid4(),
                created_at=now,
                updated_at=now,
                title=item.title,
                url=item.link,
                description=item.description,
                published_at=_parse_rfc1123z(item.pub_date),
                feed_id=feed.id,
            )
        except DuplicateRecordError:
            continue
        except (NoRowsError, sqlite3.Error) as exc:
            _LOG.error("Couldn't create post: %s", exc)
    _LOG.info("Feed %s collected, %d posts found", feed.name, len(fetched.items))
    return len(fetched.items)


def agg(state: State, command: Command) -> None:
    """Scrape feeds forever, one every given interval."""
    if not command.args:
        raise HandlerError("time between requests required")
    try:
        interval = parse_duration(command.args[0])
    except ValueError as exc:
        raise HandlerError(str(exc)) from exc
    if interval <= timedelta(0):
        raise HandlerError("non-positive interval for agg")
    print(f"Collecting feeds every {_format_duration(interval)}")

    period = interval.total_seconds()
    next_tick = time.monotonic()
    while True:
        scrape_feeds(state)
        next_tick += period
        now = time.monotonic()
        if next_tick <= now:
            next_tick += math.ceil((now - next_tick) / period) * period
            if next_tick <= now:
                next_tick += period
        time.sleep(next_tick - now)


def add_feed(state: State, command: Command, user: User) -> Feed:
    """Add a feed owned by the user and follow it."""
    if len(command.args) < 2:
        raise HandlerError("requires feed name and URL")
    name, url = command.args[0], command.args[1]
    try:
        feed = state.db.create_feed(name, url, user.id)
    except _DB_ERRORS as exc:
        raise HandlerError(f"failed to create feed: {exc}") from exc
    print(f"ID={feed.id}, Name={feed.name}, URL={feed.url}")

    try:
        follows = state.db.create_feed_follow(user.id, feed.id)
    except _DB_ERRORS as exc:
        raise HandlerError(f"failed to create feed follow record: {exc}") from exc
    if follows:
        print(f"User {follows[0].user_name} is now following feed {follows[0].feed_name}")
    return feed


def handler_feeds(state: State, command: Command) -> list[FeedWithUser]:
    """Print every feed with the user who added it."""
    try:
        feeds = state.db.list_feeds_with_users()
    except _DB_ERRORS as exc:
        raise HandlerError(f"failed to get feeds {exc}") from exc
    for feed in feeds:
        print(f"Feed Name: {feed.feed_name}")
        print(f"Feed URL: {feed.feeds_url}")
        print(f"Feed Adder: {feed.user_name}")
    return feeds


def handler_follow(state: State, command: Command, user: User) -> list[FeedFollowRow]:
    """Follow the feed with the given URL."""
    if not command.args:
        raise HandlerError("URL required")
    url = command.args[0]
    try:
        feed = state.db.get_feed_by_url(url)
    except _DB_ERRORS as exc:
        raise HandlerError(f"failed to retrieve feed, error: {exc}") from exc
    try:
        follows = state.db.create_feed_follow(user.id, feed.id)
    except _DB_ERRORS as exc:
        raise HandlerError(f"failed to create feed follows entry, error: {exc}") from exc
    if follows:
        print(f"User {follows[0].user_name} is now following feed {follows[0].feed_name}")
    return follows


def handler_following(state: State, command: Command, user: User) -> list[FeedFollowRow]:
    """Print the feeds the user follows."""
    try:
        follows = state.db.get_feed_follows_for_user(user.id)
    except _DB_ERRORS as exc:
        raise HandlerError(
            f"failed to grab feedfollows for current user, error: {exc}"
        ) from exc
    if not follows:
        print("Follow command success, no feeds followed")
        return follows
    print("Followed feeds: ")
    for number, follow in enumerate(follows, start=1):
        print(f"{number}. {follow.feed_name}")
    return follows


def handler_unfollow(state: State, command: Command, user: User) -> None:
    """Stop following the feed with the given URL."""
    if not command.args:
        raise HandlerError("URL required")
    url = command.args[0]
    try:
        state.db.delete_feed_follow(user.id, url)
    except _DB_ERRORS as exc:
        raise HandlerError(f"failed to delete feed follow, error: {exc}") from exc
    print(f"Feed with URL {url} unfollowed")


def handler_browse(state: State, command: Command, user: User) -> list[PostWithFeed]:
    """Print the newest posts from the feeds the user follows."""
    limit = DEFAULT_BROWSE_LIMIT
    if len(command.args) == 1:
        text = command.args[0]
        if not _INTEGER.fullmatch(text):
            raise HandlerError(f'invalid limit: parsing "{text}": invalid syntax')
        limit = int(text)

    try:
        posts = state.db.get_posts_for_user(user.id, limit)
    except (ValueError, *_DB_ERRORS) as exc:
        raise HandlerError(f"couldn't get posts for user: {exc}") from exc

    print(f"Found {len(posts)} posts for user {user.name}:")
    for post in posts:
        published = post.published_at or datetime(1, 1, 1)
        print(f"{_format_day(published)} from {post.feed_name}")
        print(f"--- {post.title} ---")
        print(f"    {post.description or ''}")
        print(f"Link: {post.url}")
        print("-----------------------------------")
    return posts