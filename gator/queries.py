"""Database access for users, feeds, follows and posts, backed by SQLite."""

from __future__ import annotations

import re
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional, Sequence
from uuid import UUID

from gator.models import Feed, Post, User


class NoRowsError(LookupError):
    """Raised when a query that must return one row finds none."""


class DuplicateRecordError(Exception):
    """Raised when an insert violates a unique constraint."""


@dataclass(frozen=True)
class FeedFollowRow:
    """A feed follow together with the feed's and the user's names."""

    id: UUID
    created_at: datetime
    updated_at: datetime
    user_id: UUID
    feed_id: UUID
    feed_name: str
    user_name: str


@dataclass(frozen=True)
class FeedWithUser:
    """A feed's name and URL with the name of the user who added it."""

    feed_name: str
    feeds_url: str
    user_name: str


@dataclass(frozen=True)
class PostWithFeed:
    """A post together with the name of the feed it came from."""

    id: UUID
    created_at: datetime
    updated_at: datetime
    title: str
    url: str
    description: Optional[str]
    published_at: Optional[datetime]
    feed_id: UUID
    feed_name: str


@dataclass(frozen=True)
class ColumnInfo:
    """Description of one column of the posts table."""

    column_name: str
    data_type: str
    character_maximum_length: Optional[int]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    name TEXT NOT NULL,
    url TEXT NOT NULL UNIQUE,
    user_id TEXT REFERENCES users (id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS feed_follows (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
    feed_id TEXT NOT NULL REFERENCES feeds (id) ON DELETE CASCADE,
    UNIQUE (user_id, feed_id)
);
CREATE TABLE IF NOT EXISTS posts (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    title TEXT NOT NULL,
    url TEXT NOT NULL UNIQUE,
    description TEXT,
    published_at TEXT,
    feed_id TEXT NOT NULL REFERENCES feeds (id) ON DELETE CASCADE
);
"""

_FEED_COLUMNS = "id, created_at, updated_at, name, url, user_id, last_fetched_at"
_USER_COLUMNS = "id, created_at, updated_at, name"
_POST_COLUMNS = "id, created_at, updated_at, title, url, description, published_at, feed_id"
_LENGTH = re.compile(r"\((\d+)\)")


def _dump_time(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="microseconds")


def _dump_optional_time(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else _dump_time(value)


def _load_time(text: str) -> datetime:
    return datetime.fromisoformat(text)


def _load_optional_time(text: Optional[str]) -> Optional[datetime]:
    return None if text is None else _load_time(text)


def _now() -> str:
    return _dump_time(datetime.now(timezone.utc))


def _user(row: Sequence) -> User:
    return User(UUID(row[0]), _load_time(row[1]), _load_time(row[2]), row[3])


def _feed(row: Sequence) -> Feed:
    return Feed(
        id=UUID(row[0]),
        created_at=_load_time(row[1]),
        updated_at=_load_time(row[2]),
        name=row[3],
        url=row[4],
        user_id=None if row[5] is None else UUID(row[5]),
        last_fetched_at=_load_optional_time(row[6]),
    )


def _post(row: Sequence) -> Post:
    return Post(
        id=UUID(row[0]),
        created_at=_load_time(row[1]),
        updated_at=_load_time(row[2]),
        title=row[3],
        url=row[4],
        description=row[5],
        published_at=_load_optional_time(row[6]),
        feed_id=UUID(row[7]),
    )


def _feed_follow_row(row: Sequence) -> FeedFollowRow:
    return FeedFollowRow(
        id=UUID(row[0]),
        created_at=_load_time(row[1]),
        updated_at=_load_time(row[2]),
        user_id=UUID(row[3]),
        feed_id=UUID(row[4]),
        feed_name=row[5],
        user_name=row[6],
    )


class Queries:
    """Typed queries over an SQLite connection."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection
        self._in_transaction = False
        self._conn.execute("PRAGMA foreign_keys = ON")

    def _execute(self, sql: str, params: Sequence = ()) -> sqlite3.Cursor:
        try:
            cursor = self._conn.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            if not self._in_transaction:
                self._conn.rollback()
            if "UNIQUE constraint failed" in str(exc):
                raise DuplicateRecordError(str(exc)) from exc
            raise
        if not self._in_transaction:
            self._conn.commit()
        return cursor

    def _one(self, sql: str, params: Sequence, what: str) -> Sequence:
        row = self._execute(sql, params).fetchone()
        if row is None:
            raise NoRowsError(what)
        return row

    def create_schema(self) -> None:
        """Create every table the queries need, if missing."""
        self._conn.executescript(_SCHEMA)
        columns = {row[1] for row in self._conn.execute("PRAGMA table_info(feeds)")}
        if "last_fetched_at" not in columns:
            self.add_last_fetched_at_column()

    @contextmanager
    def transaction(self) -> Iterator["Queries"]:
        """Run the enclosed queries in one transaction, rolled back on error."""
        if self._in_transaction:
            raise RuntimeError("a transaction is already in progress")
        if not self._conn.in_transaction:
            self._conn.execute("BEGIN")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()
        finally:
            self._in_transaction = False

    # users

    def create_user(
        self, user_id: UUID, created_at: datetime, updated_at: datetime, name: str
    ) -> User:
        self._execute(
            "INSERT INTO users (id, created_at, updated_at, name) VALUES (?, ?, ?, ?)",
            (str(user_id), _dump_time(created_at), _dump_time(updated_at), name),
        )
        return _user(
            self._one(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?",
                (str(user_id),),
                f"no user with id {user_id}",
            )
        )

    def get_user(self, name: str) -> User:
        return _user(
            self._one(
                f"SELECT {_USER_COLUMNS} FROM users WHERE name = ?",
                (name,),
                f"no user named {name!r}",
            )
        )

    def list_users(self) -> list[User]:
        rows = self._execute(f"SELECT {_USER_COLUMNS} FROM users ORDER BY rowid")
        return [_user(row) for row in rows.fetchall()]

    def reset(self) -> None:
        """Delete every user, and through cascades everything they own."""
        self._execute("DELETE FROM users")

    # feeds

    def create_feed(self, name: str, url: str, user_id: Optional[UUID]) -> Feed:
        feed_id = uuid.uuid4()
        now = _now()
        self._execute(
            "INSERT INTO feeds (id, created_at, updated_at, name, url, user_id) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (str(feed_id), now, now, name, url, None if user_id is None else str(user_id)),
        )
        return self._feed_by_id(feed_id)

    def _feed_by_id(self, feed_id: UUID) -> Feed:
        return _feed(
            self._one(
                f"SELECT {_FEED_COLUMNS} FROM feeds WHERE id = ?",
                (str(feed_id),),
                f"no feed with id {feed_id}",
            )
        )

    def get_feed_by_url(self, url: str) -> Feed:
        return _feed(
            self._one(
                f"SELECT {_FEED_COLUMNS} FROM feeds WHERE url = ?",
                (url,),
                f"no feed with url {url!r}",
            )
        )

    def list_feeds_with_users(self) -> list[FeedWithUser]:
        rows = self._execute(
            "SELECT feeds.name, feeds.url, users.name FROM feeds "
            "JOIN users ON feeds.user_id = users.id ORDER BY feeds.rowid"
        )
        return [FeedWithUser(*row) for row in rows.fetchall()]

    def get_next_feed_to_fetch(self) -> Feed:
        """Return the feed fetched longest ago, never-fetched feeds first."""
        return _feed(
            self._one(
                f"SELECT {_FEED_COLUMNS} FROM feeds "
                "ORDER BY last_fetched_at IS NOT NULL, last_fetched_at ASC, rowid LIMIT 1",
                (),
                "no feeds",
            )
        )

    def mark_feed_fetched(self, feed_id: UUID) -> Feed:
        now = _now()
        cursor = self._execute(
            "UPDATE feeds SET last_fetched_at = ?, updated_at = ? WHERE id = ?",
            (now, now, str(feed_id)),
        )
        if cursor.rowcount == 0:
            raise NoRowsError(f"no feed with id {feed_id}")
        return self._feed_by_id(feed_id)

    def add_last_fetched_at_column(self) -> None:
        self._execute("ALTER TABLE feeds ADD last_fetched_at TEXT NULL")

    # feed follows

    def create_feed_follow(self, user_id: UUID, feed_id: UUID) -> list[FeedFollowRow]:
        follow_id = uuid.uuid4()
        now = _now()
        self._execute(
            "INSERT INTO feed_follows (id, created_at, updated_at, user_id, feed_id) "
            "VALUES (?, ?, ?, ?, ?)",
            (str(follow_id), now, now, str(user_id), str(feed_id)),
        )
        rows = self._execute(
            "SELECT ff.id, ff.created_at, ff.updated_at, ff.user_id, ff.feed_id, "
            "f.name, u.name FROM feed_follows ff "
            "JOIN feeds f ON ff.feed_id = f.id "
            "JOIN users u ON ff.user_id = u.id "
            "WHERE ff.id = ?",
            (str(follow_id),),
        )
        return [_feed_follow_row(row) for row in rows.fetchall()]

    def get_feed_follows_for_user(self, user_id: UUID) -> list[FeedFollowRow]:
        rows = self._execute(
            "SELECT ff.id, ff.created_at, ff.updated_at, ff.user_id, ff.feed_id, "
            "f.name, u.name FROM feed_follows ff "
            "JOIN feeds f ON ff.feed_id = f.id "
            "JOIN users u ON ff.user_id = u.id "
            "WHERE ff.user_id = ? ORDER BY ff.rowid",
            (str(user_id),),
        )
        return [_feed_follow_row(row) for row in rows.fetchall()]

    def delete_feed_follow(self, user_id: UUID, url: str) -> None:
        self._execute(
            "DELETE FROM feed_follows WHERE user_id = ? AND feed_id = "
            "(SELECT feeds.id FROM feeds WHERE feeds.url = ?)",
            (str(user_id), url),
        )

    # posts

    def create_post(
        self,
        post_id: UUID,
        created_at: datetime,
        updated_at: datetime,
        title: str,
        url: str,
        description: Optional[str],
        published_at: Optional[datetime],
        feed_id: UUID,
    ) -> Post:
        self._execute(
            f"INSERT INTO posts ({_POST_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                str(post_id),
                _dump_time(created_at),
                _dump_time(updated_at),
                title,
                url,
                description,
                _dump_optional_time(published_at),
                str(feed_id),
            ),
        )
        return _post(
            self._one(
                f"SELECT {_POST_COLUMNS} FROM posts WHERE id = ?",
                (str(post_id),),
                f"no post with id {post_id}",
            )
        )

    def get_posts_for_user(self, user_id: UUID, limit: int) -> list[PostWithFeed]:
        """Return the newest posts of feeds the user follows; undated posts first."""
        if limit < 0:
            raise ValueError("LIMIT must not be negative")
        rows = self._execute(
            "SELECT posts.id, posts.created_at, posts.updated_at, posts.title, posts.url, "
            "posts.description, posts.published_at, posts.feed_id, feeds.name FROM posts "
            "JOIN feed_follows ON feed_follows.feed_id = posts.feed_id "
            "JOIN feeds ON posts.feed_id = feeds.id "
            "WHERE feed_follows.user_id = ? "
            "ORDER BY posts.published_at IS NULL DESC, posts.published_at DESC "
            "LIMIT ?",
            (str(user_id), limit),
        )
        return [
            PostWithFeed(**vars(_post(row[:8])), feed_name=row[8]) for row in rows.fetchall()
        ]

    def debug(self) -> list[ColumnInfo]:
        """Describe the columns of the posts table."""
        rows = self._execute("PRAGMA table_info(posts)").fetchall()
        result = []
        for row in rows:
            match = _LENGTH.search(row[2])
            result.append(
                ColumnInfo(row[1], row[2], int(match.group(1)) if match else None)
            )
        return result