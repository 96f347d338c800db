# gator

gator is a small RSS feed aggregator library. It stores users, the feeds
they add, the feeds each user follows, and the posts collected from those
feeds in an SQLite database. Command handlers register and log in users,
add and follow feeds, scrape feeds on a fixed interval and print the
newest posts.

It uses only the standard library: `sqlite3`, `urllib` and
`xml.etree.ElementTree`.

## Modules

### `gator.models`

This module holds the stored records as frozen dataclasses: `User`, `Feed`,
`FeedFollow` and `Post`.

### `gator.queries`

`Queries(connection)` wraps an `sqlite3.Connection` and turns on foreign
keys. Each statement is committed at once unless it runs inside
`with queries.transaction():`. A transaction commits at the end of the
block and rolls back if the block raises.

- `create_schema()` creates the `users`, `feeds`, `feed_follows` and
  `posts` tables if they are missing. It also adds the `last_fetched_at`
  column to `feeds` when that column is absent.
- Users:
  - `create_user(user_id, created_at, updated_at, name)` adds a user.
  - `get_user(name)` looks a user up by name.
  - `list_users()` returns every user.
  - `reset()` deletes every user. The cascades then remove the feeds,
    follows and posts that belong to them.
- Feeds:
  - `create_feed(name, url, user_id)` adds a feed.
  - `get_feed_by_url(url)` looks a feed up by its URL.
  - `list_feeds_with_users()` returns `FeedWithUser` rows.
  - `get_next_feed_to_fetch()` returns feeds that were never fetched
    first, then the one fetched longest ago.
  - `mark_feed_fetched(feed_id)` records the fetch time.
  - `add_last_fetched_at_column()` adds the `last_fetched_at` column to
    `feeds`.
- Follows:
  - `create_feed_follow(user_id, feed_id)` adds a follow and returns a
    list of `FeedFollowRow`.
  - `get_feed_follows_for_user(user_id)` returns the user's follows.
  - `delete_feed_follow(user_id, url)` removes the follow of the feed
    with that URL.
- Posts:
  - `create_post(...)` adds a post.
  - `get_posts_for_user(user_id, limit)` returns `PostWithFeed` rows.
    Undated posts come first, then the rest newest first. A negative
    limit raises `ValueError`.
  - `debug()` describes the columns of `posts` as `ColumnInfo`.

A lookup that must return a row and finds none raises `NoRowsError`. An
insert that breaks a unique constraint raises `DuplicateRecordError`. The
unique columns are user names, feed URLs, post URLs, and each pair of user
and feed in a follow.

### `gator.rss`

- `parse_feed(data)` turns RSS XML, given as bytes or str, into an
  `RSSFeed` with `title`, `link`, `description` and `items`. Each item is
  an `RSSItem` with `title`, `link`, `pub_date` and `description`. HTML
  entities in titles and descriptions are unescaped. Malformed XML, or a
  root element other than `<rss>`, raises `FeedFetchError`.
- `fetch_feed(feed_url, timeout=10.0)` sends a `User-Agent: gator` header,
  downloads the feed and parses it. It raises `FeedFetchError` in these
  cases:
  - the URL is not http or https;
  - the request fails;
  - the status is not 200;
  - the body cannot be parsed.

### `gator.config`

- `Config` holds `db_url` and `current_user_name`. It is stored as JSON,
  by default in `~/.gatorconfig.json` (see `config_file_path()`).
  - `Config.to_json()` leaves out an empty user name.
  - `Config.from_json()` ignores keys it does not know.
- `read_config(path=None)` loads the file. A missing or unreadable file
  gives an empty `Config`.
- `write_config(config, path=None)` saves it.
- `Config.set_user(user, path=None)` sets the current user and saves the
  file.
- `State` bundles a `Config` and a `Queries`. `Command` is a name and a
  list of arguments.
- `Commands` maps names to handlers with `register(name, handler)` and
  `run(state, command)`. Running a name that is not registered raises
  `UnknownCommandError`.

### `gator.handlers`

Every handler takes `(state, command)`. Some also take the acting
`User`: `add_feed`, `handler_follow`, `handler_following`,
`handler_unfollow` and `handler_browse`. Handlers print their output and
return what they worked on. A handler that cannot do its job raises
`HandlerError`.

- `handler_register` creates a user and makes it current in
  `state.config`.
- `handler_login` makes an existing user current in `state.config`.
- `handler_reset` deletes all users. It logs database errors.
- `handler_list` prints every user and marks the current one with
  `(current)`.
- `add_feed` adds a feed with a name and a URL, then follows it.
- `handler_feeds` lists every feed with the user who added it.
- `handler_follow` follows a feed by URL. `handler_unfollow` stops
  following a feed by URL.
- `handler_following` lists the feeds the user follows.
- `handler_browse` prints the newest posts. The default is 2 posts; an
  optional integer argument sets the limit.
- `agg` takes an interval such as `"30s"` or `"1m"`. It calls
  `scrape_feeds` at once and then once every interval, forever.
- `scrape_feeds(state)` picks the next feed to fetch and passes it to
  `scrape_feed`.
- `scrape_feed(queries, feed)` marks the feed fetched, downloads it and
  stores its items as posts. It skips posts whose URL is already stored
  and returns the number of items found. Publication dates in RFC 1123
  form with a numeric zone are stored; other dates are stored as empty.
- `parse_duration(text)` parses durations made of numbers and the units
  `ns`, `us`, `µs`, `ms`, `s`, `m` and `h`, such as `"1h30m"` or `"1.5s"`.
  It returns a `timedelta`.

## Example

```python
import sqlite3
import uuid
from datetime import datetime, timezone

from gator.config import Command, Commands, Config, State
from gator.handlers import handler_follow, handler_register
from gator.queries import Queries
from gator.rss import parse_feed

queries = Queries(sqlite3.connect(":memory:"))
queries.create_schema()

now = datetime.now(timezone.utc)
alice = queries.create_user(uuid.uuid4(), now, now, "alice")
queries.create_feed("Example", "https://example.com/rss.xml", alice.id)

state = State(config=Config(), db=queries)
commands = Commands()
commands.register("register", handler_register)
commands.register(
    "follow",
    lambda s, c: handler_follow(s, c, s.db.get_user(s.config.current_user_name)),
)
commands.run(state, Command("register", ["bob"]))
commands.run(state, Command("follow", ["https://example.com/rss.xml"]))

xml = b"""<rss><channel><title>Example &amp; Co</title>
<item><title>Hello</title><link>https://example.com/1</link></item>
</channel></rss>"""
print(parse_feed(xml).title)  # Example & Co
```

## What the package does not do

- There is no command-line program. You call the handlers from Python and
  register them on `Commands` yourself.
- No helper looks up the logged-in user for the handlers that need one.
  You pass in that `User`.
- `Config.db_url` is stored and loaded, but nothing in the package opens a
  database from it. You open the `sqlite3` connection and hand it to
  `Queries`.
- `handler_login` and `handler_register` change `state.config` only in
  memory. Call `Config.set_user` or `write_config` to save the change.

## Tests

Install the `test` extra, then run `pytest` from the project root.