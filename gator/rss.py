"""RSS documents: parsing and fetching over HTTP."""

from __future__ import annotations

import html
import logging
import urllib.error
import urllib.parse
import urllib.request
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Union

USER_AGENT = "gator"
DEFAULT_TIMEOUT = 10.0

_LOG = logging.getLogger(__name__)
_ITEM_FIELDS = {
    "title": "title",
    "link": "link",
    "pubDate": "pub_date",
    "description": "description",
}
_CHANNEL_FIELDS = {"title", "link", "description"}


class FeedFetchError(Exception):
    """Raised when a feed cannot be fetched or parsed."""


@dataclass
class RSSItem:
    """One entry of an RSS channel."""

    title: str = ""
    link: str = ""
    pub_date: str = ""
    description: str = ""


@dataclass
class RSSFeed:
    """An RSS channel and its items."""

    title: str = ""
    link: str = ""
    description: str = ""
    items: list[RSSItem] = field(default_factory=list)


def _local(tag: object) -> str:
    return tag.rpartition("}")[2] if isinstance(tag, str) else ""


def _direct_text(element: ET.Element) -> str:
    """Character data directly inside the element, without that of children."""
    parts = [element.text or ""]
    parts.extend(child.tail or "" for child in element)
    return "".join(parts)


def _parse_item(element: ET.Element) -> RSSItem:
    values: dict[str, str] = {}
    for child in element:
        attr = _ITEM_FIELDS.get(_local(child.tag))
        if attr is not None:
            values[attr] = _direct_text(child)
    item = RSSItem(**values)
    item.title = html.unescape(item.title)
    item.description = html.unescape(item.description)
    return item


def parse_feed(data: Union[bytes, str]) -> RSSFeed:
    """Parse an RSS document, unescaping HTML entities in titles and descriptions."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise FeedFetchError(f"error unmarshalling XML: {exc}") from exc
    root_name = _local(root.tag)
    if root_name != "rss":
        raise FeedFetchError(
            f"error unmarshalling XML: expected element type <rss> but have <{root_name}>"
        )

    feed = RSSFeed()
    for channel in root:
        if _local(channel.tag) != "channel":
            continue
        for child in channel:
            name = _local(child.tag)
            if name == "item":
                feed.items.append(_parse_item(child))
            elif name in _CHANNEL_FIELDS:
                setattr(feed, name, _direct_text(child))
    feed.title = html.unescape(feed.title)
    feed.description = html.unescape(feed.description)
    return feed


def fetch_feed(feed_url: str, timeout: float = DEFAULT_TIMEOUT) -> RSSFeed:
    """Download and parse the RSS feed at the given URL."""
    try:
        request = urllib.request.Request(feed_url, headers={"User-Agent": USER_AGENT})
    except ValueError as exc:
        raise FeedFetchError(f"error creating request: {exc}") from exc

    scheme = urllib.parse.urlsplit(feed_url).scheme
    if scheme not in ("http", "https"):
        raise FeedFetchError(
            f"error executing request: unsupported protocol scheme {scheme!r}"
        )

    try:
        response = urllib.request.urlopen(request, timeout=timeout)
    except urllib.error.HTTPError as exc:
        exc.close()
        raise FeedFetchError(f"unexpected status code: {exc.code}") from exc
    except (urllib.error.URLError, OSError) as exc:
        raise FeedFetchError(f"error executing request: {exc}") from exc

    with response:
        if response.status != 200:
            raise FeedFetchError(f"unexpected status code: {response.status}")
        try:
            data = response.read()
        except OSError as exc:
            raise FeedFetchError(f"error reading response body: {exc}") from exc

    _LOG.debug("XML sample: %s", data[:200].decode("utf-8", "replace"))
    return parse_feed(data)