#!/usr/bin/env python3
"""
Format parsers turning fetched bodies into ``ParsedFeed`` values.

One parser per source kind:

- ``RssAtomParser``: RSS 0.9x/1.0/2.0 and Atom via feedparser.
- ``YouTubeFeedParser``: the channel video feed (Atom) with the video id as guid.
- ``YouTubeHtmlParser``: channel page scrape of the ``ytInitialData`` blob.

Parsers keep no state between calls; ``parser_for`` builds a fresh instance
for every parse.
"""

import calendar
from typing import Any, List, Optional, Set

import feedparser

from config import config, get_logger
from errors import ParseError, ParseErrorKind
from schemas import ParsedFeed, ParsedItem, RawContent, SourceKind
from telemetry import trace_span
from utils import site_favicon
from youtube import (
    extract_initial_data,
    extract_video_id,
    is_video_feed_url,
    iter_renderers,
    renderer_text,
    thumbnail_url,
    video_url,
)

logger = get_logger("parser")

HTML_MARKERS = (b"<!doctype html", b"<html")


def looks_like_html(raw: RawContent) -> bool:
    if "html" in (raw.content_type or "").lower() and "xml" not in (raw.content_type or "").lower():
        return True
    head = raw.body[:512].lstrip().lower()
    return head.startswith(HTML_MARKERS)


def struct_to_timestamp(value: Any) -> Optional[int]:
    """feedparser's *_parsed fields are UTC struct_time values."""
    if not value:
        return None
    try:
        timestamp = calendar.timegm(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return timestamp if timestamp > 0 else None


class FeedParser:
    """Base parser: subclasses implement ``parse``."""

    def __init__(self, max_items: Optional[int] = None):
        self.max_items = max_items or config.MAX_ITEMS_PER_PARSE

    def parse(self, raw: RawContent) -> ParsedFeed:
        raise NotImplementedError


class RssAtomParser(FeedParser):

    @trace_span(
        "parse_feed",
        tracer_name="parser",
        attr_from_args=lambda self, raw: {"http.url": raw.url, "feed.bytes": len(raw.body)},
    )
    def parse(self, raw: RawContent) -> ParsedFeed:
        if not raw.body.strip():
            raise ParseError(ParseErrorKind.NOT_A_FEED, "Empty response body")

        parsed = feedparser.parse(raw.body, response_headers={"content-location": raw.final_url})
        self._classify(parsed, raw)

        if parsed.bozo:
            logger.debug(f"Feed parsing warning for {raw.url}: {parsed.get('bozo_exception')}")

        feed = parsed.feed
        feed_link = feed.get("link", "") or ""
        items: List[ParsedItem] = []
        for entry in parsed.entries:
            item = self._map_entry(entry)
            if item is None:
                continue
            items.append(item)
            if len(items) >= self.max_items:
                break

        logger.debug(f"Parsed {len(items)} items from {raw.url} ({parsed.get('version') or 'unknown'} format)")
        return ParsedFeed(
            feed_title=feed.get("title", "") or "",
            feed_description=feed.get("subtitle", "") or feed.get("description", "") or "",
            feed_link=feed_link,
            feed_icon=self._feed_icon(feed) or site_favicon(feed_link or raw.final_url),
            items=items,
        )

    def _classify(self, parsed, raw: RawContent) -> None:
        """Reject content that is not a usable feed."""
        if parsed.entries:
            return
        if not parsed.get("version"):
            if looks_like_html(raw):
                raise ParseError(ParseErrorKind.NOT_A_FEED, "Received an HTML page instead of a feed")
            if parsed.bozo:
                raise ParseError(
                    ParseErrorKind.MALFORMED,
                    f"Unparseable feed document: {parsed.get('bozo_exception')}",
                )
            raise ParseError(ParseErrorKind.NOT_A_FEED, "Document is not an RSS or Atom feed")
        if parsed.bozo and not parsed.feed.get("title"):
            raise ParseError(
                ParseErrorKind.MALFORMED,
                f"Malformed {parsed.get('version')} document: {parsed.get('bozo_exception')}",
            )

    def _map_entry(self, entry) -> Optional[ParsedItem]:
        return ParsedItem(
            title=entry.get("title", "") or "",
            description=self.extract_content(entry),
            link=entry.get("link", "") or "",
            published_at=struct_to_timestamp(entry.get("published_parsed") or entry.get("updated_parsed")),
            author=entry.get("author") or None,
            thumbnail=self.extract_thumbnail(entry),
            guid=entry.get("id", "") or "",
        )

    def extract_content(self, entry) -> str:
        """content:encoded (or Atom content) first, then summary/description."""
        for content_item in entry.get("content") or []:
            value = content_item.get("value")
            if value:
                return value
        return entry.get("summary", "") or entry.get("description", "") or ""

    def extract_thumbnail(self, entry) -> Optional[str]:
        """Widest media:content image, then media:thumbnail, then an image enclosure."""
        best_url = None
        best_width = -1
        for media in entry.get("media_content") or []:
            url = media.get("url")
            if not url:
                continue
            medium = (media.get("medium") or "").lower()
            mime = (media.get("type") or "").lower()
            if medium and medium != "image" and not mime.startswith("image/"):
                continue
            if not medium and mime and not mime.startswith("image/"):
                continue
            try:
                width = int(media.get("width") or 0)
            except (TypeError, ValueError):
                width = 0
            if width > best_width:
                best_url, best_width = url, width
        if best_url:
            return best_url

        for thumb in entry.get("media_thumbnail") or []:
            if thumb.get("url"):
                return thumb["url"]

        for enclosure in entry.get("enclosures") or []:
            if (enclosure.get("type") or "").lower().startswith("image/") and enclosure.get("href"):
                return enclosure["href"]
        return None

    def _feed_icon(self, feed) -> Optional[str]:
        image = feed.get("image")
        if image and image.get("href"):
            return image["href"]
        return feed.get("icon") or feed.get("logo") or None


class YouTubeFeedParser(RssAtomParser):
    """Channel video feed; items without a recoverable video id are dropped."""

    def _map_entry(self, entry) -> Optional[ParsedItem]:
        video_id = (
            entry.get("yt_videoid")
            or extract_video_id(entry.get("id"))
            or extract_video_id(entry.get("link"))
        )
        if not video_id:
            logger.debug(f"Skipping YouTube entry without video id: {entry.get('title', '')!r}")
            return None
        item = super()._map_entry(entry)
        item.guid = video_id
        item.link = item.link or video_url(video_id)
        item.description = item.description or entry.get("media_description", "") or ""
        item.thumbnail = item.thumbnail or thumbnail_url(video_id)
        return item


class YouTubeHtmlParser(FeedParser):
    """Scrape a channel page's ``ytInitialData``; every failure is NOT_A_FEED."""

    @trace_span(
        "parse_youtube_page",
        tracer_name="parser",
        attr_from_args=lambda self, raw: {"http.url": raw.url, "feed.bytes": len(raw.body)},
    )
    def parse(self, raw: RawContent) -> ParsedFeed:
        data = extract_initial_data(raw.text)
        try:
            return self._build(data, raw)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ParseError(ParseErrorKind.NOT_A_FEED, f"Unexpected ytInitialData layout: {e}") from e

    def _build(self, data: dict, raw: RawContent) -> ParsedFeed:
        meta = next(iter_renderers(data, "channelMetadataRenderer"), {})
        author = meta.get("title") or None

        items: List[ParsedItem] = []
        seen: Set[str] = set()
        for renderer in iter_renderers(data, "videoRenderer", "gridVideoRenderer"):
            video_id = renderer.get("videoId")
            if not video_id or video_id in seen:
                continue
            seen.add(video_id)
            thumbs = (renderer.get("thumbnail") or {}).get("thumbnails") or []
            items.append(ParsedItem(
                title=renderer_text(renderer.get("title")),
                description=renderer_text(renderer.get("descriptionSnippet")),
                link=video_url(video_id),
                published_at=None,
                author=renderer_text(renderer.get("ownerText")) or author,
                thumbnail=thumbs[-1].get("url") if thumbs and thumbs[-1].get("url") else thumbnail_url(video_id),
                guid=video_id,
            ))
            if len(items) >= self.max_items:
                break

        if not meta and not items:
            raise ParseError(ParseErrorKind.NOT_A_FEED, "No channel metadata or videos in ytInitialData")

        avatars = (meta.get("avatar") or {}).get("thumbnails") or []
        return ParsedFeed(
            feed_title=meta.get("title", "") or "",
            feed_description=meta.get("description", "") or "",
            feed_link=meta.get("channelUrl") or raw.final_url,
            feed_icon=avatars[-1].get("url") if avatars else None,
            items=items,
        )


def parser_for(source_kind: SourceKind, url: str, max_items: Optional[int] = None) -> FeedParser:
    """Build a new parser for a source kind; YouTube picks feed vs page by URL."""
    source_kind = SourceKind(source_kind)
    if source_kind is SourceKind.YOUTUBE:
        if is_video_feed_url(url):
            return YouTubeFeedParser(max_items)
        return YouTubeHtmlParser(max_items)
    return RssAtomParser(max_items)


def parse(raw: RawContent, source_kind: SourceKind) -> ParsedFeed:
    return parser_for(source_kind, raw.url).parse(raw)
