#!/usr/bin/env python3
"""
YouTube identifier helpers.

Channels are ingested through their public video feed
(``/feeds/videos.xml?channel_id=UC...``) whenever a channel id can be derived
from the stored URL. Channel pages are only scraped for the ``ytInitialData``
JSON blob when no id is available, and that path fails closed.
"""

import json
import re
from typing import Any, Dict, Iterator, Optional
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup

from config import get_logger
from errors import ParseError, ParseErrorKind

logger = get_logger("youtube")

FEED_URL_TEMPLATE = "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"
THUMBNAIL_URL_TEMPLATE = "https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"
VIDEO_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"

CHANNEL_ID_RE = re.compile(r"^UC[\w-]{21,22}$")
CHANNEL_PATH_RE = re.compile(r"/channel/(UC[\w-]{21,22})")
VIDEO_ID_RE = re.compile(r"^[\w-]{11}$")
VIDEO_URL_PATTERNS = (
    re.compile(r"youtu\.be/([\w-]{11})"),
    re.compile(r"[?&]v=([\w-]{11})"),
    re.compile(r"/embed/([\w-]{11})"),
    re.compile(r"/v/([\w-]{11})"),
    re.compile(r"/shorts/([\w-]{11})"),
    re.compile(r"^yt:video:([\w-]{11})$"),
)
INITIAL_DATA_RE = re.compile(r"ytInitialData\s*=\s*")
JSON_DECODER = json.JSONDecoder()
EMBEDDED_CHANNEL_ID_RE = re.compile(r'"(?:channelId|externalId)"\s*:\s*"(UC[\w-]{21,22})"')

YOUTUBE_HOSTS = ("youtube.com", "www.youtube.com", "m.youtube.com", "youtu.be")


def is_youtube_url(url: Optional[str]) -> bool:
    if not url:
        return False
    host = (urlparse(url.strip()).hostname or "").lower()
    return host in YOUTUBE_HOSTS


def is_video_feed_url(url: Optional[str]) -> bool:
    """True for the channel video-feed XML endpoint."""
    if not url:
        return False
    parsed = urlparse(url.strip())
    return is_youtube_url(url) and parsed.path.rstrip("/") == "/feeds/videos.xml"


def extract_channel_id(value: Optional[str]) -> Optional[str]:
    """Pull a ``UC...`` channel id out of a bare id, channel URL or feed URL."""
    if not value:
        return None
    value = value.strip()
    if CHANNEL_ID_RE.match(value):
        return value
    match = CHANNEL_PATH_RE.search(value)
    if match:
        return match.group(1)
    query = parse_qs(urlparse(value).query)
    for candidate in query.get("channel_id", []):
        if CHANNEL_ID_RE.match(candidate):
            return candidate
    return None


def feed_url_for_channel(channel_id: str) -> str:
    if not CHANNEL_ID_RE.match(channel_id or ""):
        raise ValueError(f"Invalid YouTube channel id: {channel_id!r}")
    return FEED_URL_TEMPLATE.format(channel_id=channel_id)


def resolve_feed_url(url: str) -> str:
    """Map a stored YouTube source URL to the video feed endpoint when possible.

    Handle URLs (``/@name``) and custom URLs carry no channel id and are
    returned unchanged, leaving the page scrape as the only option.
    """
    if is_video_feed_url(url):
        return url
    channel_id = extract_channel_id(url)
    if channel_id:
        return feed_url_for_channel(channel_id)
    return url


def extract_video_id(value: Optional[str]) -> Optional[str]:
    """Return the 11-character video id from a URL, ``yt:video:`` id, or bare id."""
    if not value:
        return None
    value = value.strip()
    for pattern in VIDEO_URL_PATTERNS:
        match = pattern.search(value)
        if match:
            return match.group(1)
    if ":" in value:
        tail = value.rsplit(":", 1)[-1]
        if VIDEO_ID_RE.match(tail):
            return tail
    if VIDEO_ID_RE.match(value):
        return value
    return None


def thumbnail_url(video_id: str) -> str:
    return THUMBNAIL_URL_TEMPLATE.format(video_id=video_id)


def video_url(video_id: str) -> str:
    return VIDEO_URL_TEMPLATE.format(video_id=video_id)


def channel_id_from_html(html: str) -> Optional[str]:
    """Discover the channel id of a channel page (canonical link, meta tag or embedded JSON)."""
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    for link in soup.find_all("link", rel="canonical"):
        channel_id = extract_channel_id(link.get("href"))
        if channel_id:
            return channel_id
    meta = soup.find("meta", attrs={"itemprop": re.compile(r"^(channelId|identifier)$")})
    if meta and CHANNEL_ID_RE.match(meta.get("content", "")):
        return meta["content"]
    match = EMBEDDED_CHANNEL_ID_RE.search(html)
    return match.group(1) if match else None


def extract_initial_data(html: str) -> Dict[str, Any]:
    """Locate and decode the ``ytInitialData`` assignment in a page's scripts.

    Raises:
        ParseError: NOT_A_FEED if the marker is absent or its payload is not a JSON object.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    for script in soup.find_all("script"):
        text = script.string or script.get_text() or ""
        if "ytInitialData" not in text:
            continue
        match = INITIAL_DATA_RE.search(text)
        if not match:
            continue
        try:
            # raw_decode stops at the end of the object, ignoring the trailing script
            data, _ = JSON_DECODER.raw_decode(text, match.end())
        except json.JSONDecodeError as e:
            logger.debug(f"ytInitialData payload is not valid JSON: {e}")
            raise ParseError(ParseErrorKind.NOT_A_FEED, "ytInitialData payload is not valid JSON") from e
        if isinstance(data, dict):
            return data
        break
    raise ParseError(ParseErrorKind.NOT_A_FEED, "ytInitialData marker not found in page")


def iter_renderers(node: Any, *keys: str) -> Iterator[Dict[str, Any]]:
    """Depth-first walk yielding every dict stored under one of ``keys``, in document order."""
    if isinstance(node, dict):
        for k, v in node.items():
            if k in keys and isinstance(v, dict):
                yield v
            else:
                yield from iter_renderers(v, *keys)
    elif isinstance(node, list):
        for element in node:
            yield from iter_renderers(element, *keys)


def renderer_text(value: Any) -> str:
    """Flatten YouTube's ``{"simpleText": ...}`` / ``{"runs": [...]}`` text objects."""
    if not isinstance(value, dict):
        return ""
    if isinstance(value.get("simpleText"), str):
        return value["simpleText"]
    runs = value.get("runs")
    if isinstance(runs, list):
        return "".join(run.get("text", "") for run in runs if isinstance(run, dict))
    return ""
