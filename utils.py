#!/usr/bin/env python3
"""
Utility classes and functions for the feed sync pipeline.

Shared helpers used by the fetcher, parsers and normalizer: retry backoff,
URL validation, HTML-to-text reduction and string truncation.
"""

from asyncio import sleep
from typing import Optional
import re
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")

_WHITESPACE = re.compile(r"\s+")


def validate_url(url: str) -> bool:
    """True for an absolute http(s) URL with a host."""
    if not isinstance(url, str) or not url.strip():
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ('http', 'https') and bool(parsed.hostname)


def site_favicon(link: Optional[str]) -> Optional[str]:
    """Return ``<origin>/favicon.ico`` for a site link, or None if it has no origin."""
    if not link:
        return None
    parsed = urlparse(link.strip())
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}/favicon.ico"


def format_duration(seconds: float) -> str:
    """Render seconds as e.g. ``1h 2m 5s``; zero-valued units are omitted."""
    if seconds < 0:
        return "0s"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = [f"{value}{unit}" for value, unit in ((hours, "h"), (minutes, "m")) if value]
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut ``text`` to ``max_length`` characters, suffix included."""
    if not text or len(text) <= max_length:
        return text
    if len(suffix) >= max_length:
        return text[:max_length]
    return text[:max_length - len(suffix)] + suffix


def html_to_text(html_content: Optional[str]) -> str:
    """Reduce an HTML fragment to collapsed plain text.

    Script-like elements are dropped entirely; block boundaries become single
    spaces. Plain text passes through with whitespace collapsed.
    """
    if not html_content:
        return ""
    if "<" not in html_content and "&" not in html_content:
        return _WHITESPACE.sub(" ", html_content).strip()

    soup = BeautifulSoup(html_content, 'html.parser')
    for tag in soup(["script", "style", "iframe", "noscript", "object", "embed", "form"]):
        tag.decompose()
    return _WHITESPACE.sub(" ", soup.get_text(" ")).strip()


class RetryHelper:
    """Exponential backoff: ``base_delay * 2**attempt`` capped at ``max_delay``."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Backing off {delay:.2f}s before retry {attempt + 1}/{self.max_retries}")
            await sleep(delay)
