#!/usr/bin/env python3
"""
Source fetcher.

Performs the outbound GET for a feed URL or YouTube channel page with a
browser-like User-Agent, a hard per-attempt timeout, bounded retries with
exponential backoff and a response size cap. It has no storage side effects:
every failure is raised as a ``FetchError`` for the orchestrator to record.
"""

from asyncio import TimeoutError
from typing import Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FetchError, FetchErrorKind
from schemas import RawContent, SourceKind
from telemetry import trace_span
from utils import RetryHelper, validate_url
from youtube import is_video_feed_url

logger = get_logger("fetcher")

XML_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/xml;q=0.9, "
    "text/xml;q=0.9, */*;q=0.8"
)
HTML_ACCEPT = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/webp,image/apng,*/*;q=0.8"
)
YOUTUBE_REFERER = "https://www.youtube.com/"
READ_CHUNK_SIZE = 64 * 1024


class SourceFetcher:
    """Fetch raw feed bodies.

    Constructor arguments default to the global configuration; tests inject
    short timeouts and zero backoff.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_bytes: Optional[int] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.max_attempts = max(1, max_attempts if max_attempts is not None else config.FETCH_MAX_ATTEMPTS)
        self.max_bytes = max_bytes if max_bytes is not None else config.MAX_FEED_BYTES
        self.user_agent = user_agent or config.USER_AGENT
        self.retry_helper = RetryHelper(
            max_retries=self.max_attempts - 1,
            base_delay=base_delay if base_delay is not None else config.RETRY_DELAY_BASE,
            max_delay=max_delay if max_delay is not None else config.RETRY_DELAY_MAX,
        )

    def build_headers(self, url: str, source_kind: SourceKind) -> Dict[str, str]:
        """XML-preferring Accept for feeds, HTML-preferring for YouTube page scrapes."""
        headers = {"User-Agent": self.user_agent}
        if source_kind is SourceKind.YOUTUBE and not is_video_feed_url(url):
            headers["Accept"] = HTML_ACCEPT
            headers["Accept-Language"] = "en-US,en;q=0.9"
            headers["Referer"] = YOUTUBE_REFERER
        else:
            headers["Accept"] = XML_ACCEPT
        return headers

    @trace_span(
        "fetch_source",
        tracer_name="fetcher",
        attr_from_args=lambda self, session, url, source_kind, timeout=None: {
            "http.url": url,
            "feed.source_kind": SourceKind(source_kind).value,
        },
    )
    async def fetch(
        self,
        session: ClientSession,
        url: str,
        source_kind: SourceKind,
        timeout: Optional[float] = None,
    ) -> RawContent:
        """Fetch ``url`` and return its body.

        Timeouts, network errors and 5xx responses are retried up to
        ``max_attempts`` in total; 4xx and oversized bodies fail immediately.

        Raises:
            FetchError: with kind TIMEOUT, NETWORK_FAILURE, HTTP_STATUS or TOO_LARGE.
        """
        source_kind = SourceKind(source_kind)
        if not validate_url(url):
            raise FetchError(FetchErrorKind.NETWORK_FAILURE, f"Invalid URL: {url!r}", url=url)

        headers = self.build_headers(url, source_kind)
        per_attempt = ClientTimeout(total=timeout if timeout is not None else self.timeout)
        last_error: Optional[FetchError] = None

        for attempt in range(self.max_attempts):
            try:
                return await self._fetch_once(session, url, headers, per_attempt)
            except FetchError as e:
                if e.kind is not FetchErrorKind.HTTP_STATUS or (e.status or 0) < 500:
                    raise
                last_error = e
            except TimeoutError as e:
                # aiohttp timeouts subclass both TimeoutError and ClientError
                last_error = FetchError(
                    FetchErrorKind.TIMEOUT,
                    f"Timed out after {per_attempt.total}s",
                    url=url,
                    cause=e,
                )
            except ClientError as e:
                last_error = FetchError(
                    FetchErrorKind.NETWORK_FAILURE,
                    self._format_client_error(e),
                    url=url,
                    cause=e,
                )

            if attempt + 1 < self.max_attempts:
                logger.warning(
                    "Retry %d/%d for %s due to error: %s",
                    attempt + 1,
                    self.max_attempts - 1,
                    url,
                    last_error,
                )
                await self.retry_helper.sleep_for_attempt(attempt)

        logger.error(f"Failed to fetch {url} after {self.max_attempts} attempts: {last_error}")
        raise last_error

    async def _fetch_once(
        self,
        session: ClientSession,
        url: str,
        headers: Dict[str, str],
        timeout: ClientTimeout,
    ) -> RawContent:
        async with session.get(
            url,
            headers=headers,
            timeout=timeout,
            max_redirects=config.MAX_REDIRECTS,
        ) as response:
            if not 200 <= response.status < 300:
                raise FetchError(
                    FetchErrorKind.HTTP_STATUS,
                    f"HTTP {response.status}",
                    url=url,
                    status=response.status,
                )
            body = await self._read_capped(response, url)
            return RawContent(
                url=url,
                final_url=str(response.url),
                status=response.status,
                content_type=response.headers.get("Content-Type", ""),
                body=body,
            )

    async def _read_capped(self, response, url: str) -> bytes:
        """Read the body, refusing anything above ``max_bytes``."""
        declared = response.content_length
        if declared is not None and declared > self.max_bytes:
            raise FetchError(
                FetchErrorKind.TOO_LARGE,
                f"Content-Length {declared} exceeds limit of {self.max_bytes} bytes",
                url=url,
                status=response.status,
            )
        chunks: List[bytes] = []
        received = 0
        async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
            received += len(chunk)
            if received > self.max_bytes:
                raise FetchError(
                    FetchErrorKind.TOO_LARGE,
                    f"Response body exceeds limit of {self.max_bytes} bytes",
                    url=url,
                    status=response.status,
                )
            chunks.append(chunk)
        return b"".join(chunks)

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
