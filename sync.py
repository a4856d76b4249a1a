#!/usr/bin/env python3
"""
Sync orchestration.

Runs fetch, parse and upsert for each feed with per-feed isolation. Feeds are
processed in batches of ``SYNC_BATCH_SIZE`` concurrent syncs with a short
pause between batches; batches run strictly in order. One feed failing never
affects the others: every feed ends with a ``SyncResult`` in the report.

Syncs of the same feed are serialized by a per-feed lock. A staleness sweep
re-checks freshness once it holds the lock, so a feed just refreshed by a
manual sync is reported as skipped instead of being fetched twice.
"""

import asyncio
from contextlib import asynccontextmanager
from time import time
from typing import AsyncIterator, Dict, List, Optional

from aiohttp import ClientSession

from config import config, get_logger
from errors import (
    FeedNotFoundError,
    ParseError,
    ParseErrorKind,
    PipelineError,
    StorageError,
)
from feed_parser import parser_for
from fetcher import SourceFetcher
from models import DatabaseQueue
from normalizer import ItemNormalizer
from scheduler import StalenessScheduler, is_due
from schemas import (
    Feed,
    ParsedFeed,
    RawContent,
    SourceKind,
    SyncReport,
    SyncResult,
    SyncStage,
    SyncStatus,
)
from telemetry import trace_span
from youtube import channel_id_from_html, feed_url_for_channel, is_video_feed_url, resolve_feed_url

logger = get_logger("sync")


class FeedSynchronizer:
    """Entry points for manual, per-user and administrative syncs."""

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: Optional[SourceFetcher] = None,
        normalizer: Optional[ItemNormalizer] = None,
        scheduler: Optional[StalenessScheduler] = None,
        session: Optional[ClientSession] = None,
        batch_size: Optional[int] = None,
        batch_pause: Optional[float] = None,
        run_budget: Optional[float] = None,
        youtube_html_fallback: Optional[bool] = None,
    ):
        self.db = db
        self.fetcher = fetcher or SourceFetcher()
        self.normalizer = normalizer or ItemNormalizer(db)
        self.scheduler = scheduler or StalenessScheduler(db)
        self.session = session
        self.batch_size = batch_size or config.SYNC_BATCH_SIZE
        self.batch_pause = config.SYNC_BATCH_PAUSE_SECONDS if batch_pause is None else batch_pause
        self.run_budget = run_budget or config.SYNC_RUN_BUDGET_SECONDS
        self.youtube_html_fallback = (
            config.YOUTUBE_HTML_FALLBACK if youtube_html_fallback is None else youtube_html_fallback
        )
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}
        self.feed_states: Dict[int, SyncStage] = {}

    @asynccontextmanager
    async def _feed_lock(self, feed_id: int) -> AsyncIterator[None]:
        """Hold the feed's lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(feed_id, asyncio.Lock())
        self._lock_users[feed_id] = self._lock_users.get(feed_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[feed_id] -= 1
            if not self._lock_users[feed_id]:
                del self._lock_users[feed_id]
                self._locks.pop(feed_id, None)

    @asynccontextmanager
    async def _client_session(self) -> AsyncIterator[ClientSession]:
        if self.session is not None:
            yield self.session
            return
        async with ClientSession() as session:
            yield session

    # Entry points

    async def sync_feed_now(self, user_id: str, feed_id: int) -> SyncReport:
        """Sync one feed immediately, bypassing staleness.

        Raises:
            FeedNotFoundError: the feed is missing, soft-deleted, or owned by someone else.
        """
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if feed is None or feed.is_deleted or feed.owner_id != user_id:
            raise FeedNotFoundError(f"Feed {feed_id} not found for user {user_id}")
        logger.info(f"Manual sync requested by {user_id} for feed {feed_id}")
        return await self.sync_feeds([feed], force=True)

    async def sync_due_feeds(self, user_id: str, interval_minutes: Optional[int] = None) -> SyncReport:
        """Sync the user's stale feeds in batches."""
        interval = interval_minutes or self.scheduler.interval_minutes
        feeds = await self.scheduler.select_due_feeds(user_id=user_id, interval_minutes=interval)
        logger.info(f"{len(feeds)} feeds due for {user_id}")
        return await self.sync_feeds(feeds, force=False, interval_minutes=interval)

    async def sync_all_active_feeds(
        self,
        interval_minutes: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> SyncReport:
        """Administrative sweep over every user's stale feeds, optionally capped."""
        interval = interval_minutes or self.scheduler.interval_minutes
        feeds = await self.scheduler.select_due_feeds(interval_minutes=interval, limit=limit)
        logger.info(f"Administrative sweep: {len(feeds)} feeds due (limit={limit or 'none'})")
        return await self.sync_feeds(feeds, force=False, interval_minutes=interval)

    # Batching

    @trace_span(
        "sync_feeds",
        tracer_name="sync",
        attr_from_args=lambda self, feeds, force=False, interval_minutes=None: {
            "sync.feed_count": len(feeds),
            "sync.force": bool(force),
        },
    )
    async def sync_feeds(
        self,
        feeds: List[Feed],
        force: bool = False,
        interval_minutes: Optional[int] = None,
    ) -> SyncReport:
        """Run the per-feed pipeline over ``feeds`` in ordered, bounded batches."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.run_budget
        interval = interval_minutes or self.scheduler.interval_minutes

        unique: Dict[int, Feed] = {}
        for feed in feeds:
            unique.setdefault(feed.id, feed)
        pending = list(unique.values())
        for feed in pending:
            self.feed_states[feed.id] = SyncStage.PENDING

        results: List[SyncResult] = []
        async with self._client_session() as session:
            for index in range(0, len(pending), self.batch_size):
                if index > 0 and self.batch_pause > 0:
                    await asyncio.sleep(self.batch_pause)
                if loop.time() >= deadline:
                    remaining = pending[index:]
                    logger.warning(
                        f"Sync run budget of {self.run_budget}s exhausted; skipping {len(remaining)} feeds"
                    )
                    results.extend(self._skipped(feed, "run budget exhausted") for feed in remaining)
                    break

                batch = pending[index:index + self.batch_size]
                outcomes = await asyncio.gather(
                    *(self.sync_feed(session, feed, force=force, interval_minutes=interval) for feed in batch),
                    return_exceptions=True,
                )
                for feed, outcome in zip(batch, outcomes):
                    # Cancelling the run raises out of gather; a CancelledError here is one feed's task only
                    if isinstance(outcome, BaseException):
                        if not isinstance(outcome, (Exception, asyncio.CancelledError)):
                            raise outcome
                        logger.error(f"Unhandled error syncing feed {feed.id}: {outcome}")
                        self.feed_states[feed.id] = SyncStage.FAILED
                        outcome = SyncResult(
                            feed_id=feed.id,
                            status=SyncStatus.FAILED,
                            stage=SyncStage.FAILED,
                            error={"type": type(outcome).__name__, "message": str(outcome)},
                        )
                    results.append(outcome)

        report = SyncReport(results=results, duration=loop.time() - started)
        logger.info(
            "Sync run complete: %d succeeded, %d failed, %d skipped, %d items added",
            report.succeeded,
            report.failed,
            report.skipped,
            report.items_added,
        )
        return report

    def _skipped(self, feed: Feed, reason: str) -> SyncResult:
        self.feed_states[feed.id] = SyncStage.SKIPPED
        logger.debug(f"Feed {feed.id} skipped: {reason}")
        return SyncResult(
            feed_id=feed.id,
            status=SyncStatus.SKIPPED,
            stage=SyncStage.SKIPPED,
            error={"reason": reason},
        )

    # Per-feed pipeline

    @trace_span(
        "sync_feed",
        tracer_name="sync",
        attr_from_args=lambda self, session, feed, force=False, interval_minutes=None: {
            "feed.id": feed.id,
            "feed.url": feed.url,
            "feed.source_kind": feed.source_kind.value,
        },
    )
    async def sync_feed(
        self,
        session: ClientSession,
        feed: Feed,
        force: bool = False,
        interval_minutes: Optional[int] = None,
    ) -> SyncResult:
        """Fetch, parse and upsert one feed; never raises for pipeline failures."""
        interval = interval_minutes or self.scheduler.interval_minutes
        async with self._feed_lock(feed.id):
            current = await self.db.execute('get_feed', feed_id=feed.id)
            if current is None or current.is_deleted:
                return self._skipped(feed, "feed deleted")
            if not force and not is_due(current, interval):
                return self._skipped(feed, "feed is fresh or inactive")
            return await self._run_pipeline(session, current)

    async def _run_pipeline(self, session: ClientSession, feed: Feed) -> SyncResult:
        started = time()
        stage = SyncStage.FETCHING
        result = SyncResult(feed_id=feed.id, status=SyncStatus.FAILED, stage=stage)
        try:
            self.feed_states[feed.id] = stage
            raw = await self._fetch_source(session, feed)

            stage = self.feed_states[feed.id] = SyncStage.PARSING
            parsed = await self._parse(raw, feed)

            stage = self.feed_states[feed.id] = SyncStage.UPSERTING
            upsert = await self.normalizer.normalize_and_upsert(feed.id, parsed.items)
            await self.db.execute(
                'update_feed_metadata',
                feed_id=feed.id,
                title=parsed.feed_title,
                description=parsed.feed_description,
                icon_url=parsed.feed_icon,
            )

            result = SyncResult(
                feed_id=feed.id,
                status=SyncStatus.SUCCESS,
                stage=SyncStage.SUCCEEDED,
                items_added=upsert.added,
                items_skipped=upsert.skipped,
            )
            logger.info(
                f"Synced feed {feed.id} ({feed.url}): {upsert.added} added, {upsert.skipped} skipped"
            )
        except PipelineError as e:
            logger.warning(f"Feed {feed.id} failed during {stage.value}: {type(e).__name__}({e.kind.value}) {e}")
            result = SyncResult(
                feed_id=feed.id,
                status=SyncStatus.FAILED,
                stage=SyncStage.FAILED,
                error={**e.to_dict(), "stage": stage.value},
            )
        except Exception as e:
            logger.exception(f"Unexpected error syncing feed {feed.id} during {stage.value}")
            result = SyncResult(
                feed_id=feed.id,
                status=SyncStatus.FAILED,
                stage=SyncStage.FAILED,
                error={"type": type(e).__name__, "message": str(e), "stage": stage.value},
            )

        self.feed_states[feed.id] = result.stage
        await self._stamp(feed, result)
        result.duration = time() - started
        return result

    async def _stamp(self, feed: Feed, result: SyncResult) -> None:
        try:
            await self.db.execute(
                'touch_feed_fetch_timestamp',
                feed_id=feed.id,
                success=result.status is SyncStatus.SUCCESS,
                items_added=result.items_added,
            )
        except StorageError as e:
            logger.error(f"Could not stamp fetch time for feed {feed.id}: {e}")
            if result.status is SyncStatus.SUCCESS:
                result.status = SyncStatus.FAILED
                result.stage = SyncStage.FAILED
                result.error = {**e.to_dict(), "stage": "stamping"}
                self.feed_states[feed.id] = SyncStage.FAILED

    async def _fetch_source(self, session: ClientSession, feed: Feed) -> RawContent:
        """Fetch the feed body; YouTube sources prefer the channel video feed."""
        if feed.source_kind is not SourceKind.YOUTUBE:
            return await self.fetcher.fetch(session, feed.url, feed.source_kind)

        url = feed_url_for_channel(feed.channel_id) if feed.channel_id else resolve_feed_url(feed.url)
        raw = await self.fetcher.fetch(session, url, feed.source_kind)
        if is_video_feed_url(url):
            return raw

        channel_id = channel_id_from_html(raw.text)
        if channel_id:
            logger.debug(f"Feed {feed.id}: resolved channel {channel_id} from page")
            await self._remember_channel(feed, channel_id)
            return await self.fetcher.fetch(session, feed_url_for_channel(channel_id), feed.source_kind)
        if not self.youtube_html_fallback:
            raise ParseError(ParseErrorKind.NOT_A_FEED, "No channel id found on YouTube page")
        return raw

    async def _remember_channel(self, feed: Feed, channel_id: str) -> None:
        """Store the resolved channel id so later syncs go straight to the video feed."""
        try:
            await self.db.execute('set_feed_channel_id', feed_id=feed.id, channel_id=channel_id)
        except StorageError as e:
            logger.warning(f"Could not store channel {channel_id} for feed {feed.id}: {e}")

    async def _parse(self, raw: RawContent, feed: Feed) -> ParsedFeed:
        parser = parser_for(feed.source_kind, raw.url)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, parser.parse, raw)
