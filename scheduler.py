#!/usr/bin/env python3
"""
Staleness scheduling for feed refreshes.

``StalenessScheduler`` decides which feeds are due: a feed is due when it has
never been fetched or was last fetched more than the refresh interval ago.
Soft-deleted and inactive feeds are never due. Selection is read-only.

``SweepScheduler`` is the long-running loop that wakes every
``SCHEDULER_SWEEP_MINUTES`` and asks the synchronizer to refresh every due
feed across all users.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from time import time
from typing import Any, Dict, List, Optional

from config import config, get_logger
from models import DatabaseQueue
from schemas import Feed
from telemetry import trace_span
from utils import format_duration

logger = get_logger("scheduler")


def is_due(feed: Feed, interval_minutes: int, now: Optional[int] = None) -> bool:
    """True if ``feed`` should be refreshed at ``now`` under ``interval_minutes``."""
    if feed.is_deleted or not feed.is_active:
        return False
    if feed.last_fetched_at is None:
        return True
    now = int(time()) if now is None else int(now)
    return feed.last_fetched_at < now - int(interval_minutes) * 60


class StalenessScheduler:
    """Select feeds whose last fetch is older than the refresh interval."""

    def __init__(self, db: DatabaseQueue, interval_minutes: Optional[int] = None):
        self.db = db
        self.interval_minutes = interval_minutes or config.REFRESH_INTERVAL_MINUTES

    @trace_span(
        "select_due_feeds",
        tracer_name="scheduler",
        attr_from_args=lambda self, user_id=None, interval_minutes=None, now=None, limit=None: {
            "user.id": user_id or "",
            "refresh.interval_minutes": interval_minutes or self.interval_minutes,
        },
    )
    async def select_due_feeds(
        self,
        user_id: Optional[str] = None,
        interval_minutes: Optional[int] = None,
        now: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Feed]:
        """Due feeds for one user, or for everyone when ``user_id`` is None.

        Never-fetched feeds come first, then the stalest.
        """
        interval = interval_minutes or self.interval_minutes
        now = int(time()) if now is None else int(now)
        feeds = await self.db.execute(
            'list_due_feeds',
            user_id=user_id,
            interval_minutes=interval,
            now=now,
            limit=limit,
        )
        logger.debug(
            "%d feeds due for %s (interval=%dm)",
            len(feeds),
            user_id or "all users",
            interval,
        )
        return feeds

    def is_due(self, feed: Feed, now: Optional[int] = None, interval_minutes: Optional[int] = None) -> bool:
        return is_due(feed, interval_minutes or self.interval_minutes, now)


class SweepScheduler:
    """Periodic administrative sweep over all users' due feeds."""

    def __init__(self, sweep_minutes: Optional[int] = None, run_immediately: Optional[bool] = None):
        self.sweep_minutes = sweep_minutes or config.SCHEDULER_SWEEP_MINUTES
        self.run_immediately = config.SCHEDULER_RUN_IMMEDIATELY if run_immediately is None else run_immediately
        self.last_run: Optional[datetime] = None
        self.runs = 0

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> datetime:
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        if self.last_run is None and self.run_immediately:
            return from_time
        base = self.last_run or from_time
        return base + timedelta(minutes=self.sweep_minutes)

    def get_schedule_status(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        seconds_until = max(0.0, (next_run - now).total_seconds())
        return {
            'current_time': now.isoformat(),
            'sweep_minutes': self.sweep_minutes,
            'refresh_interval_minutes': config.REFRESH_INTERVAL_MINUTES,
            'last_run_time': self.last_run.isoformat() if self.last_run else None,
            'next_run_time': next_run.isoformat(),
            'seconds_until_next_run': seconds_until,
            'runs_completed': self.runs,
        }

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_forever(self, synchronizer, max_runs: Optional[int] = None) -> None:
        """Sweep until cancelled (or after ``max_runs`` sweeps).

        Args:
            synchronizer: object exposing ``sync_all_active_feeds(limit=...)``
            max_runs: stop after this many sweeps; None runs forever
        """
        logger.info(
            "Starting sweep scheduler: every %d minutes, refresh interval %d minutes",
            self.sweep_minutes,
            config.REFRESH_INTERVAL_MINUTES,
        )
        while max_runs is None or self.runs < max_runs:
            try:
                now = datetime.now(timezone.utc)
                next_time = self.get_next_run_time(now)
                sleep_time = max(0.0, (next_time - now).total_seconds())
                if sleep_time > 0:
                    logger.info(f"Sleeping {format_duration(sleep_time)} until next sweep")
                    await self._sleep_until(next_time, sleep_time)

                report = await self._run_sweep_with_span(synchronizer, next_time)
                logger.info(
                    "Sweep finished: %d succeeded, %d failed, %d skipped, %d items added in %s",
                    report.succeeded,
                    report.failed,
                    report.skipped,
                    report.items_added,
                    format_duration(report.duration),
                )
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled - shutting down")
                raise
            except Exception as e:
                # last_run was stamped by the sweep itself, so the loop backs off normally
                logger.error(f"Error in scheduled sweep: {e}")

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float):
        await asyncio.sleep(sleep_time)

    @trace_span(
        "scheduler.sweep_run",
        tracer_name="scheduler",
        attr_from_args=lambda self, synchronizer, next_time: {
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _run_sweep_with_span(self, synchronizer, next_time: datetime):
        limit = config.ADMIN_SYNC_LIMIT or None
        try:
            return await synchronizer.sync_all_active_feeds(limit=limit)
        finally:
            self.last_run = datetime.now(timezone.utc)
            self.runs += 1
