#!/usr/bin/env python3
"""
Feed Sync command line entry point.

Runs the ingestion pipeline on demand or on a schedule:

- add-feed / remove-feed: register or soft-delete a user's feed
- sync-feed: sync one feed now, ignoring staleness
- sync-user: sync a user's stale feeds
- sync-all: administrative sweep over every user's stale feeds
- mark: set a read/favorite/read-later flag on an item
- scheduled: run the periodic sweep loop
- status: print database and schedule status

Reports are printed to stdout as JSON.
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config import config, get_logger
from errors import FeedNotFoundError, ItemNotFoundError, PipelineError
from interactions import InteractionReconciler
from models import DatabaseQueue
from scheduler import SweepScheduler
from schemas import InteractionField, ItemKind, SourceKind
from sync import FeedSynchronizer
from telemetry import init_telemetry, trace_span
from utils import validate_url
from youtube import is_youtube_url

logger = get_logger("orchestrator")


class FeedSyncOrchestrator:
    """Wires the database queue, synchronizer and reconciler for one CLI run."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path)
        self.synchronizer = FeedSynchronizer(self.db)
        self.reconciler = InteractionReconciler(self.db)

    async def __aenter__(self) -> "FeedSyncOrchestrator":
        await self.db.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.db.stop()

    async def add_feed(self, user_id: str, url: str, kind: Optional[str] = None,
                       title: str = "", category: Optional[str] = None) -> Dict[str, Any]:
        if not validate_url(url):
            raise ValueError(f"Not an http(s) URL: {url}")
        if kind is None:
            kind = SourceKind.YOUTUBE.value if is_youtube_url(url) else SourceKind.RSS.value
        feed = await self.db.execute(
            'register_feed', owner_id=user_id, url=url, source_kind=kind, title=title, category=category
        )
        logger.info(f"➕ Added feed {feed.id} for {user_id}")
        return feed.to_dict()

    async def remove_feed(self, user_id: str, feed_id: int) -> Dict[str, Any]:
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if feed is None or feed.is_deleted or feed.owner_id != user_id:
            raise FeedNotFoundError(f"Feed {feed_id} not found for user {user_id}")
        removed = await self.db.execute('soft_delete_feed', feed_id=feed_id)
        logger.info(f"🗑️ Removed feed {feed_id} for {user_id}")
        return {"feed_id": feed_id, "removed": removed}

    @trace_span("cli.sync_feed", tracer_name="orchestrator",
                attr_from_args=lambda self, user_id, feed_id: {"user.id": user_id, "feed.id": int(feed_id)})
    async def sync_feed(self, user_id: str, feed_id: int) -> Dict[str, Any]:
        report = await self.synchronizer.sync_feed_now(user_id, feed_id)
        return report.to_dict()

    @trace_span("cli.sync_user", tracer_name="orchestrator",
                attr_from_args=lambda self, user_id, interval_minutes=None: {"user.id": user_id})
    async def sync_user(self, user_id: str, interval_minutes: Optional[int] = None) -> Dict[str, Any]:
        report = await self.synchronizer.sync_due_feeds(user_id, interval_minutes=interval_minutes)
        return report.to_dict()

    @trace_span("cli.sync_all", tracer_name="orchestrator",
                attr_from_args=lambda self, limit=None, interval_minutes=None: {"sync.limit": limit or 0})
    async def sync_all(self, limit: Optional[int] = None, interval_minutes: Optional[int] = None) -> Dict[str, Any]:
        report = await self.synchronizer.sync_all_active_feeds(
            interval_minutes=interval_minutes, limit=limit or config.ADMIN_SYNC_LIMIT or None
        )
        return report.to_dict()

    async def mark(self, user_id: str, item_id: int, item_kind: str, field: str, value: bool) -> Dict[str, Any]:
        state = await self.reconciler.set_interaction(user_id, item_id, item_kind, field, value)
        return {
            "user_id": state.user_id,
            "item_id": state.item_id,
            "item_kind": state.item_kind.value,
            "is_read": state.is_read,
            "is_favorite": state.is_favorite,
            "is_read_later": state.is_read_later,
            "updated_at": state.updated_at,
        }

    async def run_scheduled(self, max_runs: Optional[int] = None) -> None:
        scheduler = SweepScheduler()
        logger.info("🕐 Starting scheduled mode")
        await scheduler.run_forever(self.synchronizer, max_runs=max_runs)

    async def check_status(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Counts of feeds, items and interactions plus schedule and config state."""
        feeds = await self.db.execute('list_feeds', owner_id=user_id)
        due = await self.synchronizer.scheduler.select_due_feeds(user_id=user_id)
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'database': {
                'path': self.db.db_path,
                'feeds': len(feeds),
                'active_feeds': sum(1 for feed in feeds if feed.is_active),
                'due_feeds': len(due),
                'never_fetched': sum(1 for feed in feeds if feed.last_fetched_at is None),
                'items': await self.db.execute('count_items'),
                'interactions': await self.db.execute('count_interactions', user_id=user_id),
            },
            'schedule': SweepScheduler().get_schedule_status(),
            'config': config.get_config_summary(),
        }


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"Expected a boolean, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Sync')
    parser.add_argument('mode', choices=['add-feed', 'remove-feed', 'sync-feed', 'sync-user', 'sync-all',
                                         'mark', 'scheduled', 'status'],
                        help='Operation mode')
    parser.add_argument('--user', type=str, help='User id the operation acts for')
    parser.add_argument('--feed-id', type=int, help='Feed id (remove-feed, sync-feed)')
    parser.add_argument('--url', type=str, help='Feed URL (add-feed)')
    parser.add_argument('--kind', choices=[k.value for k in SourceKind],
                        help='Source kind for add-feed (default: detected from URL)')
    parser.add_argument('--title', type=str, default='', help='Initial feed title (add-feed)')
    parser.add_argument('--category', type=str, help='Feed category (add-feed)')
    parser.add_argument('--item-id', type=int, help='Item id (mark)')
    parser.add_argument('--item-kind', choices=[k.value for k in ItemKind], default=ItemKind.RSS.value,
                        help='Item kind (mark)')
    parser.add_argument('--field', choices=[f.value for f in InteractionField], help='Flag to set (mark)')
    parser.add_argument('--value', type=_parse_bool, default=True, help='Flag value (mark, default true)')
    parser.add_argument('--limit', type=int, help='Maximum feeds for sync-all (default ADMIN_SYNC_LIMIT)')
    parser.add_argument('--interval', type=int, help='Refresh interval in minutes (default REFRESH_INTERVAL_MINUTES)')
    parser.add_argument('--max-runs', type=int, help='Stop scheduled mode after this many sweeps')
    parser.add_argument('--db', type=str, help='Database path (default DATABASE_PATH)')
    return parser


def _require(parser: argparse.ArgumentParser, args: argparse.Namespace, *names: str) -> None:
    missing = [f"--{name.replace('_', '-')}" for name in names if getattr(args, name) is None]
    if missing:
        parser.error(f"{args.mode} requires {', '.join(missing)}")


async def run(args: argparse.Namespace) -> Any:
    async with FeedSyncOrchestrator(args.db) as orchestrator:
        if args.mode == 'add-feed':
            return await orchestrator.add_feed(args.user, args.url, args.kind, args.title, args.category)
        if args.mode == 'remove-feed':
            return await orchestrator.remove_feed(args.user, args.feed_id)
        if args.mode == 'sync-feed':
            return await orchestrator.sync_feed(args.user, args.feed_id)
        if args.mode == 'sync-user':
            return await orchestrator.sync_user(args.user, interval_minutes=args.interval)
        if args.mode == 'sync-all':
            return await orchestrator.sync_all(limit=args.limit, interval_minutes=args.interval)
        if args.mode == 'mark':
            return await orchestrator.mark(args.user, args.item_id, args.item_kind, args.field, args.value)
        if args.mode == 'scheduled':
            await orchestrator.run_scheduled(max_runs=args.max_runs)
            return None
        return await orchestrator.check_status(args.user)


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    required = {
        'add-feed': ('user', 'url'),
        'remove-feed': ('user', 'feed_id'),
        'sync-feed': ('user', 'feed_id'),
        'sync-user': ('user',),
        'mark': ('user', 'item_id', 'field'),
    }
    _require(parser, args, *required.get(args.mode, ()))

    init_telemetry("feed-sync")

    try:
        result = asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("👋 Feed sync shutting down")
        return
    except (FeedNotFoundError, ItemNotFoundError) as e:
        logger.error(f"❌ {e}")
        sys.exit(2)
    except ValueError as e:
        logger.error(f"❌ Invalid request: {e}")
        sys.exit(2)
    except PipelineError as e:
        logger.error(f"💥 {type(e).__name__}: {e}")
        _print_json(e.to_dict())
        sys.exit(1)

    if result is not None:
        _print_json(result)
    if isinstance(result, dict) and result.get('failed'):
        sys.exit(1)


if __name__ == "__main__":
    main()
