#!/usr/bin/env python3
"""
Item normalization and deduplication.

Parsed items are mapped to storage records keyed by a stable identity:
the entry guid, else its link, else its title. Items whose identity already
exists for the feed are skipped and never updated. Titles are a lossy last
resort, so two guid-less, link-less entries with the same title collapse
into one.
"""

from time import time
from typing import Any, Dict, Iterable, List, Optional

from config import config, get_logger
from errors import StorageError, StorageErrorKind
from models import DatabaseQueue
from schemas import ParsedItem, UpsertResult
from telemetry import trace_span
from utils import html_to_text, truncate_string

logger = get_logger("normalizer")

MAX_TITLE_LENGTH = 255
MAX_LINK_LENGTH = 2048
MAX_EXTERNAL_ID_LENGTH = 2048


def identity_key(item: ParsedItem) -> Optional[str]:
    """guid, then link, then title; None when the item has none of them."""
    for candidate in (item.guid, item.link, item.title):
        value = (candidate or "").strip()
        if value:
            return value[:MAX_EXTERNAL_ID_LENGTH]
    return None


class ItemNormalizer:
    def __init__(self, db: DatabaseQueue, description_max_length: Optional[int] = None):
        self.db = db
        self.description_max_length = description_max_length or config.DESCRIPTION_MAX_LENGTH

    def to_record(self, item: ParsedItem, now: int) -> Dict[str, Any]:
        """Storage fields for a new item; published_at falls back to ``now``."""
        description = truncate_string(html_to_text(item.description), self.description_max_length)
        return {
            "title": (item.title or "").strip()[:MAX_TITLE_LENGTH],
            "description": description or "",
            "link": (item.link or "").strip()[:MAX_LINK_LENGTH],
            "thumbnail_url": item.thumbnail or None,
            "author": (item.author or "").strip() or None,
            "published_at": item.published_at or now,
        }

    @trace_span(
        "normalize_and_upsert",
        tracer_name="normalizer",
        attr_from_args=lambda self, feed_id, parsed_items, now=None: {
            "feed.id": int(feed_id),
            "feed.items.count": len(parsed_items),
        },
    )
    async def normalize_and_upsert(
        self,
        feed_id: int,
        parsed_items: Iterable[ParsedItem],
        now: Optional[int] = None,
    ) -> UpsertResult:
        """Insert unseen items for ``feed_id`` and count the rest as skipped.

        A uniqueness conflict raised by storage counts as a skip; any other
        storage failure propagates and fails the feed.
        """
        now = int(time()) if now is None else int(now)
        result = UpsertResult()

        keyed: List[tuple] = []
        for item in parsed_items:
            key = identity_key(item)
            if key is None:
                logger.debug(f"Feed {feed_id}: skipping item without guid, link or title")
                result.skipped += 1
                continue
            keyed.append((key, item))

        candidate_keys = list(dict.fromkeys(key for key, _ in keyed))
        existing = await self.db.execute(
            'check_existing_external_ids', feed_id=feed_id, external_ids=candidate_keys
        )
        seen = set(existing)
        logger.debug(f"Feed {feed_id}: {len(seen)} of {len(candidate_keys)} items already stored")

        for key, item in keyed:
            if key in seen:
                result.skipped += 1
                continue
            seen.add(key)
            try:
                inserted = await self.db.execute(
                    'upsert_item',
                    feed_id=feed_id,
                    external_id=key,
                    fields=self.to_record(item, now),
                    now=now,
                )
            except StorageError as e:
                if e.kind is not StorageErrorKind.CONFLICT:
                    raise
                logger.debug(f"Feed {feed_id}: insert conflict for {key!r}, counted as skipped")
                inserted = False
            if inserted:
                result.added += 1
            else:
                result.skipped += 1

        logger.info(f"Feed {feed_id}: added {result.added} new items, skipped {result.skipped}")
        return result
