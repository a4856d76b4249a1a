import asyncio
import json
import time
from dataclasses import replace
from urllib.parse import urlparse

import pytest

from errors import FeedNotFoundError, StorageError, StorageErrorKind
from fetcher import SourceFetcher
from schemas import SyncStage, SyncStatus
from sync import FeedSynchronizer


def make_synchronizer(db, **overrides):
    params = dict(
        fetcher=SourceFetcher(timeout=2.0, max_attempts=1, base_delay=0, max_delay=0),
        batch_pause=0,
    )
    params.update(overrides)
    return FeedSynchronizer(db, **params)


async def register(db, url, owner="alice", kind="rss"):
    return await db.execute('register_feed', owner_id=owner, url=url, source_kind=kind)


@pytest.mark.asyncio
async def test_resync_adds_only_new_items(db, feed_server, make_rss):
    feed_server.set("/feed.xml", make_rss(["g1", "g2"]))
    feed = await register(db, feed_server.url("/feed.xml"))
    synchronizer = make_synchronizer(db)

    first = await synchronizer.sync_feed_now("alice", feed.id)
    assert first.result_for(feed.id).status is SyncStatus.SUCCESS
    assert first.items_added == 2
    after_first = await db.execute('get_feed', feed_id=feed.id)
    assert after_first.last_fetched_at is not None

    feed_server.set("/feed.xml", make_rss(["g1", "g3", "g4"]))
    second = await synchronizer.sync_feed_now("alice", feed.id)

    result = second.result_for(feed.id)
    assert result.status is SyncStatus.SUCCESS
    assert (result.items_added, result.items_skipped) == (2, 1)
    items = await db.execute('list_items', feed_id=feed.id, limit=10)
    assert sorted(item.external_id for item in items) == ["g1", "g2", "g3", "g4"]
    after_second = await db.execute('get_feed', feed_id=feed.id)
    assert after_second.last_fetched_at >= after_first.last_fetched_at
    assert after_second.last_updated_at is not None


@pytest.mark.asyncio
async def test_one_failing_feed_does_not_affect_others(db, feed_server, make_rss):
    feed_server.set("/ok1.xml", make_rss(["a1", "a2"]))
    feed_server.set("/ok2.xml", make_rss(["b1"]))
    feed_server.set("/bad.xml", b"<<<not xml", content_type="application/xml")
    ok1 = await register(db, feed_server.url("/ok1.xml"))
    missing = await register(db, feed_server.url("/missing.xml"))
    bad = await register(db, feed_server.url("/bad.xml"))
    ok2 = await register(db, feed_server.url("/ok2.xml"))
    synchronizer = make_synchronizer(db, batch_size=2)

    report = await synchronizer.sync_due_feeds("alice")

    assert (report.succeeded, report.failed, report.skipped) == (2, 2, 0)
    assert report.result_for(ok1.id).items_added == 2
    assert report.result_for(ok2.id).items_added == 1
    missing_result = report.result_for(missing.id)
    assert missing_result.error["type"] == "FetchError"
    assert missing_result.error["status"] == 404
    assert report.result_for(bad.id).error["kind"] == "malformed"
    assert synchronizer.feed_states[bad.id] is SyncStage.FAILED
    assert synchronizer.feed_states[ok2.id] is SyncStage.SUCCEEDED
    stored = await db.execute('list_items', feed_id=ok1.id) + await db.execute('list_items', feed_id=ok2.id)
    assert sorted(item.external_id for item in stored) == ["a1", "a2", "b1"]
    assert await db.execute('count_items', feed_id=bad.id) == 0

    failed_feed = await db.execute('get_feed', feed_id=missing.id)
    assert failed_feed.last_fetched_at is not None
    assert failed_feed.last_updated_at is None
    json.dumps(report.to_dict())


@pytest.mark.asyncio
async def test_fresh_feed_is_skipped_by_staleness_sync(db, feed_server, make_rss):
    feed_server.set("/fresh.xml", make_rss(["g1"]))
    feed = await register(db, feed_server.url("/fresh.xml"))
    stamp = int(time.time()) - 60
    await db.execute('touch_feed_fetch_timestamp', feed_id=feed.id, success=True, now=stamp)
    synchronizer = make_synchronizer(db)

    due_report = await synchronizer.sync_due_feeds("alice")
    assert due_report.results == []

    stale_view = await db.execute('get_feed', feed_id=feed.id)
    report = await synchronizer.sync_feeds([stale_view], force=False)

    assert report.result_for(feed.id).status is SyncStatus.SKIPPED
    assert feed_server.hits["/fresh.xml"] == 0
    assert (await db.execute('get_feed', feed_id=feed.id)).last_fetched_at == stamp


@pytest.mark.asyncio
async def test_concurrent_syncs_of_one_feed_fetch_once(db, feed_server, make_rss):
    feed_server.set("/feed.xml", make_rss(["g1", "g2"]))
    feed = await register(db, feed_server.url("/feed.xml"))
    synchronizer = make_synchronizer(db)

    first, second = await asyncio.gather(
        synchronizer.sync_feeds([feed], force=False),
        synchronizer.sync_feeds([feed], force=False),
    )

    statuses = sorted(r.result_for(feed.id).status.value for r in (first, second))
    assert statuses == ["skipped", "success"]
    assert feed_server.hits["/feed.xml"] == 1
    assert await db.execute('count_items', feed_id=feed.id) == 2
    assert synchronizer._locks == {}


@pytest.mark.asyncio
async def test_manual_sync_checks_ownership_and_deletion(db, feed_server, make_rss):
    feed_server.set("/feed.xml", make_rss(["g1"]))
    feed = await register(db, feed_server.url("/feed.xml"))
    synchronizer = make_synchronizer(db)

    with pytest.raises(FeedNotFoundError):
        await synchronizer.sync_feed_now("mallory", feed.id)
    with pytest.raises(FeedNotFoundError):
        await synchronizer.sync_feed_now("alice", 12345)

    await db.execute('soft_delete_feed', feed_id=feed.id)
    with pytest.raises(FeedNotFoundError):
        await synchronizer.sync_feed_now("alice", feed.id)
    assert feed_server.hits["/feed.xml"] == 0


@pytest.mark.asyncio
async def test_manual_sync_ignores_staleness(db, feed_server, make_rss):
    feed_server.set("/feed.xml", make_rss(["g1"]))
    feed = await register(db, feed_server.url("/feed.xml"))
    await db.execute('touch_feed_fetch_timestamp', feed_id=feed.id, success=True, now=int(time.time()))
    synchronizer = make_synchronizer(db)

    report = await synchronizer.sync_feed_now("alice", feed.id)

    assert report.succeeded == 1
    assert feed_server.hits["/feed.xml"] == 1


@pytest.mark.asyncio
async def test_successful_sync_refreshes_feed_metadata(db, feed_server, make_rss):
    feed_server.set("/feed.xml", make_rss(["g1"], title="Real Title", link="https://site.example.com/"))
    feed = await register(db, feed_server.url("/feed.xml"))

    await make_synchronizer(db).sync_feed_now("alice", feed.id)

    stored = await db.execute('get_feed', feed_id=feed.id)
    assert stored.title == "Real Title"
    assert stored.description == "Test feed"
    assert stored.icon_url == "https://site.example.com/favicon.ico"


@pytest.mark.asyncio
async def test_exhausted_run_budget_skips_remaining_batches(db, feed_server, make_rss):
    feeds = []
    for name in ("one", "two", "three"):
        feed_server.set(f"/{name}.xml", make_rss([f"{name}-1"]))
        feeds.append(await register(db, feed_server.url(f"/{name}.xml")))
    synchronizer = make_synchronizer(db, batch_size=1, batch_pause=0.05, run_budget=0.01)

    report = await synchronizer.sync_due_feeds("alice")

    assert len(report.results) == 3
    for feed in feeds[1:]:
        result = report.result_for(feed.id)
        assert result.status is SyncStatus.SKIPPED
        assert result.error["reason"] == "run budget exhausted"
        assert (await db.execute('get_feed', feed_id=feed.id)).last_fetched_at is None


@pytest.mark.asyncio
async def test_admin_sweep_honors_limit(db, feed_server, make_rss):
    for owner in ("alice", "bob", "carol"):
        feed_server.set(f"/{owner}.xml", make_rss([f"{owner}-1"]))
        await register(db, feed_server.url(f"/{owner}.xml"), owner=owner)

    report = await make_synchronizer(db).sync_all_active_feeds(limit=2)

    assert len(report.results) == 2
    assert report.succeeded == 2


@pytest.mark.asyncio
async def test_youtube_page_falls_back_to_scrape(db, feed_server):
    data = {"contents": [{"videoRenderer": {"videoId": "ccccccccccc", "title": {"simpleText": "Clip"}}}]}
    page = f"<html><body><script>var ytInitialData = {json.dumps(data)};</script></body></html>"
    feed_server.set("/@someone", page, content_type="text/html")
    feed = await register(db, feed_server.url("/@someone"), kind="youtube")

    report = await make_synchronizer(db).sync_feed_now("alice", feed.id)
    assert report.result_for(feed.id).items_added == 1
    [item] = await db.execute('list_items', feed_id=feed.id)
    assert item.external_id == "ccccccccccc"

    strict = make_synchronizer(db, youtube_html_fallback=False)
    result = (await strict.sync_feed_now("alice", feed.id)).result_for(feed.id)
    assert result.status is SyncStatus.FAILED
    assert result.error["kind"] == "not_a_feed"


@pytest.mark.asyncio
async def test_storage_outage_fails_only_the_affected_feed(db, feed_server, make_rss):
    feeds = []
    for name in ("one", "two", "three"):
        feed_server.set(f"/{name}.xml", make_rss([f"{name}-1", f"{name}-2"]))
        feeds.append(await register(db, feed_server.url(f"/{name}.xml")))
    broken = feeds[1]
    synchronizer = make_synchronizer(db, batch_size=3)
    upsert = synchronizer.normalizer.normalize_and_upsert

    async def flaky_upsert(feed_id, parsed_items, now=None):
        if feed_id == broken.id:
            raise StorageError(StorageErrorKind.UNAVAILABLE, "database is locked")
        return await upsert(feed_id, parsed_items, now=now)

    synchronizer.normalizer.normalize_and_upsert = flaky_upsert

    report = await synchronizer.sync_due_feeds("alice")

    assert (report.succeeded, report.failed) == (2, 1)
    failed = report.result_for(broken.id)
    assert failed.error["kind"] == "unavailable"
    assert failed.error["stage"] == SyncStage.UPSERTING.value
    assert await db.execute('count_items', feed_id=broken.id) == 0
    for feed in (feeds[0], feeds[2]):
        assert report.result_for(feed.id).status is SyncStatus.SUCCESS
        assert await db.execute('count_items', feed_id=feed.id) == 2


@pytest.mark.asyncio
async def test_cancelled_feed_task_is_reported_as_failed(db, feed_server, make_rss):
    feed_server.set("/ok.xml", make_rss(["g1"]))
    ok = await register(db, feed_server.url("/ok.xml"))
    doomed = await register(db, feed_server.url("/doomed.xml"))
    synchronizer = make_synchronizer(db)
    sync_feed = synchronizer.sync_feed

    async def cancelling_sync_feed(session, feed, force=False, interval_minutes=None):
        if feed.id == doomed.id:
            raise asyncio.CancelledError()
        return await sync_feed(session, feed, force=force, interval_minutes=interval_minutes)

    synchronizer.sync_feed = cancelling_sync_feed

    report = await synchronizer.sync_due_feeds("alice")

    assert report.result_for(ok.id).status is SyncStatus.SUCCESS
    cancelled = report.result_for(doomed.id)
    assert cancelled.status is SyncStatus.FAILED
    assert cancelled.error["type"] == "CancelledError"
    json.dumps(report.to_dict())


class LocalYouTubeFetcher(SourceFetcher):
    """Serves www.youtube.com video-feed requests from the local test server."""

    def __init__(self, server, **kwargs):
        super().__init__(**kwargs)
        self.server = server

    async def fetch(self, session, url, source_kind, timeout=None):
        parsed = urlparse(url)
        if parsed.hostname != "www.youtube.com":
            return await super().fetch(session, url, source_kind, timeout)
        local = await super().fetch(session, self.server.url(f"{parsed.path}?{parsed.query}"), source_kind, timeout)
        return replace(local, url=url, final_url=url)


CHANNEL = "UCabcdefghijklmnopqrstuv"
CHANNEL_FEED = f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015" xmlns="http://www.w3.org/2005/Atom">
  <title>Someone</title>
  <yt:channelId>{CHANNEL}</yt:channelId>
  <entry>
    <id>yt:video:dQw4w9WgXcQ</id>
    <yt:videoId>dQw4w9WgXcQ</yt:videoId>
    <title>A video</title>
    <link rel="alternate" href="https://www.youtube.com/watch?v=dQw4w9WgXcQ"/>
    <published>2024-02-01T10:00:00+00:00</published>
  </entry>
</feed>
"""


@pytest.mark.asyncio
async def test_resolved_youtube_channel_is_remembered(db, feed_server):
    page = f'<html><head><link rel="canonical" href="https://www.youtube.com/channel/{CHANNEL}"></head></html>'
    feed_server.set("/@someone", page, content_type="text/html")
    feed_server.set("/feeds/videos.xml", CHANNEL_FEED, content_type="application/atom+xml")
    feed = await register(db, feed_server.url("/@someone"), kind="youtube")
    fetcher = LocalYouTubeFetcher(feed_server, timeout=2.0, max_attempts=1, base_delay=0, max_delay=0)
    synchronizer = make_synchronizer(db, fetcher=fetcher)

    first = await synchronizer.sync_feed_now("alice", feed.id)
    assert first.result_for(feed.id).items_added == 1
    stored = await db.execute('get_feed', feed_id=feed.id)
    assert stored.channel_id == CHANNEL
    assert stored.url == feed_server.url("/@someone")

    second = await synchronizer.sync_feed_now("alice", feed.id)

    assert second.result_for(feed.id).status is SyncStatus.SUCCESS
    assert feed_server.hits["/@someone"] == 1
    assert feed_server.hits["/feeds/videos.xml"] == 2
