import sqlite3

import pytest

from errors import StorageError, StorageErrorKind
from models import DatabaseQueue


@pytest.mark.asyncio
async def test_register_feed_rejects_live_duplicates(db):
    feed = await db.execute('register_feed', owner_id='alice', url='https://example.com/feed', source_kind='rss')

    with pytest.raises(StorageError) as exc_info:
        await db.execute('register_feed', owner_id='alice', url='https://example.com/feed', source_kind='rss')
    assert exc_info.value.kind is StorageErrorKind.CONFLICT

    # another owner may follow the same URL
    await db.execute('register_feed', owner_id='bob', url='https://example.com/feed', source_kind='rss')

    # a soft-deleted registration frees the URL
    assert await db.execute('soft_delete_feed', feed_id=feed.id) is True
    again = await db.execute('register_feed', owner_id='alice', url='https://example.com/feed', source_kind='rss')
    assert again.id != feed.id


@pytest.mark.asyncio
async def test_touch_only_moves_last_updated_when_items_landed(db):
    feed = await db.execute('register_feed', owner_id='alice', url='https://example.com/feed', source_kind='atom')

    await db.execute('touch_feed_fetch_timestamp', feed_id=feed.id, success=False, now=100)
    stored = await db.execute('get_feed', feed_id=feed.id)
    assert (stored.last_fetched_at, stored.last_updated_at) == (100, None)

    await db.execute('touch_feed_fetch_timestamp', feed_id=feed.id, success=True, items_added=0, now=200)
    stored = await db.execute('get_feed', feed_id=feed.id)
    assert (stored.last_fetched_at, stored.last_updated_at) == (200, None)

    await db.execute('touch_feed_fetch_timestamp', feed_id=feed.id, success=True, items_added=3, now=300)
    stored = await db.execute('get_feed', feed_id=feed.id)
    assert (stored.last_fetched_at, stored.last_updated_at) == (300, 300)


@pytest.mark.asyncio
async def test_update_feed_metadata_ignores_empty_values(db):
    feed = await db.execute('register_feed', owner_id='alice', url='https://example.com/feed',
                            source_kind='rss', title='Initial')

    await db.execute('update_feed_metadata', feed_id=feed.id, title='', description='About', icon_url=None)

    stored = await db.execute('get_feed', feed_id=feed.id)
    assert stored.title == 'Initial'
    assert stored.description == 'About'
    assert stored.icon_url is None


@pytest.mark.asyncio
async def test_unknown_and_private_operations_are_refused(db):
    for name in ('drop_everything', '_worker', 'stop'):
        with pytest.raises(StorageError) as exc_info:
            await db.execute(name)
        assert exc_info.value.kind is StorageErrorKind.UNAVAILABLE


@pytest.mark.asyncio
async def test_execute_after_stop_is_unavailable(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "stopped.db"))
    await queue.start()
    await queue.stop()

    with pytest.raises(StorageError) as exc_info:
        await queue.execute('count_items')
    assert exc_info.value.kind is StorageErrorKind.UNAVAILABLE


@pytest.mark.asyncio
async def test_items_require_an_existing_feed(db):
    with pytest.raises(StorageError) as exc_info:
        await db.execute('upsert_item', feed_id=999, external_id='x', fields={'title': 'x'})
    assert exc_info.value.kind is StorageErrorKind.CONFLICT


@pytest.mark.asyncio
async def test_older_databases_gain_the_channel_id_column(tmp_path):
    db_path = str(tmp_path / "old.db")
    conn = sqlite3.connect(db_path)
    conn.execute(
        "CREATE TABLE feeds (id INTEGER PRIMARY KEY AUTOINCREMENT, owner_id TEXT NOT NULL, url TEXT NOT NULL, "
        "source_kind TEXT NOT NULL, title TEXT NOT NULL DEFAULT '', description TEXT NOT NULL DEFAULT '', "
        "icon_url TEXT, category TEXT, is_active INTEGER NOT NULL DEFAULT 1, last_fetched_at INTEGER, "
        "last_updated_at INTEGER, deleted_at INTEGER, created_at INTEGER NOT NULL)"
    )
    conn.execute(
        "INSERT INTO feeds (owner_id, url, source_kind, created_at) "
        "VALUES ('alice', 'https://www.youtube.com/@someone', 'youtube', 1)"
    )
    conn.commit()
    conn.close()

    async with DatabaseQueue(db_path) as queue:
        [feed] = await queue.execute('list_feeds')
        assert feed.channel_id is None
        assert await queue.execute('set_feed_channel_id', feed_id=feed.id, channel_id='UCabcdefghijklmnopqrstuv')
        assert (await queue.execute('get_feed', feed_id=feed.id)).channel_id == 'UCabcdefghijklmnopqrstuv'
