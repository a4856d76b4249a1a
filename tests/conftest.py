import os

os.environ.setdefault("DISABLE_TELEMETRY", "true")

from collections import Counter
from xml.sax.saxutils import escape

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import config
from models import DatabaseQueue


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    """A started DatabaseQueue on a throwaway SQLite file."""
    db_path = tmp_path / "test.db"
    monkeypatch.setattr(config, 'DATABASE_PATH', str(db_path))
    queue = DatabaseQueue(str(db_path))
    await queue.start()
    yield queue
    await queue.stop()


class FeedServer:
    """Local HTTP server serving canned responses keyed by path."""

    def __init__(self):
        self.responses = {}
        self.hits = Counter()
        self.requests = []
        self._server = None

    def set(self, path, body, status=200, content_type="application/rss+xml"):
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.responses[path] = (status, body, content_type)

    def url(self, path):
        return str(self._server.make_url(path))

    async def handler(self, request):
        self.hits[request.path] += 1
        self.requests.append(request)
        canned = self.responses.get(request.path)
        if canned is None:
            return web.Response(status=404, text="not found")
        if callable(canned):
            return await canned(request)
        status, body, content_type = canned
        return web.Response(status=status, body=body, content_type=content_type)


@pytest_asyncio.fixture
async def feed_server():
    server = FeedServer()
    app = web.Application()
    app.router.add_route("GET", "/{tail:.*}", server.handler)
    server._server = TestServer(app)
    await server._server.start_server()
    yield server
    await server._server.close()


def _rss_item(entry):
    parts = [f"<title>{escape(entry.get('title', ''))}</title>"]
    if entry.get("guid"):
        parts.append(f'<guid isPermaLink="false">{escape(entry["guid"])}</guid>')
    if entry.get("link"):
        parts.append(f"<link>{escape(entry['link'])}</link>")
    if entry.get("description"):
        parts.append(f"<description>{escape(entry['description'])}</description>")
    if entry.get("pubDate"):
        parts.append(f"<pubDate>{entry['pubDate']}</pubDate>")
    parts.extend(entry.get("extra", []))
    return "<item>" + "".join(parts) + "</item>"


@pytest.fixture
def make_rss():
    """Build an RSS 2.0 document from dicts, or from bare guid strings."""

    def _make(entries, title="Example Feed", link="https://example.com/", extra_channel=""):
        items = []
        for entry in entries:
            if isinstance(entry, str):
                entry = {"guid": entry, "title": f"Item {entry}", "link": f"https://example.com/{entry}"}
            items.append(_rss_item(entry))
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/" '
            'xmlns:media="http://search.yahoo.com/mrss/">'
            f"<channel><title>{escape(title)}</title><link>{escape(link)}</link>"
            f"<description>Test feed</description>{extra_channel}"
            + "".join(items)
            + "</channel></rss>"
        )

    return _make
