import pytest

from youtube import (
    channel_id_from_html,
    extract_channel_id,
    extract_video_id,
    feed_url_for_channel,
    is_video_feed_url,
    is_youtube_url,
    resolve_feed_url,
    thumbnail_url,
)

CHANNEL = "UCabcdefghijklmnopqrstuv"
FEED_URL = f"https://www.youtube.com/feeds/videos.xml?channel_id={CHANNEL}"


@pytest.mark.parametrize("value", [
    CHANNEL,
    f"https://www.youtube.com/channel/{CHANNEL}",
    f"https://www.youtube.com/channel/{CHANNEL}/videos",
    FEED_URL,
])
def test_extract_channel_id(value):
    assert extract_channel_id(value) == CHANNEL


def test_handles_carry_no_channel_id():
    assert extract_channel_id("https://www.youtube.com/@somebody") is None
    assert resolve_feed_url("https://www.youtube.com/@somebody") == "https://www.youtube.com/@somebody"


@pytest.mark.parametrize("value", [
    "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
    "https://youtu.be/dQw4w9WgXcQ",
    "https://www.youtube.com/shorts/dQw4w9WgXcQ",
    "https://www.youtube.com/embed/dQw4w9WgXcQ",
    "yt:video:dQw4w9WgXcQ",
    "dQw4w9WgXcQ",
])
def test_extract_video_id(value):
    assert extract_video_id(value) == "dQw4w9WgXcQ"


def test_feed_and_thumbnail_urls():
    assert feed_url_for_channel(CHANNEL) == FEED_URL
    assert resolve_feed_url(f"https://www.youtube.com/channel/{CHANNEL}") == FEED_URL
    assert is_video_feed_url(FEED_URL)
    assert not is_video_feed_url("https://example.com/feeds/videos.xml")
    assert is_youtube_url("https://m.youtube.com/@x")
    assert thumbnail_url("dQw4w9WgXcQ") == "https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg"
    with pytest.raises(ValueError):
        feed_url_for_channel("not-a-channel")


def test_channel_id_discovered_from_page():
    canonical = f'<html><head><link rel="canonical" href="https://www.youtube.com/channel/{CHANNEL}"></head></html>'
    embedded = f'<html><script>var x = {{"externalId":"{CHANNEL}"}};</script></html>'

    assert channel_id_from_html(canonical) == CHANNEL
    assert channel_id_from_html(embedded) == CHANNEL
    assert channel_id_from_html("<html></html>") is None
