from config import Config, get_logger
from utils import RetryHelper, format_duration, html_to_text, site_favicon, truncate_string, validate_url


def test_retry_delays_back_off_exponentially_with_cap():
    helper = RetryHelper(max_retries=5, base_delay=1.0, max_delay=5.0)
    assert [helper.calculate_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_validate_url():
    assert validate_url("https://example.com/feed")
    assert validate_url(" http://127.0.0.1:8080/x ")
    assert not validate_url("ftp://example.com/feed")
    assert not validate_url("not a url")
    assert not validate_url("")


def test_site_favicon():
    assert site_favicon("https://example.com/blog/post?id=1") == "https://example.com/favicon.ico"
    assert site_favicon("") is None
    assert site_favicon("mailto:someone@example.com") is None


def test_text_helpers():
    assert truncate_string("short", 10) == "short"
    assert truncate_string("abcdefghij", 6) == "abc..."
    assert html_to_text("<p>Hello<br/>  <em>world</em></p><style>p {}</style>") == "Hello world"
    assert html_to_text(None) == ""
    assert format_duration(3725) == "1h 2m 5s"


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("HTTP_TIMEOUT", "soon")
    monkeypatch.setenv("SYNC_BATCH_SIZE", "0")
    monkeypatch.setenv("REFRESH_INTERVAL_MINUTES", "45")
    monkeypatch.setenv("YOUTUBE_HTML_FALLBACK", "false")

    settings = Config()

    assert settings.HTTP_TIMEOUT == 15.0
    assert settings.SYNC_BATCH_SIZE == 3
    assert settings.REFRESH_INTERVAL_MINUTES == 45
    assert settings.YOUTUBE_HTML_FALLBACK is False
    assert settings.get_config_summary()["refresh_interval_minutes"] == 45


def test_secrets_file_overrides_environment(monkeypatch, tmp_path):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  MAX_ITEMS_PER_PARSE: 20\n")
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    monkeypatch.setenv("MAX_ITEMS_PER_PARSE", "50")

    settings = Config()

    assert settings.MAX_ITEMS_PER_PARSE == 20


def test_module_loggers_share_a_namespace():
    assert get_logger("sync").name == "FeedSync.sync"
