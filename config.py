#!/usr/bin/env python3
"""
Configuration for Feed Sync.

Every tunable of the ingestion pipeline (HTTP limits, parse caps, refresh
interval, batching and the sweep schedule) is read once from the environment
into the module-level ``config`` object. Numeric values that fail to parse or
fall below their minimum are replaced by the default with a warning.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Callable
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)

SECRETS_FILE_SIZE_LIMIT = 2 * 1024 * 1024


def _setup_global_logger():
    """Configure the root logging handler once for the whole process.

    LOG_LEVEL picks the level (DEBUG, INFO, WARNING, ERROR; default INFO) and
    LOG_TIMESTAMPS=false drops the timestamp column. Output goes to stdout.
    """
    levels = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}
    level = levels.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)

    fields = ['%(name)s', '%(levelname)s', '%(message)s']
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        fields.insert(0, '%(asctime)s')

    basicConfig(
        level=level,
        format=' - '.join(fields),
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # Test runners replace stdout with objects lacking reconfigure()
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(line_buffering=True)

    return getLogger("FeedSync")


def get_logger(name: str):
    """Return the ``FeedSync.<name>`` logger for a module."""
    return getLogger(f"FeedSync.{name}")


logger = _setup_global_logger()


class Config:
    """Pipeline settings.

    Sources, lowest precedence first:
    1. Process environment
    2. ``.env`` beside this module (does not override existing variables)
    3. YAML file named by SECRETS_FILE, either a flat mapping or one nested
       under an ``environment`` key

    Example:
    ```yaml
    environment:
      DATABASE_PATH: "/var/lib/feedsync/feeds.db"
      REFRESH_INTERVAL_MINUTES: 60
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _read_number(self, env_var: str, default, min_val, cast: Callable):
        raw = environ.get(env_var)
        if raw is None:
            return default
        try:
            value = cast(raw)
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value {raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._read_number(env_var, default, min_val, int)

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        return self._read_number(env_var, default, min_val, float)

    def _validate_bool(self, env_var: str, default: bool) -> bool:
        raw = environ.get(env_var)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)

        # Source fetching
        self.HTTP_TIMEOUT = self._validate_positive_float("HTTP_TIMEOUT", 15.0, 0.1)
        self.FETCH_MAX_ATTEMPTS = self._validate_positive_int("FETCH_MAX_ATTEMPTS", 3, 1)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.RETRY_DELAY_MAX = self._validate_positive_float("RETRY_DELAY_MAX", 30.0, 0.0)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.MAX_FEED_BYTES = self._validate_positive_int("MAX_FEED_BYTES", 5 * 1024 * 1024, 1024)

        # Parsing and normalization
        self.MAX_ITEMS_PER_PARSE = self._validate_positive_int("MAX_ITEMS_PER_PARSE", 50, 1)
        self.DESCRIPTION_MAX_LENGTH = self._validate_positive_int("DESCRIPTION_MAX_LENGTH", 500, 1)
        self.YOUTUBE_HTML_FALLBACK = self._validate_bool("YOUTUBE_HTML_FALLBACK", True)

        # Sync orchestration
        self.REFRESH_INTERVAL_MINUTES = self._validate_positive_int("REFRESH_INTERVAL_MINUTES", 30, 1)
        self.SYNC_BATCH_SIZE = self._validate_positive_int("SYNC_BATCH_SIZE", 3, 1)
        self.SYNC_BATCH_PAUSE_SECONDS = self._validate_positive_float("SYNC_BATCH_PAUSE_SECONDS", 1.0, 0.0)
        self.SYNC_RUN_BUDGET_SECONDS = self._validate_positive_float("SYNC_RUN_BUDGET_SECONDS", 300.0, 1.0)
        # 0 means no cap on administrative sweeps
        self.ADMIN_SYNC_LIMIT = self._validate_positive_int("ADMIN_SYNC_LIMIT", 0, 0)

        # Sweep loop
        self.SCHEDULER_SWEEP_MINUTES = self._validate_positive_int("SCHEDULER_SWEEP_MINUTES", 15, 1)
        self.SCHEDULER_RUN_IMMEDIATELY = self._validate_bool("SCHEDULER_RUN_IMMEDIATELY", False)

        self.SCHEMA_FILE_PATH = path.join(path.dirname(path.abspath(__file__)), "schema.sql")

    def _load_secrets_file(self):
        """Copy the SECRETS_FILE mapping into the process environment."""
        secrets_path = environ.get("SECRETS_FILE")
        if not secrets_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets = self._safe_read_yaml(secrets_path, SECRETS_FILE_SIZE_LIMIT, 'secrets')
        if secrets is None:
            return
        if not isinstance(secrets, dict):
            logger.warning(f"Secrets file {secrets_path} must hold a YAML mapping")
            return

        env_vars = secrets['environment'] if isinstance(secrets.get('environment'), dict) else secrets
        loaded = 0
        for key, value in env_vars.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Ignoring secrets entry {key!r}")
                continue
            environ[key] = str(value)
            loaded += 1
        logger.info(f"Loaded {loaded} settings from secrets file {secrets_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Parse a YAML file after existence, permission and size checks; None on any failure."""
        if not path.isfile(file_path):
            logger.warning(f"{kind.capitalize()} file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"No read permission for {kind} file at {file_path}")
            return None
        try:
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file is {size} bytes, over the {max_size} byte limit")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in {kind} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Cannot read {kind} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"{kind.capitalize()} file {file_path} is empty")
            return None
        return data

    def reload(self):
        """Re-read environment-derived settings."""
        logger.info("Reloading configuration")
        self._load_environment()
        self._validate_and_set_config()

    def get_config_summary(self) -> Dict[str, Any]:
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "fetch_max_attempts": self.FETCH_MAX_ATTEMPTS,
            "max_feed_bytes": self.MAX_FEED_BYTES,
            "max_items_per_parse": self.MAX_ITEMS_PER_PARSE,
            "refresh_interval_minutes": self.REFRESH_INTERVAL_MINUTES,
            "sync_batch_size": self.SYNC_BATCH_SIZE,
            "sync_batch_pause_seconds": self.SYNC_BATCH_PAUSE_SECONDS,
            "sync_run_budget_seconds": self.SYNC_RUN_BUDGET_SECONDS,
            "admin_sync_limit": self.ADMIN_SYNC_LIMIT,
            "scheduler_sweep_minutes": self.SCHEDULER_SWEEP_MINUTES,
            "youtube_html_fallback": self.YOUTUBE_HTML_FALLBACK,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


config = Config()
