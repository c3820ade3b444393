#!/usr/bin/env python3
"""
Configuration management for the Feed Archiver.

Settings come from the process environment, an optional .env file beside the
code and an optional YAML secrets file named by SECRETS_FILE. Every module
reads them through the shared ``config`` instance and logs through
``get_logger``.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}


def _setup_global_logger():
    """Configure the root logging setup once for the whole pipeline.

    Environment Variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default INFO)
        LOG_TIMESTAMPS: set to false to drop timestamps (default true)
        AZURE_LOG_LEVEL: level for the Azure exporter loggers (default WARNING)
    """
    environ["PYTHONUNBUFFERED"] = "1"
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)

    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(level=level, format=log_format, handlers=[StreamHandler(sys.stdout)], force=True)
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # The trace exporter is chatty at INFO
    azure_level = LOG_LEVELS.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor.opentelemetry.exporter"):
        getLogger(name).setLevel(azure_level)

    return getLogger("FeedArchiver")


def get_logger(name: str):
    """Module logger named FeedArchiver.<name>, e.g. get_logger("fetcher")."""
    return getLogger(f"FeedArchiver.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration for the Feed Archiver.

    Precedence, lowest first: process environment, .env file, YAML secrets
    file (SECRETS_FILE). The secrets file may be a flat mapping or hold the
    mapping under an ``environment:`` key:

    ```yaml
    AZURE_STORAGE_ACCOUNT: "archiveaccount"
    AZURE_STORAGE_KEY: "base64-account-key"
    ```

    An optional feeds.yaml (FEEDS_CONFIG_PATH) lists subscription URLs for
    the ``import`` command.
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Integer setting; bad or too-small values warn and use the default."""
        raw = environ.get(env_var)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"Invalid {env_var} value {raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        raw = environ.get(env_var)
        if raw is None:
            return default
        try:
            value = float(raw)
        except ValueError:
            logger.warning(f"Invalid {env_var} value {raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _validate_and_set_config(self):
        base_dir = path.dirname(path.abspath(__file__))
        # Base folder for queue databases and cached feed files
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)

        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.QUEUE_DATABASE_DIR = environ.get("QUEUE_DATABASE_DIR", path.join(self.DATA_PATH, "queues"))

        # Fetching
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedArchiver/1.0; +https://example.com/feed-archiver)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.MAX_FEED_LINK_HOPS = self._validate_positive_int("MAX_FEED_LINK_HOPS", 3, 1)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 5, 1)

        # Raw feed file storage
        self.BLOB_BACKEND = environ.get("BLOB_BACKEND", "local").strip().lower()
        if self.BLOB_BACKEND not in ("local", "azure"):
            logger.warning(f"Unknown BLOB_BACKEND '{self.BLOB_BACKEND}', using local storage")
            self.BLOB_BACKEND = "local"
        self.BLOB_STORAGE_PATH = environ.get("BLOB_STORAGE_PATH", path.join(self.DATA_PATH, "cache"))
        self.AZURE_STORAGE_ACCOUNT = environ.get("AZURE_STORAGE_ACCOUNT")
        self.AZURE_STORAGE_KEY = environ.get("AZURE_STORAGE_KEY")
        self.AZURE_STORAGE_CONTAINER = environ.get("AZURE_STORAGE_CONTAINER", "feed-cache")

        # Web archive backfill
        self.ARCHIVE_INDEX_URL = environ.get("ARCHIVE_INDEX_URL", "https://web.archive.org/cdx/search/cdx")
        self.ARCHIVE_SNAPSHOT_BASE_URL = environ.get("ARCHIVE_SNAPSHOT_BASE_URL", "https://web.archive.org/web").rstrip("/")
        self.ARCHIVE_LOOKBACK_YEARS = self._validate_positive_int("ARCHIVE_LOOKBACK_YEARS", 15, 1)

        # Task transport
        self.TASK_LEASE_SECONDS = self._validate_positive_int("TASK_LEASE_SECONDS", 300, 10)
        self.TASK_POLL_INTERVAL = self._validate_positive_float("TASK_POLL_INTERVAL", 2.0, 0.1)
        self.TASK_BATCH_SIZE = self._validate_positive_int("TASK_BATCH_SIZE", 10, 1)

        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Copy the SECRETS_FILE mapping into the environment."""
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            return

        secrets = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets, dict):
            if secrets is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping")
            return
        if isinstance(secrets.get('environment'), dict):
            secrets = secrets['environment']

        loaded = 0
        for key, value in secrets.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Skipping invalid secrets entry: {key!r}")
                continue
            environ[key] = str(value)
            loaded += 1
        logger.info(f"Loaded {loaded} setting(s) from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Read a size-limited YAML file; None when missing, unreadable or invalid."""
        if not path.isfile(file_path):
            logger.debug(f"No {kind} file at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"No read permission for {kind} file at {file_path}")
            return None
        try:
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit {max_size})")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing {kind} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Error reading {kind} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"Empty {kind} file {file_path}")
            return None
        return data

    def _load_feed_sources(self) -> None:
        """FEED_SOURCES maps a slug to a subscription URL (feeds: {slug: {url: ...}})."""
        self.FEED_SOURCES: Dict[str, str] = {}
        data = self._safe_read_yaml(self.FEEDS_CONFIG_PATH, 5 * 1024 * 1024, 'feeds')
        feeds_section = data.get('feeds') if isinstance(data, dict) else None
        if not isinstance(feeds_section, dict):
            if data is not None:
                logger.warning(f"No valid feeds found in {self.FEEDS_CONFIG_PATH}")
            return

        for slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, dict) and feed_cfg.get('url'):
                self.FEED_SOURCES[slug] = feed_cfg['url']
            else:
                logger.warning(f"Skipping invalid feed configuration for '{slug}': {feed_cfg}")
        logger.info(f"Loaded {len(self.FEED_SOURCES)} feed URL(s) from {self.FEEDS_CONFIG_PATH}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Non-secret settings for the status command."""
        return {
            "database_path": self.DATABASE_PATH,
            "queue_database_dir": self.QUEUE_DATABASE_DIR,
            "blob_backend": self.BLOB_BACKEND,
            "blob_storage_path": self.BLOB_STORAGE_PATH if self.BLOB_BACKEND == "local" else None,
            "http_timeout": self.HTTP_TIMEOUT,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "archive_index_url": self.ARCHIVE_INDEX_URL,
            "archive_lookback_years": self.ARCHIVE_LOOKBACK_YEARS,
            "task_lease_seconds": self.TASK_LEASE_SECONDS,
            "feed_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_azure_storage": bool(self.AZURE_STORAGE_ACCOUNT and self.AZURE_STORAGE_KEY),
        }


# Global configuration instance
config = Config()
