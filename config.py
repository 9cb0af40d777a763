#!/usr/bin/env python3
"""
Configuration management for the changelog aggregator.

This module centralizes configuration loading, validation and logging setup.
It handles environment variables, an optional .env file, an optional YAML
secrets file and the structured feeds.yaml file (relays and schedule).
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOGGER_ROOT = "ChangelogAggregator"


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    try:
        sys.stdout.reconfigure(line_buffering=True)
    except AttributeError:
        # Replaced streams (e.g. under test capture) may not support it
        pass

    # aiohttp access/client chatter is rarely useful at INFO
    getLogger("aiohttp").setLevel(WARNING)

    return getLogger(LOGGER_ROOT)


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "ingest", "scheduler")

    Returns:
        A logger named "ChangelogAggregator.{name}"
    """
    return getLogger(f"{LOGGER_ROOT}.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml for relays and schedule

    Example feeds.yaml:
    ```yaml
    relays:
      - "https://corsproxy.io/?"
      - url: "https://api.allorigins.win/get?url="
        format: json
    schedule:
      timezone: UTC
      times: ["08:00"]
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feeds_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.0) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "changelog.db")
        self.USER_AGENT = environ.get(
            "USER_AGENT", "Mozilla/5.0 (compatible; ChangelogAggregator/1.0)"
        )

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)

        # Refresh configuration
        self.REFRESH_INTERVAL_MINUTES = self._validate_positive_int("REFRESH_INTERVAL_MINUTES", 15, 1)
        self.BATCH_CONCURRENCY = self._validate_positive_int("BATCH_CONCURRENCY", 5, 1)
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")

        # Identity collaborator: the "current user" for CLI invocations
        self.CURRENT_USER_ID = environ.get("CURRENT_USER_ID") or None

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Accepts either a top-level mapping or one nested under `environment`.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            return

        env_vars = secrets_config.get('environment')
        if not isinstance(env_vars, dict):
            env_vars = secrets_config

        loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Returns:
            Parsed YAML or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.debug(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_feeds_config(self) -> None:
        """Populate relays and schedule from feeds.yaml (and FEED_RELAYS)."""
        config_data = self._safe_read_yaml(self.FEEDS_CONFIG_PATH, 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            config_data = {}

        self.RELAYS = self._parse_relays(config_data.get('relays'))
        env_relays = environ.get("FEED_RELAYS")
        if env_relays is not None:
            self.RELAYS = self._parse_relays([r for r in env_relays.split(",") if r.strip()])
        if self.RELAYS:
            logger.info(f"Configured {len(self.RELAYS)} relay(s) for feed fetching")

        self.SCHEDULE = config_data.get('schedule') or ["08:00"]

    def _parse_relays(self, raw: Any) -> List[Dict[str, str]]:
        """Normalize relay entries into [{'url': prefix, 'format': 'text'|'json'}]."""
        if raw in (None, False):
            return []
        if not isinstance(raw, list):
            logger.warning("Relay configuration must be a list; ignoring relays")
            return []
        relays: List[Dict[str, str]] = []
        for entry in raw:
            if isinstance(entry, str) and entry.strip():
                relays.append({'url': entry.strip(), 'format': 'text'})
            elif isinstance(entry, dict) and isinstance(entry.get('url'), str) and entry['url'].strip():
                fmt = str(entry.get('format', 'text')).lower()
                if fmt not in ('text', 'json'):
                    logger.warning(f"Unknown relay format '{fmt}' for {entry['url']}; using text")
                    fmt = 'text'
                relays.append({'url': entry['url'].strip(), 'format': fmt})
            else:
                logger.warning(f"Skipping invalid relay entry: {entry}")
        return relays

    def reload_feeds_config(self):
        """Reload relays and schedule from the configuration file."""
        logger.info("Reloading feeds configuration")
        self._load_feeds_config()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "refresh_interval_minutes": self.REFRESH_INTERVAL_MINUTES,
            "batch_concurrency": self.BATCH_CONCURRENCY,
            "relay_count": len(self.RELAYS),
            "schedule": self.SCHEDULE,
            "has_current_user": bool(self.CURRENT_USER_ID),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
