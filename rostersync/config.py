"""Configuration management for RosterSync."""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "SyncSettings",
    "setup_logging",
    "DEFAULT_API_URL",
    "DEFAULT_ENTITY_TYPES",
    "MAX_QUEUE_SIZE",
]

logger = logging.getLogger(__name__)

APP_NAME = "RosterSync"
APP_AUTHOR = "TeamTracker"

# Remote authority (PostgREST endpoint of the hosted database)
DEFAULT_API_URL = "http://127.0.0.1:54321/rest/v1"

# Environment overrides
ENV_API_URL = "ROSTERSYNC_API_URL"
ENV_API_KEY = "ROSTERSYNC_API_KEY"

# Sync settings
DEFAULT_SYNC_INTERVAL = 60  # seconds
MIN_SYNC_INTERVAL = 15  # seconds
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_REQUEST_TIMEOUT = 30  # seconds
DEFAULT_LINK_POLL_INTERVAL = 5  # seconds
MAX_QUEUE_SIZE = 10000  # soft limit, warning only

# Tables mirrored in the local cache
DEFAULT_ENTITY_TYPES = [
    "seasons",
    "teams",
    "players",
    "team_memberships",
    "events",
    "rsvps",
    "attendance_records",
    "drills",
    "practice_plans",
    "practice_blocks",
    "coach_notes",
]


@dataclass
class SyncSettings:
    """Sync configuration."""

    interval_seconds: int = DEFAULT_SYNC_INTERVAL
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    link_poll_interval: int = DEFAULT_LINK_POLL_INTERVAL
    queue_soft_limit: int = MAX_QUEUE_SIZE
    prefer_remote_reads: bool = True  # Online reads go to the remote first
    entity_types: list[str] = field(default_factory=lambda: list(DEFAULT_ENTITY_TYPES))


@dataclass
class Config:
    """Main configuration object."""

    api_url: str = DEFAULT_API_URL
    api_key: Optional[str] = None
    access_token: Optional[str] = None
    user_id: Optional[str] = None
    sync: SyncSettings = field(default_factory=SyncSettings)
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (for the SQLite cache and queue)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load config from file, or return defaults.

        Environment variables override the API URL and key from the file.
        """
        config_file = path or cls.get_config_file()
        config = cls()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                config = cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")

        env_url = os.getenv(ENV_API_URL)
        if env_url:
            config.api_url = env_url
        env_key = os.getenv(ENV_API_KEY)
        if env_key:
            config.api_key = env_key
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        sync_data = data.pop("sync", {})
        sync_data = {
            k: v for k, v in sync_data.items() if k in SyncSettings.__dataclass_fields__
        }
        sync = SyncSettings(**sync_data) if sync_data else SyncSettings()
        # Clamp intervals that would hammer the backend
        sync.interval_seconds = max(MIN_SYNC_INTERVAL, int(sync.interval_seconds))
        sync.max_attempts = max(1, int(sync.max_attempts))

        return cls(
            sync=sync,
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def save(self, path: Optional[Path] = None) -> None:
        """Save config to file."""
        config_file = path or self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        # Never write the session token to disk
        data.pop("access_token", None)
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "rostersync.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
