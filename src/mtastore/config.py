"""Configuration for the MTA station store."""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

from .gtfs_loader import GTFS_URLS
from .mta_client import FEED_URLS

# 60 seconds balances freshness against MTA API rate limits
DEFAULT_UPDATE_INTERVAL = 60.0
DEFAULT_STATIC_UPDATE_INTERVAL = 6 * 60 * 60.0
DEFAULT_FETCH_TIMEOUT = 30.0


@dataclass
class Config:
    """
    Settings consumed by the feed manager and its collaborators.

    Intervals and timeouts are in seconds. A static_update_interval of 0 loads
    static GTFS data once and never refreshes it.
    """
    api_key: str = ""
    update_interval: float = DEFAULT_UPDATE_INTERVAL
    static_update_interval: float = DEFAULT_STATIC_UPDATE_INTERVAL
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    feed_urls: Tuple[str, ...] = field(default_factory=lambda: FEED_URLS)
    gtfs_urls: Tuple[str, ...] = field(default_factory=lambda: GTFS_URLS)
    gtfs_path: Optional[str] = None  # Local GTFS directory or zip; downloads when unset

    def validate(self) -> None:
        if self.update_interval <= 0:
            raise ValueError("update_interval must be positive")
        if self.static_update_interval < 0:
            raise ValueError("static_update_interval must not be negative")
        if self.fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be positive")

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Config":
        """Build a config from environment variables, reading a .env file first."""
        load_dotenv(dotenv_path)
        config = cls(
            api_key=os.getenv("MTA_API_KEY", ""),
            update_interval=float(os.getenv("MTA_UPDATE_INTERVAL", DEFAULT_UPDATE_INTERVAL)),
            static_update_interval=float(os.getenv("MTA_STATIC_UPDATE_INTERVAL", DEFAULT_STATIC_UPDATE_INTERVAL)),
            fetch_timeout=float(os.getenv("MTA_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT)),
            gtfs_path=os.getenv("MTA_GTFS_PATH") or None,
        )
        config.validate()
        return config
