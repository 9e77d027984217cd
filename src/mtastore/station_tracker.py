"""Main MTA Station Tracker class."""

import logging
from datetime import datetime
from typing import List, Optional

from .config import Config
from .feed_manager import FeedManager
from .gtfs_loader import GTFSLoader
from .models import Alert, Station
from .mta_client import MTAClient
from .store import StationStore

logger = logging.getLogger(__name__)


class MTAStationTracker:
    """
    Serves station, arrival and alert queries from a locally refreshed store.

    This class provides methods to:
    - Find the stations nearest a coordinate
    - List the stations on a route, or fetch stations by ID
    - List known routes and current service alerts

    A background FeedManager keeps the data fresh until close() is called.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[StationStore] = None,
        client: Optional[MTAClient] = None,
        loader: Optional[GTFSLoader] = None,
        start: bool = True,
    ):
        """
        Initialize the tracker.

        Args:
            config: Settings; defaults to Config().
            store: Store to serve from; a new empty store by default.
            client: Realtime feed client; built from config by default.
            loader: Static GTFS loader; built from config by default.
            start: If True, start background updates immediately. If False, call start().
        """
        self.config = config or Config()
        self.config.validate()
        self.store = store or StationStore()
        self.mta_client = client or MTAClient(self.config.api_key, timeout=self.config.fetch_timeout)
        self.gtfs_loader = loader or GTFSLoader(timeout=self.config.fetch_timeout, urls=self.config.gtfs_urls)
        self.feed_manager = FeedManager(self.store, self.mta_client, self.gtfs_loader, self.config)

        if start:
            self.start()

    def start(self) -> None:
        """Start background updates."""
        self.feed_manager.start()

    def close(self) -> None:
        """Stop background updates and release network resources."""
        self.feed_manager.stop()
        self.mta_client.close()
        self.gtfs_loader.close()
        logger.info("Closed station tracker")

    def wait_for_realtime(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the first realtime arrivals have been merged.

        Returns:
            True once arrivals are available, False if the timeout passed first.
        """
        return self.feed_manager.wait_for_realtime(timeout)

    def __enter__(self) -> "MTAStationTracker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_stations_by_location(self, lat: float, lon: float, limit: int = 5) -> List[Station]:
        """
        Get the stations closest to a coordinate.

        Args:
            lat: Latitude in degrees.
            lon: Longitude in degrees.
            limit: Maximum number of stations to return.

        Returns:
            Stations ordered by increasing distance.
        """
        return self.store.get_stations_by_location(lat, lon, limit)

    def get_stations_by_route(self, route: str) -> List[Station]:
        """
        Get all stations on a route (e.g., "N" or "6"), sorted by name.

        Raises:
            NotFoundError: If the route is unknown.
        """
        return self.store.get_stations_by_route(route)

    def get_stations_by_ids(self, ids: List[str]) -> List[Station]:
        """
        Get stations by parent stop ID (e.g., ["127", "631"]). Unknown IDs are skipped.

        Raises:
            NotFoundError: If none of the IDs are known.
        """
        return self.store.get_stations_by_ids(ids)

    def get_routes(self) -> List[str]:
        return self.store.get_routes()

    def get_alerts(self) -> List[Alert]:
        return self.store.get_alerts()

    def get_last_update(self) -> Optional[datetime]:
        return self.store.get_last_update()

    def get_last_static_update(self) -> Optional[datetime]:
        return self.store.get_last_static_update()
