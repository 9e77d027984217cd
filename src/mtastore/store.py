"""Thread-safe in-memory station and alert store."""

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from .exceptions import NotFoundError
from .geo import distance
from .models import Alert, Station

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """
    Shared-read / exclusive-write lock.

    Any number of readers may hold the lock together. A waiting writer blocks
    new readers so that refreshes are not starved by a steady query load.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class StationStore:
    """
    Holds the current snapshot of stations, routes and alerts.

    Writes replace the snapshot wholesale under an exclusive lock; reads share the
    lock and always return copies, so callers can never mutate store state.
    """

    def __init__(self):
        self._lock = ReadWriteLock()
        self._stations: Dict[str, Station] = {}
        self._stations_by_route: Dict[str, List[Station]] = {}
        self._routes: List[str] = []
        self._alerts: List[Alert] = []
        self._last_update: Optional[datetime] = None
        self._last_static_update: Optional[datetime] = None

    def update_stations(
        self,
        stations: Dict[str, Station],
        static_update: Optional[datetime] = None,
    ) -> None:
        """
        Install a new station map and rebuild the route index.

        Args:
            stations: stop_id -> Station. The store takes ownership of the map.
            static_update: When set, also records this as the last static GTFS load.
        """
        stations_by_route: Dict[str, List[Station]] = {}
        for station in stations.values():
            for route in station.routes:
                stations_by_route.setdefault(route, []).append(station)

        # Sort by name for consistent responses
        for route_stations in stations_by_route.values():
            route_stations.sort(key=lambda s: s.name)

        with self._lock.write():
            self._stations = stations
            self._stations_by_route = stations_by_route
            self._routes = sorted(stations_by_route)
            self._last_update = datetime.now(timezone.utc)
            if static_update is not None:
                self._last_static_update = static_update

        logger.debug(f"Stored {len(stations)} stations on {len(stations_by_route)} routes")

    def update_alerts(self, alerts: List[Alert]) -> None:
        """Replace the alert list."""
        alerts = list(alerts)
        with self._lock.write():
            self._alerts = alerts

    def get_stations_by_location(self, lat: float, lon: float, limit: int) -> List[Station]:
        """Return up to ``limit`` stations ordered by distance from (lat, lon)."""
        if limit <= 0:
            return []

        with self._lock.read():
            by_distance = sorted(
                self._stations.values(),
                key=lambda s: distance(lat, lon, s.location.lat, s.location.lon),
            )
            return [station.copy() for station in by_distance[:limit]]

    def get_stations_by_route(self, route: str) -> List[Station]:
        """
        Return all stations on a route, sorted by name.

        Raises:
            NotFoundError: If the route is unknown. Matching is case-insensitive.
        """
        route = route.upper()
        with self._lock.read():
            stations = self._stations_by_route.get(route)
            if stations is None:
                raise NotFoundError(f"route {route} not found")
            return [station.copy() for station in stations]

    def get_stations_by_ids(self, ids: List[str]) -> List[Station]:
        """
        Return the stations whose IDs are known, skipping unknown IDs.

        Raises:
            NotFoundError: If none of the IDs match a station.
        """
        with self._lock.read():
            result = [self._stations[stop_id].copy() for stop_id in ids if stop_id in self._stations]

        if not result:
            raise NotFoundError("no stations found for given IDs")
        return result

    def get_routes(self) -> List[str]:
        with self._lock.read():
            return list(self._routes)

    def get_alerts(self) -> List[Alert]:
        with self._lock.read():
            return copy.deepcopy(self._alerts)

    def get_last_update(self) -> Optional[datetime]:
        """When the station map was last replaced, or None."""
        with self._lock.read():
            return self._last_update

    def get_last_static_update(self) -> Optional[datetime]:
        """When static GTFS data was last loaded successfully, or None."""
        with self._lock.read():
            return self._last_static_update
