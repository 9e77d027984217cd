"""Background refresh of static GTFS and GTFS-Realtime data into the station store."""

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from google.transit import gtfs_realtime_pb2

from .config import Config
from .exceptions import InitialLoadError, MTAStoreError, NotFoundError
from .gtfs_loader import GTFSLoader
from .models import Alert, Arrival, ArrivalsByDirection, Station, TimePeriod
from .mta_client import MTAClient
from .normalize import NORTH, extract_route_from_id, parent_stop_id, split_stop_id
from .store import StationStore

logger = logging.getLogger(__name__)

MAX_ARRIVALS = 10
# Predictions further in the past than this are stale
STALE_AFTER = timedelta(seconds=60)


def sort_and_limit_arrivals(arrivals: Iterable[Arrival], limit: int = MAX_ARRIVALS) -> List[Arrival]:
    """Drop duplicate (route, time) arrivals, sort by time and keep the first ``limit``."""
    return sorted(set(arrivals), key=lambda a: (a.time, a.route))[:limit]


class FeedManager:
    """
    Keeps a StationStore fresh from static GTFS and GTFS-Realtime feeds.

    Each update cycle reloads static data when it is due, then rebuilds every
    station's arrivals from the realtime feeds and installs the result in one
    store write. The background job runs a cycle as soon as it starts and then
    once per ``config.update_interval``; upstream failures are logged and never
    stop the job.
    """

    def __init__(
        self,
        store: StationStore,
        client: MTAClient,
        loader: GTFSLoader,
        config: Optional[Config] = None,
    ):
        self.store = store
        self.client = client
        self.loader = loader
        self.config = config or Config()
        self._static_loaded = False
        self._last_static_update: Optional[datetime] = None
        self._last_realtime_update: Optional[datetime] = None
        self._realtime_ready = threading.Event()
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def static_loaded(self) -> bool:
        return self._static_loaded

    @property
    def last_static_update(self) -> Optional[datetime]:
        """When static GTFS data was last loaded successfully, or None."""
        return self._last_static_update

    @property
    def last_realtime_update(self) -> Optional[datetime]:
        """When realtime arrivals were last merged into the store, or None."""
        return self._last_realtime_update

    def wait_for_realtime(self, timeout: Optional[float] = None) -> bool:
        """Block until the first realtime merge has been installed. Returns False on timeout."""
        return self._realtime_ready.wait(timeout)

    def start(self) -> None:
        """Start the background update job. The first update runs immediately."""
        if self.running:
            raise RuntimeError("feed manager is already running")
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._run_update,
            "interval",
            seconds=self.config.update_interval,
            id="mtastore_update",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Scheduled updates every {self.config.update_interval:g}s")

    def stop(self) -> None:
        """Stop the update job, waiting for an in-flight update to complete."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        self._scheduler = None

    def _run_update(self) -> None:
        """Scheduled job body. Failures are logged so the job keeps running."""
        try:
            self.update()
        except Exception as e:
            logger.error(f"Update failed: {e}", exc_info=True)

    def update(self) -> None:
        """
        Run one update cycle.

        Raises:
            InitialLoadError: If static data has never loaded and loading failed again.
                Realtime data is not fetched in that case.
        """
        if self._needs_static_update():
            try:
                stations = self.loader.load(self.config.gtfs_path)
            except Exception as e:
                if not self._static_loaded:
                    raise InitialLoadError(f"failed to load initial static GTFS data: {e}") from e
                logger.warning(
                    f"Failed to refresh static GTFS data, continuing with data from "
                    f"{self._last_static_update.isoformat()}: {e}"
                )
            else:
                loaded_at = datetime.now(timezone.utc)
                self.store.update_stations(stations, static_update=loaded_at)
                self._static_loaded = True
                self._last_static_update = loaded_at
                logger.info(f"Loaded static GTFS data: {len(stations)} stations")

        try:
            self._update_realtime()
        except Exception:
            logger.warning("Failed to update real-time data", exc_info=True)

    def _needs_static_update(self) -> bool:
        if not self._static_loaded or self._last_static_update is None:
            return True
        interval = self.config.static_update_interval
        if interval <= 0:
            return False
        age = datetime.now(timezone.utc) - self._last_static_update
        return age.total_seconds() > interval

    def _update_realtime(self) -> None:
        """Rebuild arrivals and alerts from all realtime feeds and install them."""
        stations = self._working_copy()
        alerts: List[Alert] = []
        # Whole seconds, so delay-based arrivals from different feeds compare equal
        processed_at = datetime.now(timezone.utc).replace(microsecond=0)

        for feed_url in self.config.feed_urls:
            try:
                feed = self.client.get_feed(feed_url)
                self._process_feed(feed, stations, alerts, processed_at)
            except MTAStoreError as e:
                logger.warning(f"Failed to process feed {feed_url}: {e}")
            except Exception:
                logger.exception(f"Unexpected error processing feed {feed_url}")

        now = datetime.now(timezone.utc)
        for station in stations.values():
            station.arrivals.north = sort_and_limit_arrivals(station.arrivals.north)
            station.arrivals.south = sort_and_limit_arrivals(station.arrivals.south)
            station.last_update = now

        self.store.update_stations(stations)
        self.store.update_alerts(alerts)
        self._last_realtime_update = now
        self._realtime_ready.set()
        logger.debug(f"Updated real-time data for {len(stations)} stations, {len(alerts)} alerts")

    def _working_copy(self) -> Dict[str, Station]:
        """Copy every station on a known route, with arrivals cleared."""
        stations: Dict[str, Station] = {}
        for route in self.store.get_routes():
            try:
                route_stations = self.store.get_stations_by_route(route)
            except NotFoundError:
                continue
            for station in route_stations:
                if station.id not in stations:
                    station.arrivals = ArrivalsByDirection()
                    stations[station.id] = station
        return stations

    def _process_feed(
        self,
        feed: gtfs_realtime_pb2.FeedMessage,
        stations: Dict[str, Station],
        alerts: List[Alert],
        now: datetime,
    ) -> None:
        added = 0
        for entity in feed.entity:
            if entity.HasField("trip_update"):
                added += self._process_trip_update(entity.trip_update, stations, now)
            if entity.HasField("alert"):
                alert = self._process_alert(entity.alert)
                if alert is not None:
                    alerts.append(alert)
        logger.debug(f"Processed {len(feed.entity)} entities, {added} arrivals")

    def _process_trip_update(
        self,
        trip_update: gtfs_realtime_pb2.TripUpdate,
        stations: Dict[str, Station],
        now: datetime,
    ) -> int:
        """Attach a trip's predicted arrivals to stations. Returns the number added."""
        route = extract_route_from_id(trip_update.trip.route_id)
        if not route:
            logger.debug(f"Skipping trip {trip_update.trip.trip_id!r} without a route")
            return 0

        added = 0
        for stop_time_update in trip_update.stop_time_update:
            station_id, direction = split_stop_id(stop_time_update.stop_id)
            if direction is None:
                logger.debug(f"Skipping stop {stop_time_update.stop_id!r} without a direction")
                continue

            arrival_time = _arrival_time(stop_time_update, now)
            if arrival_time is None or now - arrival_time > STALE_AFTER:
                continue

            # Stations missing from static data may be on a line not loaded yet
            station = stations.get(station_id)
            if station is None:
                continue

            arrivals = station.arrivals.north if direction == NORTH else station.arrivals.south
            arrivals.append(Arrival(route=route, time=arrival_time))
            added += 1
        return added

    def _process_alert(self, alert: gtfs_realtime_pb2.Alert) -> Optional[Alert]:
        header = _first_translation(alert.header_text)
        if not header:
            return None

        routes = []
        station_ids = []
        for informed_entity in alert.informed_entity:
            # Route can be specified directly in route_id OR in trip.route_id
            route_id = informed_entity.route_id
            if not route_id and informed_entity.HasField("trip"):
                route_id = informed_entity.trip.route_id
            route = extract_route_from_id(route_id)
            if route:
                routes.append(route)
            if informed_entity.stop_id:
                station_ids.append(parent_stop_id(informed_entity.stop_id))

        active_periods = [
            TimePeriod(
                start=_from_timestamp(period.start) if period.HasField("start") else None,
                end=_from_timestamp(period.end) if period.HasField("end") else None,
            )
            for period in alert.active_period
        ]

        return Alert(
            id=f"rt_{uuid.uuid4().hex}",
            header=header,
            description=_first_translation(alert.description_text),
            routes=routes,
            stations=station_ids,
            active_periods=active_periods,
        )


def _from_timestamp(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _arrival_time(
    stop_time_update: gtfs_realtime_pb2.TripUpdate.StopTimeUpdate,
    now: datetime,
) -> Optional[datetime]:
    if not stop_time_update.HasField("arrival"):
        return None
    arrival = stop_time_update.arrival
    if arrival.HasField("time"):
        return _from_timestamp(arrival.time)
    if arrival.HasField("delay"):
        # Delay is applied to the processing time, not to a scheduled time
        return now + timedelta(seconds=arrival.delay)
    return None


def _first_translation(translated: gtfs_realtime_pb2.TranslatedString) -> str:
    if translated.translation:
        return translated.translation[0].text
    return ""
