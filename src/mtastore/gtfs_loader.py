"""GTFS static data loader for MTA subway data."""

import io
import logging
import os
import zipfile
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Sequence

import pandas as pd
import requests

from .exceptions import FetchError, NotFoundError, ParseError
from .models import Location, Station
from .normalize import parent_stop_id

logger = logging.getLogger(__name__)

# Supplemented GTFS includes service changes for the next 7 days and is updated hourly;
# the regular feed is the base schedule, updated a few times per year.
GTFS_SUPPLEMENTED_URL = "https://rrgtfsfeeds.s3.amazonaws.com/gtfs_supplemented.zip"
GTFS_REGULAR_URL = "https://rrgtfsfeeds.s3.amazonaws.com/gtfs_subway.zip"
GTFS_URLS = (GTFS_SUPPLEMENTED_URL, GTFS_REGULAR_URL)

REQUIRED_COLUMNS = {
    "stops.txt": ("stop_id", "stop_name", "stop_lat", "stop_lon"),
    "routes.txt": ("route_id", "route_short_name"),
    "trips.txt": ("route_id", "trip_id"),
    "stop_times.txt": ("trip_id", "stop_id"),
}

PARENT_STATION = "1"


class GTFSLoader:
    """Loads MTA GTFS static data and joins it into a station catalog."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        urls: Sequence[str] = GTFS_URLS,
    ):
        """
        Initialize the GTFS loader.

        Args:
            session: Optional requests session to reuse for downloads.
            timeout: Per-request timeout in seconds.
            urls: Archive URLs to try in order.
        """
        self.session = session or requests.Session()
        self.timeout = timeout
        self.urls = tuple(urls)

    def load(self, source: Optional[str] = None) -> Dict[str, Station]:
        """
        Load the station catalog from a URL download, a directory or a zip file.

        Args:
            source: None to download, or a path to an extracted GTFS directory or zip.
        """
        if source is None:
            return self.load_from_url()
        if os.path.isdir(source):
            return self.load_from_directory(source)
        if not os.path.exists(source):
            raise NotFoundError(f"GTFS source {source} does not exist")
        with open(source, "rb") as f:
            return self.load_from_zip(f.read())

    def load_from_url(self) -> Dict[str, Station]:
        """Download the GTFS archive, falling back through the configured URLs."""
        last_error: Optional[Exception] = None
        for url in self.urls:
            try:
                data = self._download(url)
            except (FetchError, NotFoundError) as e:
                logger.warning(f"Failed to download GTFS data from {url}: {e}")
                last_error = e
                continue
            return self.load_from_zip(data)

        if last_error is None:
            raise NotFoundError("no GTFS URLs configured")
        raise last_error

    def load_from_zip(self, data: bytes) -> Dict[str, Station]:
        """Load the catalog from GTFS archive bytes."""
        try:
            zip_file = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise ParseError(f"invalid GTFS archive: {e}") from e

        with zip_file:
            names = set(zip_file.namelist())

            def read(filename: str) -> pd.DataFrame:
                if filename not in names:
                    raise NotFoundError(f"{filename} missing from GTFS archive")
                with zip_file.open(filename) as f:
                    return _read_csv(f, filename)

            return self._load_catalog(read)

    def load_from_directory(self, path: str) -> Dict[str, Station]:
        """Load the catalog from extracted GTFS CSV files."""
        logger.info(f"Loading GTFS data from {path}")

        def read(filename: str) -> pd.DataFrame:
            file_path = os.path.join(path, filename)
            if not os.path.exists(file_path):
                raise NotFoundError(f"{file_path} does not exist")
            with open(file_path, "rb") as f:
                return _read_csv(f, filename)

        return self._load_catalog(read)

    def close(self) -> None:
        """Close the download session."""
        self.session.close()

    def _download(self, url: str) -> bytes:
        logger.info(f"Downloading GTFS data from {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(f"failed to download {url}: {e}", url=url) from e

        if response.status_code == 404:
            raise NotFoundError(f"{url} not found")
        if response.status_code != 200:
            raise FetchError(f"HTTP {response.status_code}", url=url, status_code=response.status_code)
        return response.content

    def _load_catalog(self, read: Callable[[str], pd.DataFrame]) -> Dict[str, Station]:
        stations = self._load_stops(read("stops.txt"))
        routes = read("routes.txt")
        trips = read("trips.txt")
        stop_times = read("stop_times.txt")
        self._load_routes(stations, routes, trips, stop_times)
        logger.info(f"Loaded {len(stations)} stations from GTFS data")
        return stations

    def _load_stops(self, stops: pd.DataFrame) -> Dict[str, Station]:
        """Build parent stations from stops.txt and attach their platforms."""
        _require_columns(stops, "stops.txt")
        now = datetime.now(timezone.utc)

        stations: Dict[str, Station] = {}
        platforms = []

        # First pass: parent stations (location_type=1)
        for row in stops.to_dict("records"):
            stop_id = row["stop_id"]
            stop_name = row["stop_name"]
            if not stop_id or not stop_name or not row["stop_lat"] or not row["stop_lon"]:
                continue

            try:
                location = Location(lat=float(row["stop_lat"]), lon=float(row["stop_lon"]))
            except ValueError as e:
                logger.warning(f"Invalid coordinates for stop {stop_id}: {e}")
                continue

            if row.get("location_type", "") == PARENT_STATION:
                stations[stop_id] = Station(
                    id=stop_id,
                    name=stop_name,
                    location=location,
                    last_update=now,
                )
            else:
                platforms.append((stop_id, row.get("parent_station", ""), location))

        # Second pass: attach platforms to their parent, by reference or by stripping N/S
        for stop_id, parent_id, location in platforms:
            station = stations.get(parent_id or parent_stop_id(stop_id))
            if station is not None:
                station.stops[stop_id] = location

        return stations

    def _load_routes(
        self,
        stations: Dict[str, Station],
        routes: pd.DataFrame,
        trips: pd.DataFrame,
        stop_times: pd.DataFrame,
    ) -> None:
        """Join routes -> trips -> stop_times and record each station's route codes."""
        _require_columns(routes, "routes.txt")
        _require_columns(trips, "trips.txt")
        _require_columns(stop_times, "stop_times.txt")

        routes = routes.loc[(routes["route_id"] != "") & (routes["route_short_name"] != ""),
                            ["route_id", "route_short_name"]].drop_duplicates("route_id")
        trips = trips.loc[(trips["route_id"] != "") & (trips["trip_id"] != ""), ["route_id", "trip_id"]]
        visits = stop_times.loc[(stop_times["trip_id"] != "") & (stop_times["stop_id"] != ""),
                                ["trip_id", "stop_id"]].drop_duplicates()

        joined = routes.merge(trips, on="route_id").merge(visits, on="trip_id")
        served = joined[["stop_id", "route_short_name"]].drop_duplicates()
        served = served.assign(parent_id=served["stop_id"].map(parent_stop_id))

        mapped = 0
        for station_id, route_names in served.groupby("parent_id")["route_short_name"]:
            mapped += 1
            station = stations.get(station_id)
            if station is not None:
                station.routes = sorted(set(route_names))

        logger.info(f"Mapped routes to {mapped} stations")


def _read_csv(f, filename: str) -> pd.DataFrame:
    try:
        return pd.read_csv(f, dtype=str, keep_default_na=False, encoding="utf-8-sig")
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise ParseError(f"failed to parse {filename}: {e}") from e


def _require_columns(df: pd.DataFrame, filename: str) -> None:
    for column in REQUIRED_COLUMNS[filename]:
        if column not in df.columns:
            raise ParseError(f"{filename} is missing required column: {column}")
