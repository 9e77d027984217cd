"""mtastore - In-memory MTA subway station store fed by GTFS and GTFS-Realtime."""

__version__ = "0.1.0"

from .models import Location, Arrival, ArrivalsByDirection, Station, TimePeriod, Alert
from .exceptions import MTAStoreError, NotFoundError, ParseError, FetchError, InitialLoadError
from .config import Config
from .store import StationStore
from .gtfs_loader import GTFSLoader
from .mta_client import MTAClient
from .feed_manager import FeedManager
from .station_tracker import MTAStationTracker

__all__ = [
    "MTAStationTracker",
    "FeedManager",
    "StationStore",
    "GTFSLoader",
    "MTAClient",
    "Config",
    "Location",
    "Arrival",
    "ArrivalsByDirection",
    "Station",
    "TimePeriod",
    "Alert",
    "MTAStoreError",
    "NotFoundError",
    "ParseError",
    "FetchError",
    "InitialLoadError",
]
