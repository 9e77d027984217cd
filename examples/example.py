"""Example usage of MTAStationTracker."""

import logging
import sys
import time
from pathlib import Path

# Add src to path so we can import mtastore
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mtastore import Config, MTAStationTracker, NotFoundError

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Grand Central-42 St
DEFAULT_LAT = 40.7527
DEFAULT_LON = -73.9772

# Seconds to wait for the first arrivals before giving up
INITIAL_DATA_TIMEOUT = 120


def print_route(tracker: MTAStationTracker, route: str):
    """
    Display every station on a route with its next arrivals.

    Args:
        route: Route code (e.g., "N" or "6")
    """
    print(f"\n{'='*70}")
    print(f"Stations on route {route.upper()}")
    print(f"{'='*70}")

    try:
        stations = tracker.get_stations_by_route(route)
    except NotFoundError as e:
        print(f"Error: {e}")
        print(f"Known routes: {', '.join(tracker.get_routes())}")
        return

    for station in stations:
        north = ", ".join(f"{a.route} {a.time.astimezone():%H:%M}" for a in station.arrivals.north[:3])
        south = ", ".join(f"{a.route} {a.time.astimezone():%H:%M}" for a in station.arrivals.south[:3])
        print(f"{station.name:<35} N: {north or '-':<25} S: {south or '-'}")


def print_nearby(tracker: MTAStationTracker, lat: float, lon: float):
    """Display the closest stations to a coordinate, then current service alerts."""
    print(f"\n{'='*70}")
    print(f"Stations near ({lat:.4f}, {lon:.4f})")
    print(f"{'='*70}")

    for station in tracker.get_stations_by_location(lat, lon):
        print(f"\n{station.name} ({station.id}) - lines {', '.join(station.routes)}")
        for arrival in station.arrivals.north[:3]:
            minutes_away = int((arrival.time.timestamp() - time.time()) // 60)
            print(f"  North  {arrival.route}: {minutes_away:2d} min")
        for arrival in station.arrivals.south[:3]:
            minutes_away = int((arrival.time.timestamp() - time.time()) // 60)
            print(f"  South  {arrival.route}: {minutes_away:2d} min")

    print("\n" + "=" * 70)
    print("SERVICE ALERTS:")
    print("-" * 70)
    alerts = tracker.get_alerts()
    if alerts:
        for alert in alerts:
            print(f"\nLines {', '.join(alert.routes) or '?'}: {alert.header}")
    else:
        print("  No service alerts")


if __name__ == "__main__":
    config = Config.from_env()
    if not config.api_key:
        print("Set MTA_API_KEY (or add it to a .env file) to run this example")
        sys.exit(1)

    with MTAStationTracker(config) as tracker:
        print("Loading GTFS data... (this may take a minute on first run)")
        if not tracker.wait_for_realtime(timeout=INITIAL_DATA_TIMEOUT):
            print("Timed out waiting for train data; check the log for errors")
            sys.exit(1)

        if len(sys.argv) > 1:
            print_route(tracker, sys.argv[1])
        else:
            print_nearby(tracker, DEFAULT_LAT, DEFAULT_LON)
