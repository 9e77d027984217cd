"""Command line entry point for mtastore."""

import argparse
import logging
import sys
from typing import List, Optional

import uvicorn

from .api import create_app
from .config import Config
from .exceptions import NotFoundError
from .models import Station
from .station_tracker import MTAStationTracker

logger = logging.getLogger(__name__)

INITIAL_DATA_TIMEOUT = 60.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mtastore", description="Real-time MTA subway station data")
    parser.add_argument("--api-key", help="MTA API key (default: MTA_API_KEY env var)")
    parser.add_argument("--gtfs-path", help="Local GTFS directory or zip instead of downloading")
    parser.add_argument("--update-interval", type=float, help="Realtime refresh interval in seconds")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8080)

    nearby = subparsers.add_parser("nearby", help="Print the stations nearest a coordinate")
    nearby.add_argument("--lat", type=float, default=40.7527)
    nearby.add_argument("--lon", type=float, default=-73.9772)
    nearby.add_argument("--limit", type=int, default=5)

    route = subparsers.add_parser("route", help="Print the stations on a route")
    route.add_argument("route")

    return parser


def load_config(args: argparse.Namespace) -> Config:
    config = Config.from_env()
    if args.api_key:
        config.api_key = args.api_key
    if args.gtfs_path:
        config.gtfs_path = args.gtfs_path
    if args.update_interval is not None:
        config.update_interval = args.update_interval
    config.validate()
    return config


def wait_for_data(tracker: MTAStationTracker, timeout: float = INITIAL_DATA_TIMEOUT) -> bool:
    """Block until the first realtime update lands, or the timeout passes."""
    return tracker.wait_for_realtime(timeout)


def print_stations(stations: List[Station], show_arrivals: bool = True) -> None:
    for station in stations:
        print(f"\n{station.name} ({station.id})")
        print(f"  Routes: {', '.join(station.routes)}")
        if not show_arrivals:
            continue
        for label, arrivals in (("Northbound", station.arrivals.north), ("Southbound", station.arrivals.south)):
            if arrivals:
                print(f"  {label}:")
                for arrival in arrivals[:3]:
                    print(f"    {arrival.route} - {arrival.time.astimezone().strftime('%I:%M %p')}")


def serve(tracker: MTAStationTracker, args: argparse.Namespace) -> int:
    app = create_app(tracker)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def nearby(tracker: MTAStationTracker, args: argparse.Namespace) -> int:
    if not wait_for_data(tracker):
        logger.warning("Timed out waiting for initial data")
    stations = tracker.get_stations_by_location(args.lat, args.lon, args.limit)
    print(f"\nNearest stations to ({args.lat:.4f}, {args.lon:.4f}):")
    print_stations(stations)
    return 0


def route(tracker: MTAStationTracker, args: argparse.Namespace) -> int:
    if not wait_for_data(tracker):
        logger.warning("Timed out waiting for initial data")
    try:
        stations = tracker.get_stations_by_route(args.route)
    except NotFoundError as e:
        print(f"Failed to get stations for route {args.route}: {e}", file=sys.stderr)
        return 1
    print(f"\nStations on route {args.route.upper()}:")
    print_stations(stations, show_arrivals=False)
    return 0


COMMANDS = {"serve": serve, "nearby": nearby, "route": route}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = load_config(args)
    except ValueError as e:
        parser.error(str(e))
    if not config.api_key:
        parser.error("MTA API key required (use --api-key or MTA_API_KEY env var)")

    tracker = MTAStationTracker(config)
    try:
        return COMMANDS[args.command](tracker, args)
    finally:
        tracker.close()


if __name__ == "__main__":
    sys.exit(main())
