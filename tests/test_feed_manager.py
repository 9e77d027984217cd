"""Tests for the FeedManager update cycle."""

import sys
import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

from google.transit import gtfs_realtime_pb2

# Add src to path so we can import mtastore
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mtastore.config import Config
from mtastore.exceptions import FetchError, InitialLoadError, NotFoundError, ParseError
from mtastore.feed_manager import FeedManager, sort_and_limit_arrivals
from mtastore.models import Arrival, Location, Station
from mtastore.store import StationStore

FEED_A = "http://feeds/a"
FEED_B = "http://feeds/b"


def make_catalog():
    return {
        "127": Station(id="127", name="Times Sq-42 St", location=Location(40.755477, -73.987691),
                       routes=["1", "N"]),
        "631": Station(id="631", name="Grand Central-42 St", location=Location(40.751776, -73.976848),
                       routes=["6"]),
        "R17": Station(id="R17", name="34 St-Herald Sq", location=Location(40.749567, -73.98795),
                       routes=["N"]),
        "H19": Station(id="H19", name="Broad Channel", location=Location(40.608382, -73.815925)),
    }


def new_feed():
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    return feed


def add_trip(feed, route_id, stops):
    """Add a trip update; stops is a list of (stop_id, unix arrival time or None)."""
    entity = feed.entity.add()
    entity.id = f"trip-{len(feed.entity)}"
    entity.trip_update.trip.trip_id = entity.id
    entity.trip_update.trip.route_id = route_id
    for stop_id, arrival_time in stops:
        stop_time_update = entity.trip_update.stop_time_update.add()
        stop_time_update.stop_id = stop_id
        if arrival_time is not None:
            stop_time_update.arrival.time = arrival_time
    return entity


def add_alert(feed, header=None, description=None, routes=(), stops=(), periods=()):
    entity = feed.entity.add()
    entity.id = f"alert-{len(feed.entity)}"
    alert = entity.alert
    if header is not None:
        alert.header_text.translation.add(text=header, language="en")
    if description is not None:
        alert.description_text.translation.add(text=description, language="en")
    for route_id in routes:
        alert.informed_entity.add(route_id=route_id)
    for stop_id in stops:
        alert.informed_entity.add(stop_id=stop_id)
    for start, end in periods:
        period = alert.active_period.add()
        if start is not None:
            period.start = start
        if end is not None:
            period.end = end
    return entity


def seconds_from_now(seconds):
    return int(time.time()) + seconds


class FeedManagerTestCase(unittest.TestCase):
    """Shared fixtures: a store, a stub loader and a stub realtime client."""

    def setUp(self):
        self.store = StationStore()
        self.loader = MagicMock()
        self.loader.load.side_effect = lambda source=None: make_catalog()
        self.feeds = {FEED_A: new_feed(), FEED_B: new_feed()}
        self.client = MagicMock()
        self.client.get_feed.side_effect = self.get_feed
        self.config = Config(feed_urls=(FEED_A, FEED_B), update_interval=3600)
        self.manager = FeedManager(self.store, self.client, self.loader, self.config)

    def tearDown(self):
        self.manager.stop()

    def get_feed(self, url):
        feed = self.feeds[url]
        if isinstance(feed, Exception):
            raise feed
        return feed

    def station(self, station_id):
        return self.store.get_stations_by_ids([station_id])[0]


class TestStaticLoading(FeedManagerTestCase):
    """Static GTFS load and refresh decisions."""

    def test_first_update_loads_static_data(self):
        self.manager.update()

        self.loader.load.assert_called_once_with(None)
        self.assertTrue(self.manager.static_loaded)
        self.assertIsNotNone(self.manager.last_static_update)
        self.assertEqual(self.store.get_last_static_update(), self.manager.last_static_update)
        self.assertEqual(self.store.get_routes(), ["1", "6", "N"])

    def test_gtfs_path_passed_to_loader(self):
        self.config.gtfs_path = "/data/gtfs"
        self.manager.update()
        self.loader.load.assert_called_once_with("/data/gtfs")

    def test_initial_load_failure(self):
        self.loader.load.side_effect = FetchError("HTTP 503", url="http://gtfs", status_code=503)

        with self.assertRaises(InitialLoadError) as ctx:
            self.manager.update()

        self.assertIsInstance(ctx.exception.__cause__, FetchError)
        self.assertFalse(self.manager.static_loaded)
        self.client.get_feed.assert_not_called()
        with self.assertRaises(NotFoundError):
            self.store.get_stations_by_route("N")
        self.assertEqual(self.store.get_routes(), [])

    def test_initial_load_retried_next_update(self):
        self.loader.load.side_effect = [ParseError("stops.txt is missing required column: stop_id"),
                                        make_catalog()]

        with self.assertRaises(InitialLoadError):
            self.manager.update()
        self.manager.update()

        self.assertEqual(self.loader.load.call_count, 2)
        self.assertEqual(len(self.store.get_stations_by_route("N")), 2)

    def test_refresh_failure_keeps_existing_data(self):
        self.manager.update()
        loaded_at = self.store.get_last_static_update()
        before = [s.name for s in self.store.get_stations_by_route("N")]

        # Make the static data look old enough to refresh
        self.manager._last_static_update -= timedelta(hours=7)
        self.loader.load.side_effect = FetchError("HTTP 500", url="http://gtfs", status_code=500)
        self.manager.update()

        self.assertEqual(self.loader.load.call_count, 2)
        self.assertEqual([s.name for s in self.store.get_stations_by_route("N")], before)
        self.assertEqual(self.store.get_last_static_update(), loaded_at)

    def test_refresh_when_interval_elapsed(self):
        self.manager.update()
        self.manager.update()
        self.assertEqual(self.loader.load.call_count, 1)

        self.manager._last_static_update -= timedelta(hours=7)
        self.manager.update()
        self.assertEqual(self.loader.load.call_count, 2)

    def test_static_refresh_keeps_alerts_until_realtime_replaces_them(self):
        add_alert(self.feeds[FEED_A], header="Delays on the N", routes=["N"])
        self.manager.update()
        self.manager._last_static_update -= timedelta(hours=7)

        seen_during_fetch = []

        def get_feed(url):
            seen_during_fetch.append([a.header for a in self.store.get_alerts()])
            return self.get_feed(url)

        self.client.get_feed.side_effect = get_feed
        self.manager.update()

        self.assertEqual(self.loader.load.call_count, 2)
        self.assertEqual(seen_during_fetch[0], ["Delays on the N"])
        self.assertEqual([a.header for a in self.store.get_alerts()], ["Delays on the N"])

    def test_zero_interval_never_refreshes(self):
        self.config.static_update_interval = 0
        self.manager.update()
        self.manager._last_static_update -= timedelta(days=30)
        self.manager.update()
        self.assertEqual(self.loader.load.call_count, 1)


class TestRealtimeMerge(FeedManagerTestCase):
    """Arrivals and alerts merged from realtime feeds."""

    def test_arrivals_attached_by_direction(self):
        north_time = seconds_from_now(120)
        south_time = seconds_from_now(300)
        add_trip(self.feeds[FEED_A], "1", [("127N", north_time), ("127S", south_time)])

        self.manager.update()

        station = self.station("127")
        self.assertEqual(station.arrivals.north,
                         [Arrival("1", datetime.fromtimestamp(north_time, tz=timezone.utc))])
        self.assertEqual(station.arrivals.south,
                         [Arrival("1", datetime.fromtimestamp(south_time, tz=timezone.utc))])
        self.assertIsNotNone(station.last_update)

    def test_route_id_normalized(self):
        add_trip(self.feeds[FEED_A], "N20241201", [("R17S", seconds_from_now(60))])
        self.manager.update()
        self.assertEqual([a.route for a in self.station("R17").arrivals.south], ["N"])

    def test_stale_arrivals_dropped(self):
        add_trip(self.feeds[FEED_A], "6", [("631N", seconds_from_now(-90))])
        add_trip(self.feeds[FEED_A], "6", [("631N", seconds_from_now(-30))])

        self.manager.update()

        arrivals = self.station("631").arrivals.north
        self.assertEqual(len(arrivals), 1)
        age = datetime.now(timezone.utc) - arrivals[0].time
        self.assertLess(age, timedelta(seconds=60))

    def test_delay_added_to_current_time(self):
        entity = add_trip(self.feeds[FEED_A], "6", [("631S", None)])
        entity.trip_update.stop_time_update[0].arrival.delay = 240

        before = datetime.now(timezone.utc).replace(microsecond=0)
        self.manager.update()
        after = datetime.now(timezone.utc)

        arrival = self.station("631").arrivals.south[0]
        self.assertGreaterEqual(arrival.time, before + timedelta(seconds=240))
        self.assertLessEqual(arrival.time, after + timedelta(seconds=240))

    def test_delay_arrivals_from_different_feeds_deduplicated(self):
        for feed_url in (FEED_A, FEED_B):
            entity = add_trip(self.feeds[feed_url], "6", [("631S", None)])
            entity.trip_update.stop_time_update[0].arrival.delay = 240

        self.manager.update()

        arrivals = self.station("631").arrivals.south
        self.assertEqual(len(arrivals), 1)
        self.assertEqual(arrivals[0].time.microsecond, 0)

    def test_unusable_stop_times_skipped(self):
        soon = seconds_from_now(120)
        add_trip(self.feeds[FEED_A], "1", [
            ("127", soon),      # no direction suffix
            ("127N", None),     # no arrival time
            ("999N", soon),     # station not in static data
            ("127S", soon),
        ])

        self.manager.update()

        station = self.station("127")
        self.assertEqual(station.arrivals.north, [])
        self.assertEqual(len(station.arrivals.south), 1)

    def test_trip_without_route_skipped(self):
        add_trip(self.feeds[FEED_A], "", [("127N", seconds_from_now(120))])
        self.manager.update()
        self.assertEqual(self.station("127").arrivals.north, [])

    def test_arrivals_deduplicated_sorted_and_limited(self):
        base = seconds_from_now(600)
        stops = [("127N", base + 60 * i) for i in range(12)]
        add_trip(self.feeds[FEED_A], "1", list(reversed(stops)))
        add_trip(self.feeds[FEED_B], "1", stops[:3])  # duplicates across feeds
        add_trip(self.feeds[FEED_B], "N", [("127N", base)])

        self.manager.update()

        arrivals = self.station("127").arrivals.north
        self.assertEqual(len(arrivals), 10)
        self.assertEqual(len({(a.route, a.time) for a in arrivals}), 10)
        self.assertEqual([a.time for a in arrivals], sorted(a.time for a in arrivals))
        self.assertEqual({a.route for a in arrivals[:2]}, {"1", "N"})

    def test_arrivals_replaced_each_update(self):
        add_trip(self.feeds[FEED_A], "6", [("631N", seconds_from_now(120))])
        self.manager.update()
        self.assertEqual(len(self.station("631").arrivals.north), 1)

        self.feeds[FEED_A] = new_feed()
        self.manager.update()
        self.assertEqual(self.station("631").arrivals.north, [])

    def test_failed_feed_does_not_stop_others(self):
        self.feeds[FEED_A] = FetchError("HTTP 503", url=FEED_A, status_code=503)
        add_trip(self.feeds[FEED_B], "N", [("R17N", seconds_from_now(120))])

        self.manager.update()

        self.assertEqual(len(self.station("R17").arrivals.north), 1)
        self.assertEqual(self.client.get_feed.call_count, 2)

    def test_undecodable_feed_does_not_stop_others(self):
        self.feeds[FEED_A] = ParseError("failed to decode feed")
        add_trip(self.feeds[FEED_B], "6", [("631S", seconds_from_now(120))])

        self.manager.update()

        self.assertEqual(len(self.station("631").arrivals.south), 1)

    def test_all_feeds_failing_keeps_stations(self):
        self.feeds[FEED_A] = FetchError("down", url=FEED_A)
        self.feeds[FEED_B] = FetchError("down", url=FEED_B)

        self.manager.update()

        self.assertEqual(len(self.store.get_stations_by_route("N")), 2)

    def test_stations_without_routes_leave_snapshot(self):
        self.manager.update()
        with self.assertRaises(NotFoundError):
            self.store.get_stations_by_ids(["H19"])

    def test_every_station_bounded(self):
        base = seconds_from_now(60)
        for i in range(30):
            add_trip(self.feeds[FEED_A], "N", [("127N", base + i), ("R17S", base + i), ("R17S", base + i)])

        self.manager.update()

        for station in self.store.get_stations_by_location(40.75, -73.98, 10):
            for arrivals in (station.arrivals.north, station.arrivals.south):
                self.assertLessEqual(len(arrivals), 10)
                self.assertEqual(arrivals, sorted(arrivals, key=lambda a: a.time))
                self.assertEqual(len(set(arrivals)), len(arrivals))


class TestAlerts(FeedManagerTestCase):
    """Service alerts parsed from realtime feeds."""

    def test_alert_parsed(self):
        start = seconds_from_now(-3600)
        add_alert(
            self.feeds[FEED_A],
            header="Delays on the N",
            description="Signal problems at 34 St",
            routes=["N20241201", "Q"],
            stops=["R17N"],
            periods=[(start, None)],
        )

        self.manager.update()

        alerts = self.store.get_alerts()
        self.assertEqual(len(alerts), 1)
        alert = alerts[0]
        self.assertTrue(alert.id.startswith("rt_"))
        self.assertEqual(alert.header, "Delays on the N")
        self.assertEqual(alert.description, "Signal problems at 34 St")
        self.assertEqual(alert.routes, ["N", "Q"])
        self.assertEqual(alert.stations, ["R17"])
        self.assertEqual(len(alert.active_periods), 1)
        self.assertEqual(alert.active_periods[0].start, datetime.fromtimestamp(start, tz=timezone.utc))
        self.assertIsNone(alert.active_periods[0].end)

    def test_alert_route_from_trip(self):
        entity = add_alert(self.feeds[FEED_A], header="Trip canceled")
        entity.alert.informed_entity.add().trip.route_id = "6"

        self.manager.update()

        self.assertEqual(self.store.get_alerts()[0].routes, ["6"])

    def test_alert_without_header_skipped(self):
        add_alert(self.feeds[FEED_A], description="No header")
        self.manager.update()
        self.assertEqual(self.store.get_alerts(), [])

    def test_alerts_collected_across_feeds_and_replaced(self):
        add_alert(self.feeds[FEED_A], header="A")
        add_alert(self.feeds[FEED_B], header="B")
        self.manager.update()
        alerts = self.store.get_alerts()
        self.assertEqual([a.header for a in alerts], ["A", "B"])
        self.assertEqual(len({a.id for a in alerts}), 2)

        self.feeds[FEED_A] = new_feed()
        self.manager.update()
        self.assertEqual([a.header for a in self.store.get_alerts()], ["B"])


class TestSortAndLimitArrivals(unittest.TestCase):
    """Test the arrival post-processing helper."""

    def test_empty(self):
        self.assertEqual(sort_and_limit_arrivals([]), [])

    def test_dedupes_and_sorts(self):
        now = datetime.now(timezone.utc)
        arrivals = [
            Arrival("N", now + timedelta(minutes=5)),
            Arrival("Q", now + timedelta(minutes=1)),
            Arrival("N", now + timedelta(minutes=5)),
            Arrival("N", now + timedelta(minutes=1)),
        ]
        result = sort_and_limit_arrivals(arrivals)
        self.assertEqual(result, [
            Arrival("N", now + timedelta(minutes=1)),
            Arrival("Q", now + timedelta(minutes=1)),
            Arrival("N", now + timedelta(minutes=5)),
        ])

    def test_limit(self):
        now = datetime.now(timezone.utc)
        arrivals = [Arrival("1", now + timedelta(minutes=i)) for i in range(15, 0, -1)]
        result = sort_and_limit_arrivals(arrivals, limit=10)
        self.assertEqual(len(result), 10)
        self.assertEqual(result[0].time, now + timedelta(minutes=1))
        self.assertEqual(result[-1].time, now + timedelta(minutes=10))


class TestLifecycle(FeedManagerTestCase):
    """Background loop start and stop."""

    def wait_for(self, condition, timeout=5.0):
        deadline = time.monotonic() + timeout
        while not condition():
            if time.monotonic() > deadline:
                self.fail("condition not met in time")
            time.sleep(0.01)

    def test_start_runs_update_immediately(self):
        self.manager.start()
        self.assertTrue(self.manager.running)
        self.wait_for(lambda: self.store.get_last_static_update() is not None)

        self.manager.stop()

        self.assertFalse(self.manager.running)
        self.assertEqual(self.loader.load.call_count, 1)

    def test_start_twice(self):
        self.manager.start()
        with self.assertRaises(RuntimeError):
            self.manager.start()

    def test_stop_when_not_running(self):
        self.manager.stop()
        self.assertFalse(self.manager.running)

    def test_restart(self):
        self.manager.start()
        self.manager.stop()
        self.manager.start()
        self.assertTrue(self.manager.running)
        self.manager.stop()
        self.assertFalse(self.manager.running)

    def test_loop_retries_after_initial_failure(self):
        self.config.update_interval = 0.01
        self.loader.load.side_effect = FetchError("HTTP 503", url="http://gtfs", status_code=503)

        self.manager.start()
        self.wait_for(lambda: self.loader.load.call_count >= 3)
        self.assertTrue(self.manager.running)
        self.manager.stop()

        with self.assertRaises(NotFoundError):
            self.store.get_stations_by_route("N")

    def test_stop_waits_for_update_in_progress(self):
        entered = threading.Event()
        release = threading.Event()

        def slow_load(source=None):
            entered.set()
            release.wait(5)
            return make_catalog()

        self.loader.load.side_effect = slow_load
        self.manager.start()
        self.assertTrue(entered.wait(5))

        stopper = threading.Thread(target=self.manager.stop)
        stopper.start()
        stopper.join(timeout=0.2)
        self.assertTrue(stopper.is_alive())

        release.set()
        stopper.join(timeout=5)
        self.assertFalse(stopper.is_alive())
        # The in-flight update completed its install before stop returned
        self.assertEqual(self.store.get_routes(), ["1", "6", "N"])
        self.assertIsNotNone(self.store.get_last_static_update())

    def test_update_scheduled_on_interval(self):
        self.manager.start()

        job = self.manager._scheduler.get_job("mtastore_update")
        self.assertIsNotNone(job)
        self.assertEqual(job.trigger.interval, timedelta(seconds=3600))
        self.assertEqual(job.max_instances, 1)

    def test_failed_update_logged_with_traceback(self):
        self.loader.load.side_effect = FetchError("HTTP 503", url="http://gtfs", status_code=503)

        with self.assertLogs("mtastore.feed_manager", level="ERROR") as cm:
            self.manager._run_update()

        self.assertIn("Update failed", cm.output[0])
        self.assertIsNotNone(cm.records[0].exc_info)
        self.assertIs(cm.records[0].exc_info[0], InitialLoadError)

    def test_wait_for_realtime_after_first_merge(self):
        self.assertFalse(self.manager.wait_for_realtime(timeout=0))

        self.manager.start()

        self.assertTrue(self.manager.wait_for_realtime(timeout=5))
        self.assertIsNotNone(self.manager.last_realtime_update)

    def test_wait_for_realtime_times_out_while_static_load_fails(self):
        self.config.update_interval = 0.01
        self.loader.load.side_effect = FetchError("HTTP 503", url="http://gtfs", status_code=503)

        self.manager.start()

        self.assertFalse(self.manager.wait_for_realtime(timeout=0.2))
        self.assertIsNone(self.manager.last_realtime_update)


if __name__ == "__main__":
    unittest.main()
