"""MTA GTFS-Realtime feed fetcher and decoder."""

import logging
from typing import Optional

import requests
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from .exceptions import FetchError, ParseError

logger = logging.getLogger(__name__)

# MTA GTFS-Realtime feed URLs (subway only), one per line group
FEED_URLS = (
    "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs",  # 1-7, S
    "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-l",
    "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-nqrw",
    "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-bdfm",
    "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-ace",
    "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-jz",
    "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-g",
)


class MTAClient:
    """Fetches and decodes MTA GTFS-Realtime feeds."""

    def __init__(self, api_key: str = "", timeout: float = 30.0, session: Optional[requests.Session] = None):
        """
        Initialize the MTA client.

        Args:
            api_key: MTA API key, sent in the x-api-key header.
            timeout: Per-request timeout in seconds.
            session: Optional requests session to reuse.
        """
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_feed(self, feed_url: str) -> gtfs_realtime_pb2.FeedMessage:
        """Fetch and decode a single feed."""
        return self.decode_feed(self.fetch_feed(feed_url))

    def fetch_feed(self, feed_url: str) -> bytes:
        """
        Fetch a GTFS-Realtime feed.

        Args:
            feed_url: Full URL to the feed.

        Returns:
            Raw protobuf bytes.

        Raises:
            FetchError: On network failure or a non-200 response.
        """
        logger.debug(f"Fetching {feed_url}")
        headers = {"x-api-key": self.api_key} if self.api_key else {}
        try:
            response = self.session.get(feed_url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(f"failed to fetch {feed_url}: {e}", url=feed_url) from e

        if response.status_code != 200:
            raise FetchError(f"HTTP {response.status_code}", url=feed_url, status_code=response.status_code)
        return response.content

    @staticmethod
    def decode_feed(feed_data: bytes) -> gtfs_realtime_pb2.FeedMessage:
        """
        Decode GTFS-Realtime protobuf bytes.

        Raises:
            ParseError: If the payload is not a valid FeedMessage.
        """
        feed = gtfs_realtime_pb2.FeedMessage()
        try:
            feed.ParseFromString(feed_data)
        except DecodeError as e:
            raise ParseError(f"failed to decode feed: {e}") from e
        return feed

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()
