"""Exception hierarchy for mtastore."""

from typing import Optional


class MTAStoreError(Exception):
    """Base exception for all mtastore errors."""


class NotFoundError(MTAStoreError, LookupError):
    """A query matched nothing, or an upstream resource is absent."""


class ParseError(MTAStoreError, ValueError):
    """Static CSV data or a realtime payload is malformed."""


class FetchError(MTAStoreError):
    """HTTP-level failure (network error or non-200 response)."""

    def __init__(self, message: str, *, url: str = "", status_code: Optional[int] = None) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class InitialLoadError(MTAStoreError):
    """The first static GTFS load failed, so no station data is available yet."""
