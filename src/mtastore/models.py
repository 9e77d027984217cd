"""Data models for the MTA station store."""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Location:
    """A geographic coordinate in degrees."""
    lat: float
    lon: float

    def to_list(self) -> List[float]:
        return [self.lat, self.lon]


@dataclass(frozen=True)
class Arrival:
    """A predicted train arrival. Two arrivals with the same route and time are the same arrival."""
    route: str
    time: datetime

    def to_dict(self) -> dict:
        return {"route": self.route, "time": self.time.isoformat()}


@dataclass
class ArrivalsByDirection:
    """Upcoming arrivals split by travel direction."""
    north: List[Arrival] = field(default_factory=list)
    south: List[Arrival] = field(default_factory=list)


@dataclass
class Station:
    """Represents a subway station (a parent stop and its platforms)."""
    id: str
    name: str
    location: Location
    routes: List[str] = field(default_factory=list)  # Route codes served at this station
    arrivals: ArrivalsByDirection = field(default_factory=ArrivalsByDirection)
    stops: Dict[str, Location] = field(default_factory=dict)  # platform stop_id -> location
    last_update: Optional[datetime] = None

    def copy(self) -> "Station":
        """Return an independent deep copy of this station."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """Render the station in the API response shape."""
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location.to_list(),
            "routes": list(self.routes),
            "N": [arrival.to_dict() for arrival in self.arrivals.north],
            "S": [arrival.to_dict() for arrival in self.arrivals.south],
            "stops": {stop_id: loc.to_list() for stop_id, loc in self.stops.items()},
            "last_update": _isoformat(self.last_update),
        }


@dataclass
class TimePeriod:
    """An alert's active window. Either side may be open-ended."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def to_dict(self) -> dict:
        result = {}
        if self.start is not None:
            result["start"] = self.start.isoformat()
        if self.end is not None:
            result["end"] = self.end.isoformat()
        return result


@dataclass
class Alert:
    """Represents a service alert."""
    id: str
    header: str
    description: str = ""
    routes: List[str] = field(default_factory=list)
    stations: List[str] = field(default_factory=list)  # Parent station IDs
    active_periods: List[TimePeriod] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "header": self.header,
            "description": self.description,
            "routes": list(self.routes),
            "stations": list(self.stations),
            "active_periods": [period.to_dict() for period in self.active_periods],
        }
