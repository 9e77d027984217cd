"""
HTTP API for the station tracker.

Endpoints:
  GET /                       service info
  GET /by-location?lat=&lon=  five nearest stations
  GET /by-route/{route}       stations on a route
  GET /by-id/{ids}            stations by comma-separated IDs
  GET /routes                 known route codes
  GET /alerts                 current service alerts
"""

from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .exceptions import NotFoundError
from .models import Station
from .station_tracker import MTAStationTracker


LOCATION_LIMIT = 5


def create_app(tracker: MTAStationTracker) -> FastAPI:
    """Build the FastAPI application serving queries from ``tracker``."""
    app = FastAPI(title="mtastore")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    def metadata() -> dict:
        meta = {}
        last_update = tracker.get_last_update()
        if last_update is not None:
            meta["updated"] = last_update.isoformat()
        static_update = tracker.get_last_static_update()
        if static_update is not None:
            meta["static_data_updated"] = static_update.isoformat()
        return meta

    def stations_response(stations: List[Station]) -> dict:
        response = {"data": [station.to_dict() for station in stations], **metadata()}
        # Prefer the newest station update when there is one
        updates = [station.last_update for station in stations if station.last_update is not None]
        if updates:
            response["updated"] = max(updates).isoformat()
        return response

    @app.get("/")
    def index() -> dict:
        return {
            "data": {"title": "mtastore", "readme": "Real-time MTA subway station data"},
            **metadata(),
        }

    @app.get("/by-location")
    def by_location(lat: float, lon: float) -> dict:
        return stations_response(tracker.get_stations_by_location(lat, lon, LOCATION_LIMIT))

    @app.get("/by-route/{route}")
    def by_route(route: str) -> dict:
        return stations_response(tracker.get_stations_by_route(route))

    @app.get("/by-id/{ids}")
    def by_id(ids: str) -> dict:
        return stations_response(tracker.get_stations_by_ids(ids.split(",")))

    @app.get("/routes")
    def routes() -> dict:
        return {"data": tracker.get_routes(), **metadata()}

    @app.get("/alerts")
    def alerts() -> dict:
        return {"data": [alert.to_dict() for alert in tracker.get_alerts()], **metadata()}

    return app
