"""Geospatial tools served by the remote tool service.

calculate_distance, geocode_address, find_points_in_radius and
calculate_area. Distances and areas are geodesic on the WGS84 ellipsoid
(pyproj.Geod); geocoding goes to the Google Maps Geocoding API over a
shared httpx client.

Handlers return plain text: a short summary line or a JSON document that
the orchestrator's feature extractor can parse.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from pyproj import Geod

from magma.api.tools import LocalTool, ToolSpec

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

_GEOD = Geod(ellps="WGS84")

_POINT_SCHEMA = {
    "type": "object",
    "properties": {
        "lat": {"type": "number"},
        "lon": {"type": "number"},
    },
    "required": ["lat", "lon"],
}

_CALCULATE_DISTANCE_SCHEMA = ToolSpec(
    name="calculate_distance",
    description="Calculate the distance between two geographic points in kilometers",
    input_schema={
        "type": "object",
        "properties": {
            "point1": {
                "type": "object",
                "properties": {
                    "lat": {"type": "number", "description": "Latitude of first point"},
                    "lon": {"type": "number", "description": "Longitude of first point"},
                },
                "required": ["lat", "lon"],
            },
            "point2": {
                "type": "object",
                "properties": {
                    "lat": {"type": "number", "description": "Latitude of second point"},
                    "lon": {"type": "number", "description": "Longitude of second point"},
                },
                "required": ["lat", "lon"],
            },
        },
        "required": ["point1", "point2"],
    },
)

_GEOCODE_ADDRESS_SCHEMA = ToolSpec(
    name="geocode_address",
    description="Convert an address to coordinates using Google Maps Geocoding API",
    input_schema={
        "type": "object",
        "properties": {
            "address": {"type": "string", "description": "The address to geocode"},
        },
        "required": ["address"],
    },
)

_FIND_POINTS_IN_RADIUS_SCHEMA = ToolSpec(
    name="find_points_in_radius",
    description="Find points within a given radius of a center point",
    input_schema={
        "type": "object",
        "properties": {
            "center": _POINT_SCHEMA,
            "radius": {"type": "number", "description": "Radius in kilometers"},
            "points": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "lat": {"type": "number"},
                        "lon": {"type": "number"},
                    },
                    "required": ["lat", "lon"],
                },
            },
        },
        "required": ["center", "radius", "points"],
    },
)

_CALCULATE_AREA_SCHEMA = ToolSpec(
    name="calculate_area",
    description="Calculate the area of a polygon in square kilometers",
    input_schema={
        "type": "object",
        "properties": {
            "coordinates": {
                "type": "array",
                "description": "Array of [lon, lat] coordinate pairs forming the polygon",
                "items": {
                    "type": "array",
                    "items": {"type": "number"},
                    "minItems": 2,
                    "maxItems": 2,
                },
            },
        },
        "required": ["coordinates"],
    },
)


def _lat_lon(point: Any, label: str) -> tuple[float, float]:
    if not isinstance(point, dict) or "lat" not in point or "lon" not in point:
        raise ValueError(f"{label} must be an object with lat and lon")
    return float(point["lat"]), float(point["lon"])


def geodesic_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in kilometers along the WGS84 ellipsoid."""
    _, _, meters = _GEOD.inv(lon1, lat1, lon2, lat2)
    return meters / 1000


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def calculate_distance(point1: dict[str, Any], point2: dict[str, Any]) -> str:
    lat1, lon1 = _lat_lon(point1, "point1")
    lat2, lon2 = _lat_lon(point2, "point2")
    return f"Distance: {geodesic_km(lat1, lon1, lat2, lon2):.2f} km"


async def find_points_in_radius(
    center: dict[str, Any],
    radius: float,
    points: list[dict[str, Any]],
) -> str:
    """Filter points to those within radius km of center, nearest distances included."""
    center_lat, center_lon = _lat_lon(center, "center")
    radius_km = float(radius)

    matches = []
    for i, point in enumerate(points):
        lat, lon = _lat_lon(point, f"points[{i}]")
        distance = geodesic_km(center_lat, center_lon, lat, lon)
        if distance <= radius_km:
            matches.append({
                "name": point.get("name") or "Unnamed",
                "lat": lat,
                "lon": lon,
                "distance": f"{distance:.2f}",
            })

    return json.dumps({"count": len(matches), "points": matches}, indent=2)


async def calculate_area(coordinates: list[list[float]]) -> str:
    """Polygon area from [lon, lat] pairs; the ring is closed if needed."""
    if len(coordinates) < 3:
        raise ValueError("A polygon needs at least 3 coordinate pairs")
    ring = [(float(pair[0]), float(pair[1])) for pair in coordinates]
    if ring[0] != ring[-1]:
        ring.append(ring[0])

    lons, lats = zip(*ring)
    area_m2, _ = _GEOD.polygon_area_perimeter(lons, lats)
    return f"Area: {abs(area_m2) / 1_000_000:.2f} km²"


async def geocode_address(
    address: str,
    *,
    _api_key: str,
    _http: httpx.AsyncClient,
    _url: str = GEOCODE_URL,
) -> str:
    """Geocode via Google Maps. Returns JSON {address, lat, lon} on success."""
    if not _api_key:
        return "Error: GOOGLE_MAPS_API_KEY not set in environment"

    response = await _http.get(_url, params={"address": address, "key": _api_key})
    response.raise_for_status()
    data = response.json()

    status = data.get("status")
    results = data.get("results") or []
    if status != "OK" or not results:
        logger.info("Geocoding found nothing for %r (%s)", address, status)
        return f"No results found for address: {address} ({status})"

    top = results[0]
    location = top["geometry"]["location"]
    return json.dumps(
        {
            "address": top.get("formatted_address", address),
            "lat": location["lat"],
            "lon": location["lng"],
        },
        indent=2,
    )


def create_geo_tools(google_maps_api_key: str, http_client: httpx.AsyncClient) -> list[LocalTool]:
    """Build the geo tool set.

    geocode_address is wrapped in a closure that injects the API key and the
    shared httpx client.
    """

    async def _geocode(address: str) -> str:
        return await geocode_address(address, _api_key=google_maps_api_key, _http=http_client)

    return [
        LocalTool(_CALCULATE_DISTANCE_SCHEMA, calculate_distance),
        LocalTool(_GEOCODE_ADDRESS_SCHEMA, _geocode),
        LocalTool(_FIND_POINTS_IN_RADIUS_SCHEMA, find_points_in_radius),
        LocalTool(_CALCULATE_AREA_SCHEMA, calculate_area),
    ]
