"""Geospatial helper functions."""

from __future__ import annotations

import math
from typing import Sequence

from shapely.geometry import Point, Polygon

from ..models.domain import Coordinate

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates, symmetric and zero for equal points."""

    if a == b:
        return 0.0
    # Order the arguments so d(a, b) and d(b, a) evaluate the same floating-point expression.
    first, second = sorted((a, b), key=lambda c: (c.lat, c.lng))
    return haversine_km(first.lat, first.lng, second.lat, second.lng)


def circle_polygon(center: Coordinate, radius_km: float, points: int = 64) -> list[Coordinate]:
    """Approximate a geodesic circle as a closed ring of ``points + 1`` vertices."""

    if points < 3:
        raise ValueError("A circle polygon needs at least three points.")

    radius_rad = radius_km / EARTH_RADIUS_KM
    center_lat = math.radians(center.lat)
    center_lng = math.radians(center.lng)

    ring: list[Coordinate] = []
    for i in range(points):
        angle = (i / points) * 2 * math.pi
        lat_rad = math.asin(
            math.sin(center_lat) * math.cos(radius_rad)
            + math.cos(center_lat) * math.sin(radius_rad) * math.cos(angle)
        )
        lng_rad = center_lng + math.atan2(
            math.sin(angle) * math.sin(radius_rad) * math.cos(center_lat),
            math.cos(radius_rad) - math.sin(center_lat) * math.sin(lat_rad),
        )
        ring.append(Coordinate(lat=math.degrees(lat_rad), lng=math.degrees(lng_rad)))
    ring.append(ring[0])
    return ring


def circle_feature(center: Coordinate, radius_km: float, points: int = 64, properties: dict | None = None) -> dict:
    """GeoJSON polygon feature for a search-radius overlay (lng, lat order)."""

    ring = circle_polygon(center, radius_km, points)
    return {
        "type": "Feature",
        "properties": dict(properties or {}),
        "geometry": {
            "type": "Polygon",
            "coordinates": [[[vertex.lng, vertex.lat] for vertex in ring]],
        },
    }


def point_in_polygon(lat: float, lon: float, polygon_coords: Sequence[Coordinate | tuple[float, float]]) -> bool:
    """Return True if the point is inside the polygon denoted by coordinates or (lat, lon) pairs."""

    vertices = [
        (vertex.lng, vertex.lat) if isinstance(vertex, Coordinate) else (vertex[1], vertex[0])
        for vertex in polygon_coords
    ]
    polygon = Polygon(vertices)
    return polygon.contains(Point(lon, lat))
