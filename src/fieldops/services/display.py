"""Interface to the map-display collaborator and route paint styles."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from ..models.domain import Route, RouteStatus

logger = logging.getLogger(__name__)

ROUTE_COLORS = {
    RouteStatus.IN_PROGRESS: "#3887BE",
    RouteStatus.DELAYED: "#FF6B6B",
    RouteStatus.ARRIVING: "#4CAF50",
}


def paint_style(status: RouteStatus) -> dict[str, Any]:
    """Line paint for a route overlay; delayed routes are drawn dashed."""
    style: dict[str, Any] = {
        "line-color": ROUTE_COLORS.get(status, ROUTE_COLORS[RouteStatus.IN_PROGRESS]),
        "line-width": 4,
        "line-opacity": 0.8,
    }
    if status is RouteStatus.DELAYED:
        style["line-dasharray"] = [2, 2]
    return style


def route_display_payload(route: Route) -> dict[str, Any]:
    return {
        "route_id": route.route_id,
        "route_geometry": {
            "type": "Feature",
            "properties": {
                "route_id": route.route_id,
                "fe_name": route.fe_name,
                "branch_name": route.branch_name,
                "status": route.status.value,
            },
            "geometry": route.geometry,
        },
        "paint_style": paint_style(route.status),
    }


class MapDisplay(Protocol):
    def show_route(self, payload: dict[str, Any]) -> None: ...

    def clear_route(self) -> None: ...


class LoggingMapDisplay:
    """Default display sink: remembers the last overlay so the API can serve it."""

    def __init__(self) -> None:
        self.current: Optional[dict[str, Any]] = None

    def show_route(self, payload: dict[str, Any]) -> None:
        self.current = payload
        logger.info(
            "Route %s pushed to map display (color=%s)",
            payload.get("route_id"),
            payload.get("paint_style", {}).get("line-color"),
        )

    def clear_route(self) -> None:
        if self.current is not None:
            logger.info("Route %s cleared from map display", self.current.get("route_id"))
        self.current = None
