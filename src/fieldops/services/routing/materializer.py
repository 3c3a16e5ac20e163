"""Creation and live enrichment of ongoing routes."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence
from zoneinfo import ZoneInfo

from ...config import settings
from ...errors import DirectionsError
from ...models.domain import (
    Coordinate,
    FieldEngineer,
    Route,
    RouteStep,
    ServiceRequest,
)
from ...persistence.store import DispatchStore
from ..display import MapDisplay, route_display_payload
from ..geospatial import distance_km
from .directions_client import DirectionsClient, DirectionsResult

logger = logging.getLogger(__name__)

MAX_ROUTE_STEPS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def format_distance(distance_m: float) -> str:
    if distance_m < 1000:
        return f"{int(round_half_up(distance_m))} m"
    return f"{round_half_up(distance_m / 1000, 1):.1f} km"


def compute_fare(distance_km_value: float, base_fare: float | None = None, rate_per_km: float | None = None) -> int:
    base = settings.base_fare if base_fare is None else base_fare
    rate = settings.rate_per_km if rate_per_km is None else rate_per_km
    return int(round_half_up(base + distance_km_value * rate))


def describe_maneuver(maneuver_type: str, modifier: Optional[str] = None) -> str:
    modifier = modifier or ""
    match maneuver_type:
        case "turn":
            return f"Turn {modifier}".strip()
        case "depart":
            return "Depart from origin"
        case "arrive":
            return "Arrive at destination"
        case "roundabout" | "rotary":
            return "Enter roundabout"
        case "fork":
            return f"Take {modifier} fork".replace("  ", " ")
        case "merge":
            return "Merge"
        case "ramp":
            return f"Take {modifier} ramp".replace("  ", " ")
        case "on ramp":
            return "Take on ramp"
        case "off ramp":
            return "Take off ramp"
        case "end of road":
            return "End of road"
        case "new name":
            return "Continue onto"
        case _:
            return maneuver_type[:1].upper() + maneuver_type[1:]


def summarize_steps(steps: Sequence[dict[str, Any]]) -> list[RouteStep]:
    """Keep at most five steps: the first two and the last three."""
    significant = list(steps) if len(steps) <= MAX_ROUTE_STEPS else [*steps[:2], *steps[-3:]]
    summary: list[RouteStep] = []
    for step in significant:
        maneuver = step.get("maneuver") or {}
        summary.append(
            RouteStep(
                maneuver=describe_maneuver(str(maneuver.get("type", "")), maneuver.get("modifier")),
                road_name=step.get("name") or "Unnamed road",
                distance_text=format_distance(float(step.get("distance") or 0.0)),
            )
        )
    return summary


class RouteMaterializer:
    def __init__(
        self,
        store: DispatchStore,
        directions: DirectionsClient | None,
        display: MapDisplay,
        *,
        clock: Callable[[], datetime] = _utcnow,
        reenrich_threshold_km: float | None = None,
        display_timezone: str | None = None,
    ) -> None:
        self.store = store
        self.directions = directions
        self.display = display
        self.clock = clock
        self.reenrich_threshold_km = (
            settings.reenrich_threshold_km if reenrich_threshold_km is None else reenrich_threshold_km
        )
        # None renders arrival times in the host's local zone.
        zone_name = settings.display_timezone if display_timezone is None else display_timezone
        self.display_zone = ZoneInfo(zone_name) if zone_name else None
        self._generations: dict[int, int] = {}
        self._tasks: set[asyncio.Task] = set()

    def create(self, request: ServiceRequest, engineer: FieldEngineer) -> Route:
        """Build the route shell for an accepted request and add it to the active set."""
        route = Route(
            route_id=self.store.allocate_route_id(),
            request_id=request.request_id,
            fe_id=engineer.fe_id,
            fe_name=engineer.name,
            branch_id=request.branch_id,
            branch_name=request.branch_name,
            start_time=self.clock(),
        )
        self.store.routes.put(route.route_id, route)
        logger.info(f"Route {route.route_id} created: {engineer.name} -> {request.branch_name}")
        return route

    def _destination(self, route: Route) -> Coordinate | None:
        branch = self.store.branches.get(route.branch_id)
        if branch is not None:
            return branch.coordinate
        if route.request_id:
            request = self.store.requests.get(route.request_id)
            if request is not None:
                return request.coordinate
        return None

    async def enrich(self, route: Route) -> Route:
        """Refresh distance, duration, fare and ETA from the directions provider.

        Failures leave the previous values in place and are only logged; a
        response that arrives after the route completed, or after a newer
        enrichment was started, is discarded.
        """
        if self.directions is None:
            logger.debug(f"Directions provider not configured; route {route.route_id} keeps current values")
            return route

        engineer = self.store.engineers.get(route.fe_id)
        destination = self._destination(route)
        if engineer is None or destination is None:
            logger.warning(
                f"Cannot enrich route {route.route_id}: "
                f"engineer {route.fe_id} {'found' if engineer else 'missing'}, "
                f"branch {route.branch_id} {'found' if destination else 'missing'}"
            )
            return route

        generation = self._generations.get(route.route_id, 0) + 1
        self._generations[route.route_id] = generation
        origin = engineer.coordinate

        try:
            result = await self.directions.route(origin, destination)
        except DirectionsError as exc:
            logger.warning(f"Enrichment failed for route {route.route_id}: {exc}")
            return self.store.routes.get(route.route_id) or route
        except Exception:
            logger.exception(f"Unexpected error enriching route {route.route_id}")
            return self.store.routes.get(route.route_id) or route

        current = self.store.routes.get(route.route_id)
        if current is None:
            logger.debug(f"Discarding directions for route {route.route_id}: no longer active")
            self._generations.pop(route.route_id, None)
            return route
        if self._generations.get(route.route_id) != generation:
            logger.debug(f"Discarding superseded directions for route {route.route_id}")
            return current

        self._apply(current, result, origin)
        if self.store.selected_route_id == current.route_id:
            self.display.show_route(route_display_payload(current))
        return current

    def _apply(self, route: Route, result: DirectionsResult, origin: Coordinate) -> None:
        distance_value = round_half_up(result.distance_m / 1000, 1)
        duration_minutes = int(round_half_up(result.duration_s / 60))
        eta = self.clock() + timedelta(minutes=duration_minutes)

        route.distance_text = format_distance(result.distance_m)
        route.duration_text = f"{duration_minutes} min"
        route.fare_text = f"{settings.currency_symbol}{compute_fare(distance_value)}"
        route.estimated_arrival_text = eta.astimezone(self.display_zone).strftime("%H:%M")
        route.route_steps = summarize_steps(result.steps)
        if result.geometry is not None:
            route.geometry = result.geometry
        route.enriched_from = origin
        logger.info(
            f"Route {route.route_id} calculated: {route.distance_text}, {route.duration_text}, "
            f"{route.fare_text}, ETA: {route.estimated_arrival_text}"
        )

    def needs_reenrichment(self, route: Route, engineer: FieldEngineer) -> bool:
        if route.enriched_from is None:
            return True
        return distance_km(route.enriched_from, engineer.coordinate) > self.reenrich_threshold_km

    def schedule_enrichment(self, route: Route) -> Optional[asyncio.Task]:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop; enrichment of route {route.route_id} deferred")
            return None
        task = asyncio.create_task(self.enrich(route))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def forget(self, route_id: int) -> None:
        self._generations.pop(route_id, None)

    async def drain(self) -> None:
        """Wait for every scheduled enrichment to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.directions is not None:
            await self.directions.aclose()
