"""Merge of inbound real-time events into the dispatch store.

The hub delivers at least once with no ordering guarantee, so every merge is
an upsert keyed by entity identity. Partial payloads only overwrite the
fields they carry. Stale request and route updates are rejected using the
server sequence stamp when the stamps differ, and otherwise by refusing to
move a request's status backwards.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from ...data.payloads import (
    PayloadView,
    branch_fields,
    build_branch,
    build_engineer,
    build_request,
    build_route,
    coerce_identity,
    coerce_int,
    engineer_fields,
    merge_coordinate,
    request_fields,
    route_fields,
)
from ...errors import MalformedEventError
from ...models.domain import CALCULATING, RequestStatus, Route, ServiceRequest
from ...persistence.store import DispatchStore
from ..display import route_display_payload
from ..lifecycle.requests import RequestLifecycle
from ..routing.materializer import RouteMaterializer
from ..scheduling.radius import RadiusExpansionScheduler
from .events import Event, EventKind

logger = logging.getLogger(__name__)

STATUS_RANK = {
    RequestStatus.PENDING: 0,
    RequestStatus.ACCEPTED: 1,
    RequestStatus.CANCELLED: 1,
    RequestStatus.EXPIRED: 1,
}

_ROUTE_ATTRS = (
    "request_id",
    "fe_id",
    "fe_name",
    "branch_id",
    "branch_name",
    "start_time",
    "distance_text",
    "duration_text",
    "fare_text",
    "estimated_arrival_text",
    "status",
    "route_steps",
    "version",
)
_TEXT_ATTRS = ("distance_text", "duration_text", "fare_text", "estimated_arrival_text")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _carry_enrichment(target: Route, source: Route) -> None:
    """Keep values already computed for ``source`` where ``target`` has none yet."""
    for attr in _TEXT_ATTRS:
        if getattr(target, attr) == CALCULATING:
            setattr(target, attr, getattr(source, attr))
    if not target.route_steps:
        target.route_steps = list(source.route_steps)
    if target.geometry is None:
        target.geometry = source.geometry
    if target.enriched_from is None:
        target.enriched_from = source.enriched_from


def _is_older(incoming: Optional[int], stored: Optional[int]) -> bool:
    return incoming is not None and stored is not None and incoming < stored


class EventReconciler:
    def __init__(
        self,
        store: DispatchStore,
        materializer: RouteMaterializer,
        lifecycle: RequestLifecycle | None = None,
        scheduler: RadiusExpansionScheduler | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.materializer = materializer
        self.lifecycle = lifecycle
        self.scheduler = scheduler
        self.clock = clock
        self._merges: dict[EventKind, Callable[[Any], bool]] = {
            EventKind.FIELD_ENGINEER_UPDATE: self._merge_engineer,
            EventKind.NEW_FIELD_ENGINEER: self._merge_engineer,
            EventKind.BRANCH_UPDATE: self._merge_branch,
            EventKind.NEW_BRANCH: self._merge_branch,
            EventKind.NEW_SERVICE_REQUEST: self._merge_request,
            EventKind.SERVICE_REQUEST_UPDATE: self._merge_request,
            EventKind.NEW_ROUTE: self._merge_new_route,
            EventKind.ROUTE_UPDATE: self._merge_route_update,
            EventKind.ROUTE_COMPLETED: self._complete_route,
            EventKind.CONNECTED: lambda _payload: self._set_connected(True),
            EventKind.DISCONNECTED: lambda _payload: self._set_connected(False),
            EventKind.ERROR: self._connection_error,
        }

    def apply(self, event: Event) -> bool:
        """Merge one event; returns False when it was dropped or changed nothing."""
        merge = self._merges[event.kind]
        try:
            return merge(event.payload)
        except (MalformedEventError, TypeError, ValueError, KeyError, AttributeError) as exc:
            logger.warning(f"Dropping malformed {event.kind.value} event: {exc}")
            return False

    # Connection ------------------------------------------------------------

    def _set_connected(self, connected: bool) -> bool:
        changed = self.store.connected != connected
        self.store.connected = connected
        logger.info(f"Real-time hub {'connected' if connected else 'disconnected'}")
        return changed

    def _connection_error(self, payload: Any) -> bool:
        logger.error(f"Real-time hub error: {payload}")
        return self._set_connected(False)

    # Engineers and branches ------------------------------------------------

    def _merge_engineer(self, payload: Any) -> bool:
        fields = engineer_fields(payload)
        engineer = self.store.engineers.get(fields["fe_id"])
        if engineer is None:
            engineer = build_engineer(fields)
            self.store.engineers.put(engineer.fe_id, engineer)
            logger.debug(f"Engineer {engineer.fe_id} added")
            return True

        moved_to = merge_coordinate(engineer.coordinate, fields)
        moved = moved_to != engineer.coordinate
        engineer.coordinate = moved_to
        for attr in ("name", "status", "last_updated", "fcm_token"):
            if attr in fields:
                setattr(engineer, attr, fields[attr])

        if moved:
            route = self.store.route_for_engineer(engineer.fe_id)
            if route is not None and self.materializer.needs_reenrichment(route, engineer):
                self.materializer.schedule_enrichment(route)
        return True

    def _merge_branch(self, payload: Any) -> bool:
        fields = branch_fields(payload)
        branch = self.store.branches.get(fields["branch_id"])
        if branch is None:
            branch = build_branch(fields)
            self.store.branches.put(branch.branch_id, branch)
            logger.debug(f"Branch {branch.branch_id} added")
            return True
        branch.coordinate = merge_coordinate(branch.coordinate, fields)
        for attr in ("name", "address", "image"):
            if attr in fields:
                setattr(branch, attr, fields[attr])
        return True

    # Service requests ------------------------------------------------------

    def _merge_request(self, payload: Any) -> bool:
        fields = request_fields(payload)
        request = self.store.requests.get(fields["request_id"])
        if request is None:
            request = build_request(self._fill_from_branch(fields), now=self.clock())
            self.store.requests.put(request.request_id, request)
            if self.scheduler is not None:
                self.scheduler.seed(request)
            logger.info(f"Service request {request.request_id} for {request.branch_name} added ({request.status.value})")
            return True

        if self._is_stale_request(request, fields):
            logger.info(
                f"Ignoring stale update for request {request.request_id} "
                f"({fields.get('status', request.status).value} v{fields.get('version')} "
                f"after {request.status.value} v{request.version})"
            )
            return False

        for attr in ("branch_id", "branch_name", "created_at", "accepted_at", "accepted_by_fe_id", "accepted_by_fe_name", "version"):
            if attr in fields:
                setattr(request, attr, fields[attr])
        request.coordinate = merge_coordinate(request.coordinate, fields)

        if "current_radius_km" in fields:
            incoming = fields["current_radius_km"]
            if "version" in fields:
                request.current_radius_km = incoming
                request.radius_from_server = True
            elif request.status.is_terminal:
                request.current_radius_km = incoming
            else:
                # Unversioned values are a floor under the local schedule.
                request.current_radius_km = max(request.current_radius_km, incoming)

        if "status" in fields:
            status = fields["status"]
            dropped = self._settle_tentative(request, status)
            request.status = status
            request.confirmed = True
            if dropped is not None:
                self._after_route_removed(dropped)
        return True

    def _settle_tentative(self, request: ServiceRequest, status: RequestStatus) -> Optional[Route]:
        """Resolve a local accept still awaiting the backend against a server status."""
        if self.lifecycle is None or not self.lifecycle.is_tentative(request.request_id):
            return None
        if status is RequestStatus.PENDING:
            return self.lifecycle.revert_accept(request.request_id)
        winner = request.accepted_by_fe_id if status is RequestStatus.ACCEPTED else None
        return self.lifecycle.supersede(request.request_id, winner)

    def _is_stale_request(self, request: ServiceRequest, fields: Mapping[str, Any]) -> bool:
        incoming_version = fields.get("version")
        if incoming_version is not None and request.version is not None and incoming_version != request.version:
            return incoming_version < request.version
        status = fields.get("status")
        if status is None:
            return False
        if STATUS_RANK[status] < STATUS_RANK[request.status]:
            return True
        # Terminal states are final once confirmed; an unconfirmed local accept yields to the server.
        if request.status.is_terminal and status is not request.status:
            return request.confirmed
        return False

    def _fill_from_branch(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Requests copy their branch's name and coordinate when the payload omits them."""
        branch = self.store.branches.get(fields.get("branch_id"))
        if branch is not None:
            fields.setdefault("branch_name", branch.name)
            fields.setdefault("lat", branch.coordinate.lat)
            fields.setdefault("lng", branch.coordinate.lng)
        return fields

    # Routes ----------------------------------------------------------------

    def _merge_new_route(self, payload: Any) -> bool:
        fields = route_fields(payload)
        if fields["route_id"] in self.store.routes:
            return self._merge_route_update(payload)

        route = build_route(fields, now=self.clock())
        local = self._local_twin(route)
        if local is not None:
            self.store.routes.pop(local.route_id)
            self.materializer.forget(local.route_id)
            _carry_enrichment(route, local)
            if self.store.selected_route_id == local.route_id:
                self.store.selected_route_id = route.route_id
            logger.info(f"Server route {route.route_id} replaces local route {local.route_id}")

        self.store.routes.put(route.route_id, route)
        self.store.observe_route_id(route.route_id)
        logger.info(f"Route {route.route_id} added: {route.fe_name} -> {route.branch_name}")
        self.materializer.schedule_enrichment(route)
        return True

    def _local_twin(self, route: Route) -> Optional[Route]:
        """Locally created route serving the same assignment as a server route."""
        for candidate in self.store.routes:
            if candidate.route_id == route.route_id:
                continue
            if route.request_id is not None and candidate.request_id == route.request_id:
                return candidate
            if route.request_id is None and candidate.fe_id == route.fe_id and candidate.branch_id == route.branch_id:
                return candidate
        return None

    def _merge_route_update(self, payload: Any) -> bool:
        fields = route_fields(payload)
        route = self.store.routes.get(fields["route_id"])
        if route is None:
            try:
                route = build_route(fields, now=self.clock())
            except MalformedEventError:
                logger.warning(f"Dropping update for unknown route {fields['route_id']}")
                return False
            self.store.routes.put(route.route_id, route)
            self.store.observe_route_id(route.route_id)
            self.materializer.schedule_enrichment(route)
            return True

        if _is_older(fields.get("version"), route.version):
            logger.info(f"Ignoring stale update for route {route.route_id}")
            return False

        previous_status = route.status
        for attr in _ROUTE_ATTRS:
            if attr in fields:
                setattr(route, attr, fields[attr])
        if route.status is not previous_status and self.store.selected_route_id == route.route_id:
            self.materializer.display.show_route(route_display_payload(route))
        return True

    def _complete_route(self, payload: Any) -> bool:
        route = self._find_completed_route(payload)
        if route is None:
            logger.debug(f"Route completion for unknown route: {payload}")
            return False
        self.store.routes.pop(route.route_id)
        self._after_route_removed(route)
        logger.info(f"Route complete: {route.fe_name} has arrived at {route.branch_name}")
        return True

    def _find_completed_route(self, payload: Any) -> Optional[Route]:
        if isinstance(payload, (int, str)) and not isinstance(payload, bool):
            route_id = coerce_int(payload)
            return self.store.routes.get(route_id) if route_id is not None else None
        view = PayloadView(payload)

        route_id = coerce_int(view.get("routeId"))
        if route_id is not None:
            return self.store.routes.get(route_id)

        request_id = coerce_identity(view.get("serviceRequestId", "requestId"))
        if request_id is not None:
            return self.store.route_for_request(request_id)

        identity = coerce_identity(view.get("id"))
        branch_id = coerce_identity(view.get("branchId"))
        if branch_id is not None:
            # Payload is the completed service request.
            if identity is not None:
                route = self.store.route_for_request(identity)
                if route is not None:
                    return route
            for route in self.store.routes:
                if route.branch_id == branch_id:
                    return route
            return None

        if identity is None:
            raise MalformedEventError("Route completion payload has no route, request or branch id.")
        route_id = coerce_int(identity)
        return self.store.routes.get(route_id) if route_id is not None else None

    def _after_route_removed(self, route: Route) -> None:
        self.materializer.forget(route.route_id)
        if self.store.selected_route_id == route.route_id:
            self.store.selected_route_id = None
            self.materializer.display.clear_route()
