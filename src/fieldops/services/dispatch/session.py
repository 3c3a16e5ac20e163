"""Operator session tying the roster, lifecycle, routes and event stream together."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ...config import settings
from ...data.backend_client import BackendClient
from ...data.payloads import build_request, request_fields
from ...errors import BackendCommandError, MalformedEventError, UnknownEntityError
from ...models.domain import (
    Branch,
    FieldEngineer,
    RankedCandidate,
    RequestStatus,
    Route,
    ServiceRequest,
)
from ...persistence.store import DispatchStore
from ..display import LoggingMapDisplay, MapDisplay, route_display_payload
from ..lifecycle.requests import AcceptResult, RequestLifecycle
from ..matching.eligibility import candidates_by_request, find_candidates, is_assigned
from ..realtime.events import Event, EventKind
from ..realtime.hub import EventHub
from ..realtime.reconciler import EventReconciler
from ..routing.directions_client import DirectionsClient
from ..routing.materializer import RouteMaterializer
from ..scheduling.radius import RadiusExpansionScheduler

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchSession:
    """Everything one operator session owns, from construction to ``close()``.

    Collaborators (backend, directions provider, map display) are optional;
    without a backend the session runs purely on local state.
    """

    def __init__(
        self,
        backend: BackendClient | None = None,
        directions: DirectionsClient | None = None,
        display: MapDisplay | None = None,
        *,
        store: DispatchStore | None = None,
        hub: EventHub | None = None,
        clock: Callable[[], datetime] = _utcnow,
        rollback_failed_accepts: bool | None = None,
    ) -> None:
        self.backend = backend
        self.store = store or DispatchStore()
        self.display = display or LoggingMapDisplay()
        self.hub = hub or EventHub()
        self.clock = clock
        self.rollback_failed_accepts = (
            settings.rollback_failed_accepts if rollback_failed_accepts is None else rollback_failed_accepts
        )
        self.materializer = RouteMaterializer(self.store, directions, self.display, clock=clock)
        self.lifecycle = RequestLifecycle(self.store, self.materializer, clock=clock)
        self.scheduler = RadiusExpansionScheduler(self.store, self.lifecycle, clock=clock)
        self.reconciler = EventReconciler(
            self.store, self.materializer, self.lifecycle, self.scheduler, clock=clock
        )
        self.hub.subscribe_all(self.reconciler.apply)

    # Lifecycle ---------------------------------------------------------------

    async def load_initial_data(self) -> dict[str, int]:
        """Fetch the roster from the backend.

        Branches are overwritten (read-through cache). Engineers and requests
        already delivered by the event stream are kept, since the stream may
        be newer than the snapshot.
        """
        if self.backend is None:
            return {"branches": 0, "engineers": 0, "requests": 0}

        branches, engineers, requests = await asyncio.gather(
            self.backend.fetch_branches(),
            self.backend.fetch_engineers(),
            self.backend.fetch_requests(),
        )
        for branch in branches:
            self.store.branches.put(branch.branch_id, branch)
        for engineer in engineers:
            if engineer.fe_id not in self.store.engineers:
                self.store.engineers.put(engineer.fe_id, engineer)
        for request in requests:
            if request.request_id not in self.store.requests:
                self.store.requests.put(request.request_id, request)
                self.scheduler.seed(request)
        counts = {"branches": len(branches), "engineers": len(engineers), "requests": len(requests)}
        logger.info(f"Initial roster loaded: {counts}")
        return counts

    async def start(self) -> None:
        self.hub.start()
        self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.hub.stop()
        await self.materializer.aclose()
        if self.backend is not None:
            await self.backend.aclose()
        self.store.clear()

    # Inbound commands --------------------------------------------------------

    def _branch(self, branch_id: str) -> Branch:
        branch = self.store.branches.get(branch_id)
        if branch is None:
            raise UnknownEntityError("Branch", branch_id)
        return branch

    def _request(self, request_id: str) -> ServiceRequest:
        request = self.store.requests.get(request_id)
        if request is None:
            raise UnknownEntityError("Service request", request_id)
        return request

    def _engineer(self, fe_id: str) -> FieldEngineer:
        engineer = self.store.engineers.get(fe_id)
        if engineer is None:
            raise UnknownEntityError("Field engineer", fe_id)
        return engineer

    def _route(self, route_id: int) -> Route:
        route = self.store.routes.get(route_id)
        if route is None:
            raise UnknownEntityError("Route", route_id)
        return route

    async def request_service(self, branch_id: str) -> ServiceRequest:
        """Create a pending request for a branch, copying the branch's name and coordinate."""
        branch = self._branch(branch_id)
        now = self.clock()

        created: dict[str, Any] | None = None
        if self.backend is not None:
            created = await self.backend.create_request(branch.branch_id)

        fields: dict[str, Any] = {}
        if created:
            try:
                fields = request_fields(created)
            except MalformedEventError as exc:
                raise BackendCommandError(f"Backend returned an unusable service request: {exc}") from exc
        else:
            fields["request_id"] = f"local-{uuid.uuid4().hex[:12]}"
        fields.setdefault("branch_id", branch.branch_id)
        fields.setdefault("branch_name", branch.name)
        fields.setdefault("lat", branch.coordinate.lat)
        fields.setdefault("lng", branch.coordinate.lng)
        fields.setdefault("created_at", now)
        fields.setdefault("status", RequestStatus.PENDING)

        # The hub may have broadcast this request while the command was in flight.
        existing = self.store.requests.get(fields["request_id"])
        if existing is not None:
            return existing

        request = build_request(fields, now=now)
        self.store.requests.put(request.request_id, request)
        self.scheduler.seed(request, now)
        logger.info(f"Service request {request.request_id} created for {branch.name}")
        return request

    async def accept_request(self, request_id: str, fe_id: str) -> AcceptResult:
        """Assign an engineer, create the route and confirm with the backend.

        A backend failure is raised as BackendCommandError; when rollback is
        enabled the optimistic change is reverted first.
        """
        request = self._request(request_id)
        engineer = self._engineer(fe_id)

        result = self.lifecycle.accept(request, engineer)
        if not result.applied:
            return result
        if result.route is not None:
            self.materializer.schedule_enrichment(result.route)

        if self.backend is None:
            self.lifecycle.confirm_accept(request_id)
            return result

        try:
            await self.backend.accept_request(request_id, fe_id)
        except BackendCommandError:
            if self.rollback_failed_accepts:
                removed = self.lifecycle.revert_accept(request_id)
                if removed is not None and self.store.selected_route_id == removed.route_id:
                    self.clear_route_display()
            else:
                logger.warning(f"Accept of request {request_id} failed on the backend; local state kept")
            raise

        self.lifecycle.confirm_accept(request_id)
        return result

    async def select_route_for_display(self, route_id: int) -> Route:
        route = self._route(route_id)
        self.store.selected_route_id = route_id
        if route.geometry is not None:
            self.display.show_route(route_display_payload(route))
        return await self.materializer.enrich(route)

    def clear_route_display(self) -> None:
        self.store.selected_route_id = None
        self.display.clear_route()

    def cancel_request(self, request_id: str) -> ServiceRequest:
        request = self._request(request_id)
        self.lifecycle.cancel(request)
        return request

    # Queries -----------------------------------------------------------------

    def candidates(self, request_id: str) -> list[RankedCandidate]:
        request = self._request(request_id)
        if request.status is not RequestStatus.PENDING or is_assigned(request, self.store.routes):
            return []
        return find_candidates(request, self.store.engineers.all())

    def waiting_requests(self) -> dict[str, list[RankedCandidate]]:
        """Candidates for every pending request that no route serves yet."""
        unassigned = [
            request for request in self.store.pending_requests() if not is_assigned(request, self.store.routes)
        ]
        return candidates_by_request(unassigned, self.store.engineers.all())

    def ingest(self, kind: EventKind | str, payload: Any = None) -> Event:
        """Hand an event received from the transport to the hub."""
        return self.hub.publish(kind, payload)

    @property
    def selected_route(self) -> Optional[Route]:
        if self.store.selected_route_id is None:
            return None
        return self.store.routes.get(self.store.selected_route_id)
