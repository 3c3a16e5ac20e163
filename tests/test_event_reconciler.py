from datetime import datetime, timedelta, timezone

import pytest

from fieldops.models.domain import (
    Coordinate,
    EngineerStatus,
    FieldEngineer,
    RequestStatus,
    RouteStatus,
)
from fieldops.persistence.store import DispatchStore
from fieldops.services.display import LoggingMapDisplay
from fieldops.services.lifecycle.requests import RequestLifecycle
from fieldops.services.matching.eligibility import find_candidates
from fieldops.services.realtime.events import Event, EventKind
from fieldops.services.realtime.hub import EventHub
from fieldops.services.realtime.reconciler import EventReconciler
from fieldops.services.routing.directions_client import DirectionsResult
from fieldops.services.routing.materializer import RouteMaterializer
from fieldops.services.scheduling.radius import RadiusExpansionScheduler

NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

REQUEST = {"id": 7, "branchId": 10, "branchName": "Ermita", "lat": 14.5995, "lng": 120.9842, "status": "pending"}
ENGINEER = {"id": 1, "name": "Juan", "currentLatitude": 14.6, "currentLongitude": 120.98, "status": "Active"}


class DummyDirections:
    def __init__(self):
        self.calls = 0

    async def route(self, origin, destination):
        self.calls += 1
        return DirectionsResult(distance_m=1000.0, duration_s=120.0, geometry=None)

    async def aclose(self):
        pass


def _setup(directions=None):
    store = DispatchStore()
    display = LoggingMapDisplay()
    materializer = RouteMaterializer(store, directions, display, clock=lambda: NOW)
    lifecycle = RequestLifecycle(store, materializer, clock=lambda: NOW)
    scheduler = RadiusExpansionScheduler(store, lifecycle, clock=lambda: NOW)
    reconciler = EventReconciler(store, materializer, lifecycle, scheduler, clock=lambda: NOW)
    return store, display, lifecycle, reconciler


def _apply(reconciler, kind, payload):
    return reconciler.apply(Event(kind=kind, payload=payload))


def test_duplicate_new_request_is_stored_once():
    store, _, _, reconciler = _setup()

    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, REQUEST)
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, dict(REQUEST))

    assert len(store.requests) == 1
    request = store.requests.get("7")
    assert request.status is RequestStatus.PENDING
    assert request.current_radius_km == 1.0


def test_new_request_borrows_branch_name_and_coordinate():
    store, _, _, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_BRANCH, {"id": 10, "name": "Ermita", "latitude": 14.5995, "longitude": 120.9842})

    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, {"id": 7, "branchId": 10})

    request = store.requests.get("7")
    assert request.branch_name == "Ermita"
    assert request.coordinate == Coordinate(14.5995, 120.9842)


def test_older_versioned_update_is_ignored():
    store, _, _, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, {**REQUEST, "version": 2})
    _apply(
        reconciler,
        EventKind.SERVICE_REQUEST_UPDATE,
        {"id": 7, "status": "accepted", "fieldEngineerId": 1, "version": 3},
    )

    applied = _apply(reconciler, EventKind.SERVICE_REQUEST_UPDATE, {"id": 7, "status": "pending", "version": 2})
    _apply(reconciler, EventKind.SERVICE_REQUEST_UPDATE, {"id": 7, "status": "accepted", "fieldEngineerId": 1, "version": 3})

    request = store.requests.get("7")
    assert not applied
    assert request.status is RequestStatus.ACCEPTED
    assert request.accepted_by_fe_id == "1"
    assert request.version == 3


def test_replayed_creation_does_not_undo_local_accept():
    store, _, lifecycle, reconciler = _setup()
    created = {**REQUEST, "version": 1}
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, created)
    _apply(reconciler, EventKind.NEW_FIELD_ENGINEER, ENGINEER)
    lifecycle.accept(store.requests.get("7"), store.engineers.get("1"))

    applied = _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, dict(created))
    lifecycle.confirm_accept("7")

    request = store.requests.get("7")
    assert not applied
    assert request.status is RequestStatus.ACCEPTED
    assert request.accepted_by_fe_id == "1"
    assert request.confirmed
    assert len(store.routes) == 1
    assert store.engineers.get("1").status is EngineerStatus.ON_ASSIGNMENT


def test_newer_pending_status_reverts_tentative_accept():
    store, _, lifecycle, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, {**REQUEST, "version": 1})
    _apply(reconciler, EventKind.NEW_FIELD_ENGINEER, ENGINEER)
    lifecycle.accept(store.requests.get("7"), store.engineers.get("1"))

    assert _apply(reconciler, EventKind.SERVICE_REQUEST_UPDATE, {"id": 7, "status": "pending", "version": 2})

    request = store.requests.get("7")
    assert request.status is RequestStatus.PENDING
    assert request.accepted_by_fe_id is None
    assert not lifecycle.is_tentative("7")
    assert len(store.routes) == 0
    assert store.engineers.get("1").status is EngineerStatus.ACTIVE


def test_unversioned_update_never_moves_back_to_pending():
    store, _, _, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, REQUEST)
    _apply(reconciler, EventKind.SERVICE_REQUEST_UPDATE, {"id": 7, "status": "accepted"})

    assert not _apply(reconciler, EventKind.SERVICE_REQUEST_UPDATE, {"id": 7, "status": "pending"})
    assert not _apply(reconciler, EventKind.SERVICE_REQUEST_UPDATE, {"id": 7, "status": "cancelled"})
    assert store.requests.get("7").status is RequestStatus.ACCEPTED


def test_versioned_server_radius_wins_over_local_schedule():
    store, _, _, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, REQUEST)

    _apply(reconciler, EventKind.SERVICE_REQUEST_UPDATE, {"id": 7, "currentRadiusKm": 4, "version": 2})
    reconciler.scheduler.tick(NOW + timedelta(minutes=9))

    request = store.requests.get("7")
    assert request.current_radius_km == 4.0
    assert request.radius_from_server


def test_unversioned_server_radius_is_only_a_floor():
    store, _, _, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, {**REQUEST, "currentRadiusKm": 0})
    _apply(reconciler, EventKind.NEW_FIELD_ENGINEER, {**ENGINEER, "currentLatitude": 14.5986, "currentLongitude": 120.9842})
    request = store.requests.get("7")
    assert request.current_radius_km == 1.0
    assert not request.radius_from_server

    _apply(reconciler, EventKind.SERVICE_REQUEST_UPDATE, {"id": 7, "currentRadiusKm": 3})
    assert request.current_radius_km == 3.0
    reconciler.scheduler.tick(NOW + timedelta(minutes=5))

    assert request.current_radius_km == 6.0
    assert [candidate.engineer.fe_id for candidate in find_candidates(request, store.engineers)] == ["1"]


def test_server_outcome_supersedes_tentative_accept():
    store, _, lifecycle, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, REQUEST)
    _apply(reconciler, EventKind.NEW_FIELD_ENGINEER, ENGINEER)
    _apply(reconciler, EventKind.NEW_FIELD_ENGINEER, {**ENGINEER, "id": 2, "name": "Maria"})
    lifecycle.accept(store.requests.get("7"), store.engineers.get("1"))

    _apply(
        reconciler,
        EventKind.SERVICE_REQUEST_UPDATE,
        {"id": 7, "status": "accepted", "fieldEngineerId": 2, "fieldEngineerName": "Maria"},
    )

    request = store.requests.get("7")
    assert request.accepted_by_fe_id == "2"
    assert request.confirmed
    assert store.engineers.get("1").status is EngineerStatus.ACTIVE
    assert len(store.routes) == 0


def test_engineer_updates_merge_partial_fields():
    store, _, _, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_FIELD_ENGINEER, ENGINEER)

    _apply(reconciler, EventKind.FIELD_ENGINEER_UPDATE, {"feId": "1", "currentLatitude": 14.61})
    _apply(reconciler, EventKind.FIELD_ENGINEER_UPDATE, {"FieldEngineerId": 1, "Status": "inactive"})

    engineer = store.engineers.get("1")
    assert engineer.coordinate == Coordinate(14.61, 120.98)
    assert engineer.name == "Juan"
    assert engineer.status is EngineerStatus.INACTIVE


@pytest.mark.parametrize(
    "kind, payload",
    [
        (EventKind.FIELD_ENGINEER_UPDATE, "garbage"),
        (EventKind.FIELD_ENGINEER_UPDATE, {"name": "no id"}),
        (EventKind.NEW_SERVICE_REQUEST, {"id": 9}),
        (EventKind.SERVICE_REQUEST_UPDATE, {"id": 7, "status": "bogus"}),
        (EventKind.ROUTE_UPDATE, {"status": "arriving"}),
        (EventKind.ROUTE_COMPLETED, {}),
    ],
)
def test_malformed_events_are_dropped(kind, payload):
    store, _, _, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, REQUEST)

    assert _apply(reconciler, kind, payload) is False
    assert store.requests.get("7").status is RequestStatus.PENDING
    assert len(store.engineers) == 0


def test_new_route_replaces_local_twin_and_advances_counter():
    store, _, lifecycle, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, REQUEST)
    _apply(reconciler, EventKind.NEW_FIELD_ENGINEER, ENGINEER)
    local = lifecycle.accept(store.requests.get("7"), store.engineers.get("1")).route
    local.fare_text = "₱60"
    store.selected_route_id = local.route_id

    _apply(
        reconciler,
        EventKind.NEW_ROUTE,
        {"routeId": 42, "serviceRequestId": 7, "fieldEngineerId": 1, "feName": "Juan", "branchId": 10},
    )
    _apply(reconciler, EventKind.NEW_ROUTE, {"routeId": 42, "fieldEngineerId": 1, "branchId": 10})

    assert [route.route_id for route in store.routes] == [42]
    assert store.routes.get(42).fare_text == "₱60"
    assert store.selected_route_id == 42
    assert store.allocate_route_id() == 43


def test_route_update_redraws_selected_route_on_status_change():
    store, display, _, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_ROUTE, {"routeId": 3, "fieldEngineerId": 1, "branchId": 10})
    store.selected_route_id = 3

    _apply(reconciler, EventKind.ROUTE_UPDATE, {"routeId": 3, "status": "Delayed", "version": 2})
    stale = _apply(reconciler, EventKind.ROUTE_UPDATE, {"routeId": 3, "status": "arriving", "version": 1})

    assert not stale
    assert store.routes.get(3).status is RouteStatus.DELAYED
    assert display.current["paint_style"]["line-color"] == "#FF6B6B"


@pytest.mark.parametrize(
    "payload",
    [{"routeId": 3}, {"serviceRequestId": 7}, {"id": 7, "branchId": 10}, 3, "3"],
)
def test_route_completed_removes_route_and_clears_display(payload):
    store, display, _, reconciler = _setup()
    _apply(
        reconciler,
        EventKind.NEW_ROUTE,
        {"routeId": 3, "serviceRequestId": 7, "fieldEngineerId": 1, "branchId": 10},
    )
    store.selected_route_id = 3
    display.show_route({"route_id": 3})

    assert _apply(reconciler, EventKind.ROUTE_COMPLETED, payload)

    assert len(store.routes) == 0
    assert store.selected_route_id is None
    assert display.current is None


def test_liveness_events_keep_entity_state():
    store, _, _, reconciler = _setup()
    _apply(reconciler, EventKind.NEW_FIELD_ENGINEER, ENGINEER)

    _apply(reconciler, EventKind.CONNECTED, None)
    assert store.connected
    _apply(reconciler, EventKind.ERROR, "socket closed")
    assert not store.connected
    assert len(store.engineers) == 1


@pytest.mark.asyncio
async def test_engineer_move_triggers_reenrichment():
    directions = DummyDirections()
    store, _, lifecycle, reconciler = _setup(directions)
    _apply(reconciler, EventKind.NEW_SERVICE_REQUEST, REQUEST)
    _apply(reconciler, EventKind.NEW_FIELD_ENGINEER, ENGINEER)
    route = lifecycle.accept(store.requests.get("7"), store.engineers.get("1")).route
    route.enriched_from = store.engineers.get("1").coordinate

    _apply(reconciler, EventKind.FIELD_ENGINEER_UPDATE, {"id": 1, "currentLatitude": 14.6001})
    await reconciler.materializer.drain()
    assert directions.calls == 0

    _apply(reconciler, EventKind.FIELD_ENGINEER_UPDATE, {"id": 1, "currentLatitude": 14.61})
    await reconciler.materializer.drain()
    assert directions.calls == 1
    assert route.distance_text == "1.0 km"


@pytest.mark.asyncio
async def test_hub_delivers_events_to_reconciler():
    store, _, _, reconciler = _setup()
    hub = EventHub()
    hub.subscribe_all(reconciler.apply)

    hub.publish("ReceiveNewServiceRequest", REQUEST)
    hub.publish("CoordinateUpdate", ENGINEER)
    handled = await hub.drain()

    assert handled == 2
    assert "7" in store.requests
    assert "1" in store.engineers


@pytest.mark.asyncio
async def test_hub_survives_failing_handler():
    hub = EventHub()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    async def recorder(event):
        seen.append(event.kind)

    hub.subscribe(EventKind.CONNECTED, broken)
    hub.subscribe(EventKind.CONNECTED, recorder)
    hub.publish(EventKind.CONNECTED)
    await hub.drain()

    assert seen == [EventKind.CONNECTED]


def test_unknown_event_name_is_rejected():
    with pytest.raises(ValueError):
        EventKind.parse("ReceiveSomethingElse")
