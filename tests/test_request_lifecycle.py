from datetime import datetime, timezone

from fieldops.models.domain import (
    CALCULATING,
    Coordinate,
    EngineerStatus,
    FieldEngineer,
    RequestStatus,
    ServiceRequest,
)
from fieldops.persistence.store import DispatchStore
from fieldops.services.display import LoggingMapDisplay
from fieldops.services.lifecycle.requests import RequestLifecycle
from fieldops.services.routing.materializer import RouteMaterializer

NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def _setup():
    store = DispatchStore()
    materializer = RouteMaterializer(store, None, LoggingMapDisplay(), clock=lambda: NOW)
    lifecycle = RequestLifecycle(store, materializer, clock=lambda: NOW)
    request = ServiceRequest(
        request_id="7",
        branch_id="10",
        branch_name="Ermita",
        coordinate=Coordinate(14.5995, 120.9842),
        created_at=NOW,
        current_radius_km=3.0,
    )
    store.requests.put(request.request_id, request)
    for fe_id in ("1", "2"):
        store.engineers.put(fe_id, FieldEngineer(fe_id=fe_id, name=f"FE {fe_id}", coordinate=Coordinate(14.6, 120.98)))
    return store, lifecycle, request


def test_accept_assigns_engineer_and_creates_route():
    store, lifecycle, request = _setup()
    engineer = store.engineers.get("1")

    result = lifecycle.accept(request, engineer)

    assert result.applied
    assert request.status is RequestStatus.ACCEPTED
    assert request.accepted_at == NOW
    assert request.accepted_by_fe_id == "1"
    assert request.accepted_by_fe_name == "FE 1"
    assert engineer.status is EngineerStatus.ON_ASSIGNMENT
    assert result.route is not None
    assert result.route.request_id == "7"
    assert result.route.distance_text == CALCULATING
    assert len(store.routes) == 1


def test_second_accept_is_a_no_op():
    store, lifecycle, request = _setup()

    first = lifecycle.accept(request, store.engineers.get("1"))
    second = lifecycle.accept(request, store.engineers.get("2"))

    assert not second.applied
    assert second.route is first.route
    assert request.accepted_by_fe_id == "1"
    assert store.engineers.get("2").status is EngineerStatus.ACTIVE
    assert len(store.routes) == 1


def test_route_ids_come_from_counter_not_request_id():
    store, lifecycle, request = _setup()
    result = lifecycle.accept(request, store.engineers.get("1"))
    assert result.route.route_id == 1


def test_revert_restores_pending_and_removes_route():
    store, lifecycle, request = _setup()
    engineer = store.engineers.get("1")
    result = lifecycle.accept(request, engineer)

    removed = lifecycle.revert_accept("7")

    assert removed is result.route
    assert request.status is RequestStatus.PENDING
    assert request.accepted_by_fe_id is None
    assert request.accepted_at is None
    assert engineer.status is EngineerStatus.ACTIVE
    assert len(store.routes) == 0


def test_revert_after_confirm_does_nothing():
    store, lifecycle, request = _setup()
    lifecycle.accept(request, store.engineers.get("1"))
    lifecycle.confirm_accept("7")

    assert lifecycle.revert_accept("7") is None
    assert request.status is RequestStatus.ACCEPTED
    assert request.confirmed
    assert len(store.routes) == 1


def test_supersede_releases_local_choice():
    store, lifecycle, request = _setup()
    lifecycle.accept(request, store.engineers.get("1"))

    dropped = lifecycle.supersede("7", winner_fe_id="2")

    assert dropped is not None
    assert store.engineers.get("1").status is EngineerStatus.ACTIVE
    assert not lifecycle.is_tentative("7")
    assert len(store.routes) == 0


def test_supersede_by_same_engineer_keeps_route():
    store, lifecycle, request = _setup()
    lifecycle.accept(request, store.engineers.get("1"))

    assert lifecycle.supersede("7", winner_fe_id="1") is None
    assert len(store.routes) == 1


def test_cancel_and_expire_only_leave_pending():
    store, lifecycle, request = _setup()

    assert lifecycle.cancel(request)
    assert request.status is RequestStatus.CANCELLED
    assert not lifecycle.expire(request)
    assert request.status is RequestStatus.CANCELLED
    assert not lifecycle.accept(request, store.engineers.get("1")).applied
