import asyncio
from datetime import datetime, timezone

import pytest

from fieldops.errors import BackendCommandError, UnknownEntityError
from fieldops.models.domain import (
    Branch,
    Coordinate,
    EngineerStatus,
    FieldEngineer,
    RequestStatus,
    ServiceRequest,
)
from fieldops.services.dispatch.session import DispatchSession
from fieldops.services.display import LoggingMapDisplay
from fieldops.services.realtime.events import EventKind
from fieldops.services.routing.directions_client import DirectionsResult

NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
BRANCH = Branch(branch_id="10", name="Ermita", coordinate=Coordinate(14.5995, 120.9842))
LINE = {"type": "LineString", "coordinates": [[120.98, 14.60], [120.9842, 14.5995]]}


class DummyBackend:
    def __init__(self, fail_accept=False, created_reply=None):
        self.fail_accept = fail_accept
        self.created_reply = created_reply
        self.accepted = []
        self.created = []
        self.closed = False

    async def fetch_branches(self):
        return [Branch(branch_id=BRANCH.branch_id, name=BRANCH.name, coordinate=BRANCH.coordinate)]

    async def fetch_engineers(self):
        return [FieldEngineer(fe_id="1", name="Juan", coordinate=Coordinate(14.60, 120.98))]

    async def fetch_requests(self):
        return [
            ServiceRequest(
                request_id="7",
                branch_id="10",
                branch_name="Ermita",
                coordinate=BRANCH.coordinate,
                created_at=NOW,
            )
        ]

    async def create_request(self, branch_id):
        self.created.append(branch_id)
        if self.created_reply is not None:
            return self.created_reply
        return {"id": 21, "branchId": int(branch_id), "status": "pending"}

    async def accept_request(self, request_id, fe_id):
        await asyncio.sleep(0)
        if self.fail_accept:
            raise BackendCommandError("backend down", status_code=503)
        self.accepted.append((request_id, fe_id))
        return {"id": request_id, "status": "accepted"}

    async def aclose(self):
        self.closed = True


class DummyDirections:
    def __init__(self):
        self.calls = 0

    async def route(self, origin, destination):
        self.calls += 1
        return DirectionsResult(distance_m=3200.0, duration_s=480.0, geometry=LINE)

    async def aclose(self):
        pass


async def _session(backend=None, directions=None, **kwargs) -> DispatchSession:
    session = DispatchSession(
        backend=backend or DummyBackend(),
        directions=directions,
        display=LoggingMapDisplay(),
        clock=lambda: NOW,
        **kwargs,
    )
    await session.load_initial_data()
    session.store.engineers.put("2", FieldEngineer(fe_id="2", name="Maria", coordinate=Coordinate(14.59, 120.98)))
    return session


@pytest.mark.asyncio
async def test_load_initial_data_seeds_radius():
    session = await _session()

    request = session.store.requests.get("7")
    assert len(session.store.branches) == 1
    assert request.current_radius_km == 1.0
    assert [candidate.engineer.fe_id for candidate in session.candidates("7")] == ["1"]


@pytest.mark.asyncio
async def test_request_service_copies_branch_details():
    backend = DummyBackend()
    session = await _session(backend)

    request = await session.request_service("10")

    assert backend.created == ["10"]
    assert request.request_id == "21"
    assert request.branch_name == "Ermita"
    assert request.coordinate == BRANCH.coordinate
    assert request.status is RequestStatus.PENDING
    assert request.current_radius_km == 1.0


@pytest.mark.asyncio
async def test_request_service_without_backend_is_local():
    session = DispatchSession(clock=lambda: NOW)
    session.store.branches.put(BRANCH.branch_id, BRANCH)

    request = await session.request_service("10")

    assert request.request_id.startswith("local-")
    assert request.request_id in session.store.requests


@pytest.mark.asyncio
async def test_create_reply_without_id_is_a_backend_failure():
    session = await _session(DummyBackend(created_reply={"status": "pending"}))

    with pytest.raises(BackendCommandError):
        await session.request_service("10")

    assert [request.request_id for request in session.store.requests] == ["7"]


@pytest.mark.asyncio
async def test_unknown_ids_raise():
    session = await _session()

    with pytest.raises(UnknownEntityError):
        await session.request_service("999")
    with pytest.raises(UnknownEntityError):
        await session.accept_request("7", "404")
    with pytest.raises(UnknownEntityError):
        await session.select_route_for_display(99)


@pytest.mark.asyncio
async def test_accept_confirms_with_backend_and_enriches():
    backend = DummyBackend()
    directions = DummyDirections()
    session = await _session(backend, directions)

    result = await session.accept_request("7", "1")
    await session.materializer.drain()

    assert result.applied
    assert backend.accepted == [("7", "1")]
    assert result.request.confirmed
    assert result.route.fare_text == "₱93"
    assert session.store.engineers.get("1").status is EngineerStatus.ON_ASSIGNMENT
    assert session.candidates("7") == []


@pytest.mark.asyncio
async def test_concurrent_accepts_create_one_route():
    backend = DummyBackend()
    session = await _session(backend)
    session.store.requests.get("7").current_radius_km = 5.0

    first, second = await asyncio.gather(
        session.accept_request("7", "1"),
        session.accept_request("7", "2"),
    )

    assert [first.applied, second.applied].count(True) == 1
    assert len(session.store.routes) == 1
    assert len(backend.accepted) == 1


@pytest.mark.asyncio
async def test_failed_accept_is_rolled_back():
    session = await _session(DummyBackend(fail_accept=True))

    with pytest.raises(BackendCommandError):
        await session.accept_request("7", "1")

    request = session.store.requests.get("7")
    assert request.status is RequestStatus.PENDING
    assert request.accepted_by_fe_id is None
    assert session.store.engineers.get("1").status is EngineerStatus.ACTIVE
    assert len(session.store.routes) == 0


@pytest.mark.asyncio
async def test_failed_accept_kept_when_rollback_disabled():
    session = await _session(DummyBackend(fail_accept=True), rollback_failed_accepts=False)

    with pytest.raises(BackendCommandError):
        await session.accept_request("7", "1")

    request = session.store.requests.get("7")
    assert request.status is RequestStatus.ACCEPTED
    assert not request.confirmed
    assert len(session.store.routes) == 1


@pytest.mark.asyncio
async def test_select_route_pushes_display_and_clear_removes_it():
    session = await _session(directions=DummyDirections())
    result = await session.accept_request("7", "1")

    route = await session.select_route_for_display(result.route.route_id)

    assert route.distance_text == "3.2 km"
    assert session.display.current["route_id"] == route.route_id
    assert session.display.current["paint_style"]["line-color"] == "#3887BE"
    assert session.selected_route is route

    session.clear_route_display()
    assert session.display.current is None
    assert session.store.selected_route_id is None


@pytest.mark.asyncio
async def test_server_route_for_pending_request_hides_candidates():
    session = await _session()
    assert list(session.waiting_requests()) == ["7"]

    session.ingest("ReceiveNewRoute", {"routeId": 5, "serviceRequestId": 7, "fieldEngineerId": 1, "branchId": 10})
    await session.hub.drain()

    assert session.candidates("7") == []
    assert session.waiting_requests() == {}


@pytest.mark.asyncio
async def test_cancelled_request_has_no_candidates():
    session = await _session()

    request = session.cancel_request("7")

    assert request.status is RequestStatus.CANCELLED
    assert session.candidates("7") == []
    assert not (await session.accept_request("7", "1")).applied


@pytest.mark.asyncio
async def test_ingest_goes_through_hub():
    session = await _session()

    session.ingest("ReceiveRouteCompleted", {"serviceRequestId": 7})
    session.ingest(EventKind.CONNECTED)
    await session.hub.drain()

    assert session.store.connected


@pytest.mark.asyncio
async def test_close_releases_collaborators():
    backend = DummyBackend()
    session = await _session(backend)
    await session.start()

    await session.close()

    assert backend.closed
    assert len(session.store.requests) == 0
