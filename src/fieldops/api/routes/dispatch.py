"""Dispatch endpoints: operator commands, candidate queries and the event bridge."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ...errors import BackendCommandError, UnknownEntityError
from ...schemas.dispatch import (
    AcceptResponse,
    AcceptServiceRequest,
    BranchModel,
    CandidateModel,
    CandidatesResponse,
    CreateServiceRequest,
    FieldEngineerModel,
    InboundEvent,
    InboundEventAck,
    RouteDisplayModel,
    RouteModel,
    ServiceRequestModel,
    SnapshotResponse,
)
from ...services.dispatch.session import DispatchSession
from ...services.geospatial import circle_feature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


def get_session(request: Request) -> DispatchSession:
    session = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dispatch session is not running.",
        )
    return session


def _not_found(exc: UnknownEntityError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _backend_failed(exc: BackendCommandError) -> HTTPException:
    logger.warning(f"Backend command failed ({exc.status_code}): {exc}")
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Backend command failed: {exc}",
    )


@router.post("/requests", response_model=ServiceRequestModel, status_code=status.HTTP_201_CREATED)
async def request_service(
    payload: CreateServiceRequest,
    session: DispatchSession = Depends(get_session),
) -> ServiceRequestModel:
    try:
        created = await session.request_service(payload.branch_id)
    except UnknownEntityError as exc:
        raise _not_found(exc) from exc
    except BackendCommandError as exc:
        raise _backend_failed(exc) from exc
    return ServiceRequestModel.from_domain(created)


@router.get("/requests/{request_id}/candidates", response_model=CandidatesResponse)
async def list_candidates(request_id: str, session: DispatchSession = Depends(get_session)) -> CandidatesResponse:
    try:
        candidates = session.candidates(request_id)
    except UnknownEntityError as exc:
        raise _not_found(exc) from exc
    request = session.store.requests.get(request_id)
    return CandidatesResponse(
        request_id=request_id,
        radius_km=request.current_radius_km,
        candidates=[CandidateModel.from_domain(candidate) for candidate in candidates],
        search_area=circle_feature(
            request.coordinate,
            request.current_radius_km,
            properties={"request_id": request_id, "radius_km": request.current_radius_km},
        ),
    )


@router.post("/requests/{request_id}/accept", response_model=AcceptResponse)
async def accept_request(
    request_id: str,
    payload: AcceptServiceRequest,
    session: DispatchSession = Depends(get_session),
) -> AcceptResponse:
    try:
        result = await session.accept_request(request_id, payload.fe_id)
    except UnknownEntityError as exc:
        raise _not_found(exc) from exc
    except BackendCommandError as exc:
        raise _backend_failed(exc) from exc
    return AcceptResponse(
        applied=result.applied,
        request=ServiceRequestModel.from_domain(result.request),
        route=RouteModel.from_domain(result.route) if result.route is not None else None,
    )


@router.post("/routes/{route_id}/select", response_model=RouteModel)
async def select_route(route_id: int, session: DispatchSession = Depends(get_session)) -> RouteModel:
    try:
        route = await session.select_route_for_display(route_id)
    except UnknownEntityError as exc:
        raise _not_found(exc) from exc
    return RouteModel.from_domain(route)


@router.delete("/routes/selection", status_code=status.HTTP_204_NO_CONTENT)
async def clear_selection(session: DispatchSession = Depends(get_session)) -> None:
    session.clear_route_display()


@router.get("/snapshot", response_model=SnapshotResponse)
async def snapshot(session: DispatchSession = Depends(get_session)) -> SnapshotResponse:
    store = session.store
    current = getattr(session.display, "current", None)
    return SnapshotResponse(
        connected=store.connected,
        branches=[BranchModel.from_domain(branch) for branch in store.branches],
        engineers=[FieldEngineerModel.from_domain(engineer) for engineer in store.engineers],
        requests=[ServiceRequestModel.from_domain(request) for request in store.requests],
        routes=[RouteModel.from_domain(route) for route in store.routes],
        waiting={
            request_id: [candidate.engineer.fe_id for candidate in ranked]
            for request_id, ranked in session.waiting_requests().items()
        },
        selected_route_id=store.selected_route_id,
        display=RouteDisplayModel(**current) if current else None,
    )


@router.post("/events", response_model=InboundEventAck, status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(payload: InboundEvent, session: DispatchSession = Depends(get_session)) -> InboundEventAck:
    """Queue one hub event for reconciliation; merging happens on the session's consumer task."""
    try:
        event = session.ingest(payload.event, payload.payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return InboundEventAck(kind=event.kind.value, queued=session.hub.pending)
