"""Eligibility of field engineers for pending service requests."""

from __future__ import annotations

from typing import Iterable, Sequence

from ...models.domain import (
    EngineerStatus,
    FieldEngineer,
    RankedCandidate,
    RequestStatus,
    Route,
    ServiceRequest,
)
from ..geospatial import distance_km


def find_candidates(request: ServiceRequest, engineers: Iterable[FieldEngineer]) -> list[RankedCandidate]:
    """Active engineers within the request's current radius, nearest first.

    Ties are broken by engineer id. An empty result means the request is
    still waiting for someone to come in range.
    """

    ranked: list[RankedCandidate] = []
    for engineer in engineers:
        if engineer.status is not EngineerStatus.ACTIVE:
            continue
        score = distance_km(engineer.coordinate, request.coordinate)
        if score <= request.current_radius_km:
            ranked.append(RankedCandidate(engineer=engineer, distance_km=score))
    ranked.sort(key=lambda candidate: (candidate.distance_km, candidate.engineer.fe_id))
    return ranked


def candidates_by_request(
    requests: Iterable[ServiceRequest], engineers: Sequence[FieldEngineer]
) -> dict[str, list[RankedCandidate]]:
    return {
        request.request_id: find_candidates(request, engineers)
        for request in requests
        if request.status is RequestStatus.PENDING
    }


def is_assigned(request: ServiceRequest, routes: Iterable[Route]) -> bool:
    """True when an active route already serves this request (or, for routes without a request link, its branch)."""
    for route in routes:
        if route.request_id is not None:
            if route.request_id == request.request_id:
                return True
        elif route.branch_id == request.branch_id:
            return True
    return False
