"""Dispatch request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.domain import (
    Branch,
    FieldEngineer,
    RankedCandidate,
    Route,
    ServiceRequest,
)


class CoordinateModel(BaseModel):
    lat: float
    lng: float


class BranchModel(BaseModel):
    branch_id: str
    name: str
    coordinate: CoordinateModel
    address: Optional[str] = None
    image: Optional[str] = None

    @classmethod
    def from_domain(cls, branch: Branch) -> "BranchModel":
        return cls(
            branch_id=branch.branch_id,
            name=branch.name,
            coordinate=CoordinateModel(lat=branch.coordinate.lat, lng=branch.coordinate.lng),
            address=branch.address,
            image=branch.image,
        )


class FieldEngineerModel(BaseModel):
    fe_id: str
    name: str
    coordinate: CoordinateModel
    status: str
    last_updated: Optional[datetime] = None

    @classmethod
    def from_domain(cls, engineer: FieldEngineer) -> "FieldEngineerModel":
        return cls(
            fe_id=engineer.fe_id,
            name=engineer.name,
            coordinate=CoordinateModel(lat=engineer.coordinate.lat, lng=engineer.coordinate.lng),
            status=engineer.status.value,
            last_updated=engineer.last_updated,
        )


class ServiceRequestModel(BaseModel):
    request_id: str
    branch_id: str
    branch_name: str
    coordinate: CoordinateModel
    created_at: datetime
    status: str
    current_radius_km: float
    accepted_at: Optional[datetime] = None
    accepted_by_fe_id: Optional[str] = None
    accepted_by_fe_name: Optional[str] = None
    confirmed: bool = True

    @classmethod
    def from_domain(cls, request: ServiceRequest) -> "ServiceRequestModel":
        return cls(
            request_id=request.request_id,
            branch_id=request.branch_id,
            branch_name=request.branch_name,
            coordinate=CoordinateModel(lat=request.coordinate.lat, lng=request.coordinate.lng),
            created_at=request.created_at,
            status=request.status.value,
            current_radius_km=request.current_radius_km,
            accepted_at=request.accepted_at,
            accepted_by_fe_id=request.accepted_by_fe_id,
            accepted_by_fe_name=request.accepted_by_fe_name,
            confirmed=request.confirmed,
        )


class RouteStepModel(BaseModel):
    maneuver: str
    road_name: str
    distance: str


class RouteModel(BaseModel):
    route_id: int
    request_id: Optional[str] = None
    fe_id: str
    fe_name: str
    branch_id: str
    branch_name: str
    start_time: datetime
    distance: str
    duration: str
    fare: str
    estimated_arrival: str
    status: str
    route_steps: List[RouteStepModel] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, route: Route) -> "RouteModel":
        return cls(
            route_id=route.route_id,
            request_id=route.request_id,
            fe_id=route.fe_id,
            fe_name=route.fe_name,
            branch_id=route.branch_id,
            branch_name=route.branch_name,
            start_time=route.start_time,
            distance=route.distance_text,
            duration=route.duration_text,
            fare=route.fare_text,
            estimated_arrival=route.estimated_arrival_text,
            status=route.status.value,
            route_steps=[
                RouteStepModel(maneuver=step.maneuver, road_name=step.road_name, distance=step.distance_text)
                for step in route.route_steps
            ],
        )


class CandidateModel(BaseModel):
    fe_id: str
    name: str
    distance_km: float
    coordinate: CoordinateModel

    @classmethod
    def from_domain(cls, candidate: RankedCandidate) -> "CandidateModel":
        engineer = candidate.engineer
        return cls(
            fe_id=engineer.fe_id,
            name=engineer.name,
            distance_km=round(candidate.distance_km, 3),
            coordinate=CoordinateModel(lat=engineer.coordinate.lat, lng=engineer.coordinate.lng),
        )


class CandidatesResponse(BaseModel):
    request_id: str
    radius_km: float
    candidates: List[CandidateModel]
    search_area: Dict[str, Any] = Field(..., description="GeoJSON circle of the current search radius.")


class CreateServiceRequest(BaseModel):
    branch_id: str = Field(..., min_length=1, description="Branch that needs an engineer.")


class AcceptServiceRequest(BaseModel):
    fe_id: str = Field(..., min_length=1, description="Engineer chosen from the candidate list.")


class AcceptResponse(BaseModel):
    applied: bool = Field(..., description="False when the request had already left Pending.")
    request: ServiceRequestModel
    route: Optional[RouteModel] = None


class InboundEvent(BaseModel):
    """One real-time event forwarded by the hub transport."""

    event: str = Field(..., description="Event kind or hub method name, e.g. 'ReceiveRouteUpdate'.")
    payload: Any = None


class InboundEventAck(BaseModel):
    kind: str
    queued: int


class RouteDisplayModel(BaseModel):
    route_id: int
    route_geometry: Dict[str, Any]
    paint_style: Dict[str, Any]


class SnapshotResponse(BaseModel):
    connected: bool
    branches: List[BranchModel]
    engineers: List[FieldEngineerModel]
    requests: List[ServiceRequestModel]
    routes: List[RouteModel]
    waiting: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Pending request id -> eligible engineer ids, nearest first.",
    )
    selected_route_id: Optional[int] = None
    display: Optional[RouteDisplayModel] = None
