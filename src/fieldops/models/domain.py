"""Domain models for branches, engineers, service requests and routes."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

CALCULATING = "Calculating…"

_STATUS_NOISE = re.compile(r"[^a-z]")


def _status_key(value: str) -> str:
    return _STATUS_NOISE.sub("", value.strip().lower())


class _ParsableStatus(str, Enum):
    """Closed status set with a single canonicalizing parse at the boundary."""

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {}

    @classmethod
    def parse(cls, value: Any) -> "_ParsableStatus":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Invalid {cls.__name__} value: {value!r}")
        key = _status_key(value)
        key = cls._aliases().get(key, key)
        for member in cls:
            if _status_key(member.value) == key or member.name.lower().replace("_", "") == key:
                return member
        raise ValueError(f"Unknown {cls.__name__} value: {value!r}")


class EngineerStatus(_ParsableStatus):
    ACTIVE = "Active"
    ON_ASSIGNMENT = "On Assignment"
    INACTIVE = "Inactive"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {"assigned": "onassignment", "busy": "onassignment", "offline": "inactive"}


class RequestStatus(_ParsableStatus):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {"canceled": "cancelled", "assigned": "accepted"}

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class RouteStatus(_ParsableStatus):
    IN_PROGRESS = "in-progress"
    DELAYED = "delayed"
    ARRIVING = "arriving"


@dataclass(frozen=True, slots=True)
class Coordinate:
    lat: float
    lng: float


@dataclass(slots=True)
class Branch:
    """A physical site that can request field-engineer service."""

    branch_id: str
    name: str
    coordinate: Coordinate
    address: Optional[str] = None
    image: Optional[str] = None


@dataclass(slots=True)
class FieldEngineer:
    """A mobile technician tracked by live coordinate and status."""

    fe_id: str
    name: str
    coordinate: Coordinate
    status: EngineerStatus = EngineerStatus.ACTIVE
    last_updated: Optional[datetime] = None
    fcm_token: Optional[str] = None


@dataclass(slots=True)
class ServiceRequest:
    """A need for an engineer at a branch, searched for within an expanding radius.

    Branch name and coordinate are copied at creation so the request stays
    self-describing if the branch is later edited.
    """

    request_id: str
    branch_id: str
    branch_name: str
    coordinate: Coordinate
    created_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    current_radius_km: float = 0.0
    accepted_at: Optional[datetime] = None
    accepted_by_fe_id: Optional[str] = None
    accepted_by_fe_name: Optional[str] = None
    version: Optional[int] = None
    confirmed: bool = True
    # A versioned server radius owns the value; local expansion stops.
    radius_from_server: bool = False


@dataclass(slots=True)
class RouteStep:
    maneuver: str
    road_name: str
    distance_text: str


@dataclass(slots=True)
class Route:
    """An engineer's in-progress trip to an accepted request's branch."""

    route_id: int
    request_id: Optional[str]
    fe_id: str
    fe_name: str
    branch_id: str
    branch_name: str
    start_time: datetime
    distance_text: str = CALCULATING
    duration_text: str = CALCULATING
    fare_text: str = CALCULATING
    estimated_arrival_text: str = CALCULATING
    status: RouteStatus = RouteStatus.IN_PROGRESS
    route_steps: list[RouteStep] = field(default_factory=list)
    geometry: Optional[dict] = None
    enriched_from: Optional[Coordinate] = None
    version: Optional[int] = None


@dataclass(frozen=True, slots=True)
class RankedCandidate:
    engineer: FieldEngineer
    distance_km: float
