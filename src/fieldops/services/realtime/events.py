"""Real-time event kinds delivered by the notification hub."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    FIELD_ENGINEER_UPDATE = "fieldEngineerUpdate"
    NEW_FIELD_ENGINEER = "newFieldEngineer"
    BRANCH_UPDATE = "branchUpdate"
    NEW_BRANCH = "newBranch"
    NEW_SERVICE_REQUEST = "newServiceRequest"
    SERVICE_REQUEST_UPDATE = "serviceRequestUpdate"
    NEW_ROUTE = "newRoute"
    ROUTE_UPDATE = "routeUpdate"
    ROUTE_COMPLETED = "routeCompleted"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"

    @classmethod
    def parse(cls, name: str) -> "EventKind":
        """Resolve an event or hub method name (``ReceiveRouteUpdate``, ``routeUpdate``)."""
        key = name.strip()
        key = HUB_METHODS.get(key, key)
        for member in cls:
            if member.value.lower() == key.lower():
                return member
        raise ValueError(f"Unknown event kind: {name!r}")


# Hub method names as broadcast by the backend.
HUB_METHODS = {
    "ReceiveFieldEngineerUpdate": "fieldEngineerUpdate",
    "ReceiveNewFieldEngineer": "newFieldEngineer",
    "ReceiveBranchUpdate": "branchUpdate",
    "ReceiveNewBranch": "newBranch",
    "ReceiveNewServiceRequest": "newServiceRequest",
    "ReceiveServiceRequestUpdate": "serviceRequestUpdate",
    "ReceiveNewRoute": "newRoute",
    "ReceiveRouteUpdate": "routeUpdate",
    "ReceiveRouteCompleted": "routeCompleted",
    "CoordinateUpdate": "fieldEngineerUpdate",
}


@dataclass(frozen=True, slots=True)
class Event:
    kind: EventKind
    payload: Any = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
