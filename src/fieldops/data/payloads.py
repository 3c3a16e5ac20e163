"""Normalization of backend and hub payloads into domain fields.

The backend has been observed to vary field casing (``branchId`` vs
``BranchId``) and naming (``currentLatitude`` vs ``lat``), so every lookup
here is case-insensitive and tries the known aliases in order. Parsers return
only the fields present in the payload so callers can apply partial updates.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from ..errors import MalformedEventError
from ..models.domain import (
    Branch,
    Coordinate,
    EngineerStatus,
    FieldEngineer,
    RequestStatus,
    Route,
    RouteStatus,
    RouteStep,
    ServiceRequest,
)

_MISSING = object()

VERSION_KEYS = ("version", "sequence", "seq", "rowVersion", "sequenceNumber")


class PayloadView:
    """Case-insensitive, alias-aware read access to a JSON object."""

    def __init__(self, payload: Mapping[str, Any]) -> None:
        if not isinstance(payload, Mapping):
            raise MalformedEventError(f"Expected a JSON object, got {type(payload).__name__}.")
        self._fields = {str(key).lower(): value for key, value in payload.items()}

    def get(self, *names: str, default: Any = None) -> Any:
        for name in names:
            head, _, rest = name.partition(".")
            value = self._fields.get(head.lower(), _MISSING)
            if value is _MISSING or value is None:
                continue
            if rest:
                if isinstance(value, Mapping):
                    nested = PayloadView(value).get(rest, default=_MISSING)
                    if nested is not _MISSING:
                        return nested
                continue
            return value
        return default

    def has(self, *names: str) -> bool:
        return self.get(*names, default=_MISSING) is not _MISSING


def coerce_identity(value: Any) -> Optional[str]:
    """Canonical string form of a backend id (``7``, ``7.0`` and ``"7"`` are the same id)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    text = str(value).strip()
    return text or None


def coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).replace(",", "")) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def coerce_int(value: Any) -> Optional[int]:
    number = coerce_float(value)
    if number is None:
        return None
    return int(number)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (``Z`` suffix allowed) or epoch milliseconds; naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def payload_version(payload: Mapping[str, Any]) -> Optional[int]:
    """Server sequence stamp carried by a payload, if any."""
    return coerce_int(PayloadView(payload).get(*VERSION_KEYS))


def _parse_status(enum_type, value: Any, fields: dict[str, Any]) -> None:
    if value is None:
        return
    try:
        fields["status"] = enum_type.parse(value)
    except ValueError as exc:
        raise MalformedEventError(str(exc)) from exc


def _coordinate_fields(view: PayloadView, lat_names: tuple[str, ...], lng_names: tuple[str, ...], fields: dict[str, Any]) -> None:
    lat = coerce_float(view.get(*lat_names))
    lng = coerce_float(view.get(*lng_names))
    if lat is not None:
        fields["lat"] = lat
    if lng is not None:
        fields["lng"] = lng


def merge_coordinate(current: Optional[Coordinate], fields: Mapping[str, Any]) -> Optional[Coordinate]:
    """Combine a partial ``lat``/``lng`` update with an existing coordinate."""
    lat = fields.get("lat", current.lat if current else None)
    lng = fields.get("lng", current.lng if current else None)
    if lat is None or lng is None:
        return current
    return Coordinate(lat=lat, lng=lng)


# Branches ------------------------------------------------------------------


def branch_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    view = PayloadView(payload)
    fields: dict[str, Any] = {}
    branch_id = coerce_identity(view.get("branchId", "id", "_id"))
    if branch_id is None:
        raise MalformedEventError("Branch payload is missing its id.")
    fields["branch_id"] = branch_id
    for attr, names in (("name", ("name",)), ("address", ("address", "location")), ("image", ("image",))):
        value = view.get(*names)
        if value is not None:
            fields[attr] = str(value)
    _coordinate_fields(view, ("latitude", "lat"), ("longitude", "lng"), fields)
    return fields


def build_branch(fields: Mapping[str, Any]) -> Branch:
    coordinate = merge_coordinate(None, fields)
    if coordinate is None:
        raise MalformedEventError(f"Branch '{fields.get('branch_id')}' has no coordinate.")
    return Branch(
        branch_id=fields["branch_id"],
        name=fields.get("name") or f"Branch {fields['branch_id']}",
        coordinate=coordinate,
        address=fields.get("address"),
        image=fields.get("image"),
    )


# Field engineers -----------------------------------------------------------


def engineer_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    view = PayloadView(payload)
    fields: dict[str, Any] = {}
    fe_id = coerce_identity(view.get("feId", "fieldEngineerId", "id"))
    if fe_id is None:
        raise MalformedEventError("Field engineer payload is missing its id.")
    fields["fe_id"] = fe_id
    name = view.get("name", "feName")
    if name is not None:
        fields["name"] = str(name)
    _coordinate_fields(view, ("currentLatitude", "latitude", "lat"), ("currentLongitude", "longitude", "lng"), fields)
    _parse_status(EngineerStatus, view.get("status"), fields)
    updated = parse_timestamp(view.get("updatedAt", "lastUpdated"))
    if updated is not None:
        fields["last_updated"] = updated
    token = view.get("fcmToken")
    if token is not None:
        fields["fcm_token"] = str(token)
    return fields


def build_engineer(fields: Mapping[str, Any]) -> FieldEngineer:
    coordinate = merge_coordinate(None, fields)
    if coordinate is None:
        raise MalformedEventError(f"Field engineer '{fields.get('fe_id')}' has no coordinate.")
    return FieldEngineer(
        fe_id=fields["fe_id"],
        name=fields.get("name") or f"Engineer {fields['fe_id']}",
        coordinate=coordinate,
        status=fields.get("status", EngineerStatus.ACTIVE),
        last_updated=fields.get("last_updated"),
        fcm_token=fields.get("fcm_token"),
    )


# Service requests ----------------------------------------------------------


def request_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    view = PayloadView(payload)
    fields: dict[str, Any] = {}
    request_id = coerce_identity(view.get("requestId", "serviceRequestId", "id"))
    if request_id is None:
        raise MalformedEventError("Service request payload is missing its id.")
    fields["request_id"] = request_id
    branch_id = coerce_identity(view.get("branchId", "branch.id"))
    if branch_id is not None:
        fields["branch_id"] = branch_id
    branch_name = view.get("branchName", "branch.name")
    if branch_name is not None:
        fields["branch_name"] = str(branch_name)
    _coordinate_fields(view, ("lat", "latitude", "branch.latitude"), ("lng", "longitude", "branch.longitude"), fields)
    _parse_status(RequestStatus, view.get("status"), fields)
    for attr, names in (("created_at", ("createdAt",)), ("accepted_at", ("acceptedAt",))):
        value = parse_timestamp(view.get(*names))
        if value is not None:
            fields[attr] = value
    accepted_by = coerce_identity(view.get("acceptedByFeId", "fieldEngineerId", "fieldEngineer.id"))
    if accepted_by is not None:
        fields["accepted_by_fe_id"] = accepted_by
    accepted_name = view.get("acceptedByFeName", "fieldEngineerName", "fieldEngineer.name")
    if accepted_name is not None:
        fields["accepted_by_fe_name"] = str(accepted_name)
    radius = coerce_float(view.get("currentRadiusKm"))
    if radius is not None and radius >= 0:
        fields["current_radius_km"] = radius
    version = payload_version(payload)
    if version is not None:
        fields["version"] = version
    return fields


def build_request(fields: Mapping[str, Any], *, now: Optional[datetime] = None) -> ServiceRequest:
    if "branch_id" not in fields:
        raise MalformedEventError(f"Service request '{fields['request_id']}' has no branch id.")
    coordinate = merge_coordinate(None, fields)
    if coordinate is None:
        raise MalformedEventError(f"Service request '{fields['request_id']}' has no coordinate.")
    return ServiceRequest(
        request_id=fields["request_id"],
        branch_id=fields["branch_id"],
        branch_name=fields.get("branch_name") or "Unknown Branch",
        coordinate=coordinate,
        created_at=fields.get("created_at") or now or datetime.now(timezone.utc),
        status=fields.get("status", RequestStatus.PENDING),
        current_radius_km=fields.get("current_radius_km", 0.0),
        radius_from_server="current_radius_km" in fields and "version" in fields,
        accepted_at=fields.get("accepted_at"),
        accepted_by_fe_id=fields.get("accepted_by_fe_id"),
        accepted_by_fe_name=fields.get("accepted_by_fe_name"),
        version=fields.get("version"),
    )


# Routes --------------------------------------------------------------------


def _route_steps(value: Any) -> list[RouteStep]:
    steps: list[RouteStep] = []
    if not isinstance(value, list):
        return steps
    for item in value:
        if not isinstance(item, Mapping):
            continue
        view = PayloadView(item)
        steps.append(
            RouteStep(
                maneuver=str(view.get("maneuver", default="")),
                road_name=str(view.get("roadName", "road_name", default="Unnamed road")),
                distance_text=str(view.get("distance", "distanceText", default="")),
            )
        )
    return steps


def route_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    view = PayloadView(payload)
    fields: dict[str, Any] = {}
    route_id = coerce_int(view.get("routeId", "id"))
    if route_id is None:
        raise MalformedEventError("Route payload is missing its id.")
    fields["route_id"] = route_id
    request_id = coerce_identity(view.get("serviceRequestId", "requestId"))
    if request_id is not None:
        fields["request_id"] = request_id
    fe_id = coerce_identity(view.get("feId", "fieldEngineerId"))
    if fe_id is not None:
        fields["fe_id"] = fe_id
    branch_id = coerce_identity(view.get("branchId"))
    if branch_id is not None:
        fields["branch_id"] = branch_id
    for attr, names in (
        ("fe_name", ("feName", "fieldEngineerName")),
        ("branch_name", ("branchName",)),
        ("distance_text", ("distance",)),
        ("duration_text", ("duration",)),
        ("fare_text", ("price", "fare")),
        ("estimated_arrival_text", ("estimatedArrival",)),
    ):
        value = view.get(*names)
        if value is not None and str(value).strip():
            fields[attr] = str(value)
    start_time = parse_timestamp(view.get("startTime"))
    if start_time is not None:
        fields["start_time"] = start_time
    _parse_status(RouteStatus, view.get("status"), fields)
    if view.has("routeSteps"):
        fields["route_steps"] = _route_steps(view.get("routeSteps"))
    version = payload_version(payload)
    if version is not None:
        fields["version"] = version
    return fields


def build_route(fields: Mapping[str, Any], *, now: Optional[datetime] = None) -> Route:
    missing = [name for name in ("fe_id", "branch_id") if name not in fields]
    if missing:
        raise MalformedEventError(f"Route '{fields['route_id']}' is missing {', '.join(missing)}.")
    route = Route(
        route_id=fields["route_id"],
        request_id=fields.get("request_id"),
        fe_id=fields["fe_id"],
        fe_name=fields.get("fe_name") or f"Engineer {fields['fe_id']}",
        branch_id=fields["branch_id"],
        branch_name=fields.get("branch_name") or f"Branch {fields['branch_id']}",
        start_time=fields.get("start_time") or now or datetime.now(timezone.utc),
    )
    for attr in ("distance_text", "duration_text", "fare_text", "estimated_arrival_text", "status", "route_steps", "version"):
        if attr in fields:
            setattr(route, attr, fields[attr])
    return route
