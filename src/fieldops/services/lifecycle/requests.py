"""Service request state machine and idempotent acceptance."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from ...models.domain import (
    EngineerStatus,
    FieldEngineer,
    RequestStatus,
    Route,
    ServiceRequest,
)
from ...persistence.store import DispatchStore
from ..routing.materializer import RouteMaterializer

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class AcceptResult:
    request: ServiceRequest
    route: Optional[Route]
    applied: bool


@dataclass(slots=True)
class _TentativeAccept:
    fe_id: str
    prior_engineer_status: EngineerStatus
    created_route_id: Optional[int]


class RequestLifecycle:
    """Pending -> Accepted | Cancelled | Expired; every exit from Pending is terminal here."""

    def __init__(
        self,
        store: DispatchStore,
        materializer: RouteMaterializer,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.materializer = materializer
        self.clock = clock
        self._tentative: dict[str, _TentativeAccept] = {}

    def accept(self, request: ServiceRequest, engineer: FieldEngineer) -> AcceptResult:
        """Assign ``engineer`` to ``request`` and create its route.

        The distance is not re-validated; the operator picked the engineer
        from the current candidate list. Accepting a request that already
        left Pending returns it and its route unchanged.
        """
        if request.status is not RequestStatus.PENDING:
            logger.debug(
                f"Ignoring accept for request {request.request_id}: already {request.status.value}"
            )
            return AcceptResult(request, self.store.route_for_request(request.request_id), applied=False)

        prior_status = engineer.status
        request.status = RequestStatus.ACCEPTED
        request.accepted_at = self.clock()
        request.accepted_by_fe_id = engineer.fe_id
        request.accepted_by_fe_name = engineer.name
        request.confirmed = False
        engineer.status = EngineerStatus.ON_ASSIGNMENT

        # A server-pushed route may already exist for this request.
        route = self.store.route_for_request(request.request_id)
        created_route_id: Optional[int] = None
        if route is None:
            route = self.materializer.create(request, engineer)
            created_route_id = route.route_id

        self._tentative[request.request_id] = _TentativeAccept(
            fe_id=engineer.fe_id,
            prior_engineer_status=prior_status,
            created_route_id=created_route_id,
        )
        logger.info(f"Request {request.request_id} accepted by {engineer.name} ({engineer.fe_id})")
        return AcceptResult(request, route, applied=True)

    def confirm_accept(self, request_id: str) -> None:
        self._tentative.pop(request_id, None)
        request = self.store.requests.get(request_id)
        if request is not None and request.status is RequestStatus.ACCEPTED:
            request.confirmed = True

    def revert_accept(self, request_id: str) -> Optional[Route]:
        """Undo an unconfirmed optimistic accept; returns the removed route, if any.

        Nothing is reverted once the server has confirmed the acceptance
        through the event stream.
        """
        tentative = self._tentative.pop(request_id, None)
        request = self.store.requests.get(request_id)
        if tentative is None or request is None:
            return None
        if request.status is not RequestStatus.ACCEPTED or request.confirmed:
            return None

        request.status = RequestStatus.PENDING
        request.accepted_at = None
        request.accepted_by_fe_id = None
        request.accepted_by_fe_name = None
        request.confirmed = True

        engineer = self.store.engineers.get(tentative.fe_id)
        if engineer is not None and engineer.status is EngineerStatus.ON_ASSIGNMENT:
            engineer.status = tentative.prior_engineer_status

        removed: Optional[Route] = None
        if tentative.created_route_id is not None:
            removed = self.store.routes.pop(tentative.created_route_id)
            self.materializer.forget(tentative.created_route_id)
        logger.warning(f"Reverted optimistic accept of request {request_id}")
        return removed

    def supersede(self, request_id: str, winner_fe_id: Optional[str]) -> Optional[Route]:
        """Settle a tentative accept against the server's authoritative outcome.

        When the server assigned someone else (or ended the request), the
        locally chosen engineer is released and the locally created route is
        dropped. Returns the dropped route, if any.
        """
        tentative = self._tentative.pop(request_id, None)
        if tentative is None or tentative.fe_id == winner_fe_id:
            return None
        engineer = self.store.engineers.get(tentative.fe_id)
        if engineer is not None and engineer.status is EngineerStatus.ON_ASSIGNMENT:
            engineer.status = tentative.prior_engineer_status
        removed: Optional[Route] = None
        if tentative.created_route_id is not None:
            removed = self.store.routes.pop(tentative.created_route_id)
            self.materializer.forget(tentative.created_route_id)
        logger.info(
            f"Request {request_id} settled by server for engineer {winner_fe_id}; "
            f"released local choice {tentative.fe_id}"
        )
        return removed

    def is_tentative(self, request_id: str) -> bool:
        return request_id in self._tentative

    def cancel(self, request: ServiceRequest) -> bool:
        return self._finish(request, RequestStatus.CANCELLED)

    def expire(self, request: ServiceRequest) -> bool:
        return self._finish(request, RequestStatus.EXPIRED)

    def _finish(self, request: ServiceRequest, status: RequestStatus) -> bool:
        if request.status is not RequestStatus.PENDING:
            return False
        request.status = status
        logger.info(f"Request {request.request_id} {status.value}")
        return True
