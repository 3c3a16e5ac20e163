"""Time-based expansion of pending requests' search radius."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Callable, Optional

from ...config import settings
from ...models.domain import RequestStatus, ServiceRequest
from ...persistence.store import DispatchStore
from ..lifecycle.requests import RequestLifecycle

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RadiusExpansionScheduler:
    """Grows each pending request's radius one step per interval, up to a cap.

    The radius only ever increases. A radius pushed by the server without a
    version is a floor the schedule may still grow past; a versioned one is
    left alone. Requests that left Pending are never touched.
    """

    def __init__(
        self,
        store: DispatchStore,
        lifecycle: RequestLifecycle | None = None,
        *,
        initial_km: float | None = None,
        step_km: float | None = None,
        interval_seconds: float | None = None,
        max_km: float | None = None,
        expiry_minutes: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.initial_km = settings.initial_radius_km if initial_km is None else initial_km
        self.step_km = settings.radius_step_km if step_km is None else step_km
        self.interval_seconds = settings.radius_step_seconds if interval_seconds is None else interval_seconds
        self.max_km = settings.max_radius_km if max_km is None else max_km
        self.expiry_minutes = settings.request_expiry_minutes if expiry_minutes is None else expiry_minutes
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    def radius_for(self, request: ServiceRequest, now: datetime) -> float:
        elapsed = max(0.0, (now - request.created_at).total_seconds())
        steps = math.floor(elapsed / self.interval_seconds)
        return min(self.max_km, self.initial_km + self.step_km * steps)

    def seed(self, request: ServiceRequest, now: datetime | None = None) -> None:
        """Set the starting radius of a freshly observed pending request."""
        if request.status is RequestStatus.PENDING and not request.radius_from_server:
            request.current_radius_km = max(request.current_radius_km, self.radius_for(request, now or self.clock()))

    def tick(self, now: datetime | None = None) -> list[str]:
        """Advance every pending request; returns the ids whose radius changed."""
        now = now or self.clock()
        changed: list[str] = []
        for request in self.store.requests:
            if request.status is not RequestStatus.PENDING:
                continue
            if self._expired(request, now):
                continue
            if request.radius_from_server:
                continue
            radius = self.radius_for(request, now)
            if radius > request.current_radius_km:
                request.current_radius_km = radius
                changed.append(request.request_id)
        if changed:
            logger.debug(f"Radius expanded for {len(changed)} pending request(s)")
        return changed

    def _expired(self, request: ServiceRequest, now: datetime) -> bool:
        if self.expiry_minutes is None or self.lifecycle is None:
            return False
        age_minutes = (now - request.created_at).total_seconds() / 60.0
        if age_minutes < self.expiry_minutes:
            return False
        return self.lifecycle.expire(request)

    async def run(self) -> None:
        while not self._stopped.is_set():
            self.tick()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopped.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopped.set()
        if self._task is not None:
            await self._task
            self._task = None
