"""Async HTTP client for the turn-by-turn directions provider."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from ...config import settings
from ...errors import DirectionsError
from ...models.domain import Coordinate

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DirectionsResult:
    distance_m: float
    duration_s: float
    geometry: dict | None
    steps: list[dict[str, Any]] = field(default_factory=list)


def parse_directions_response(data: Any) -> DirectionsResult:
    """Extract the first route from a provider response or raise DirectionsError."""
    if not isinstance(data, dict):
        raise DirectionsError("Directions response is not a JSON object.")
    if data.get("code") != "Ok":
        message = data.get("message") or data.get("code") or "Unknown directions error"
        raise DirectionsError(f"Directions request failed: {message}")
    routes = data.get("routes") or []
    if not routes:
        raise DirectionsError("Directions response contained no routes.")

    first = routes[0]
    distance = first.get("distance", first.get("distance_m"))
    duration = first.get("duration", first.get("duration_s"))
    if distance is None or duration is None:
        raise DirectionsError("Directions route is missing distance or duration.")

    steps: list[dict[str, Any]] = []
    legs = first.get("legs") or []
    if legs and isinstance(legs[0], dict):
        steps = [step for step in legs[0].get("steps") or [] if isinstance(step, dict)]

    try:
        return DirectionsResult(
            distance_m=float(distance),
            duration_s=float(duration),
            geometry=first.get("geometry"),
            steps=steps,
        )
    except (TypeError, ValueError) as exc:
        raise DirectionsError(f"Directions route has non-numeric metrics: {exc}") from exc


class DirectionsClient:
    def __init__(
        self,
        base_url: str | None = None,
        profile: str | None = None,
        access_token: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or settings.directions_base_url
        if not self.base_url:
            raise ValueError("Directions base URL is not configured.")
        self.base_url = self.base_url.rstrip("/")
        self.profile = profile or settings.directions_profile
        self.access_token = access_token if access_token is not None else settings.directions_access_token
        self.timeout = timeout if timeout is not None else settings.directions_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.directions_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.directions_backoff_seconds
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_url(self, origin: Coordinate, destination: Coordinate) -> str:
        # Provider expects "lng,lat;lng,lat".
        coordinate_str = f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        return f"{self.base_url}/{self.profile}/{coordinate_str}"

    async def route(self, origin: Coordinate, destination: Coordinate) -> DirectionsResult:
        """Fetch a driving route between two points.

        Transient failures (timeouts, network errors, 5xx) are retried with
        exponential backoff. Anything left after the retries is raised as
        DirectionsError.
        """
        url = self.build_url(origin, destination)
        params = {"geometries": "geojson", "steps": "true", "overview": "full"}
        if self.access_token:
            params["access_token"] = self.access_token

        attempt = 0
        while True:
            try:
                response = await self._client.get(url, params=params)
                if response.status_code >= 500:
                    response.raise_for_status()
                if response.status_code >= 400:
                    # Provider reports bad coordinates / no route as 4xx with a JSON body.
                    try:
                        return parse_directions_response(response.json())
                    except ValueError as exc:
                        raise DirectionsError(
                            f"Directions request rejected with HTTP {response.status_code}"
                        ) from exc
                return parse_directions_response(response.json())
            except DirectionsError:
                raise
            except httpx.HTTPStatusError as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise DirectionsError(
                        f"Directions provider returned HTTP {exc.response.status_code}"
                    ) from exc
                await asyncio.sleep(self.backoff_seconds * attempt)
            except httpx.TimeoutException as exc:
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(f"Directions request timed out after {self.max_retries} retries: {exc}")
                    raise DirectionsError(f"Directions request timed out: {exc}") from exc
                wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                logger.debug(f"Directions timeout, retrying in {wait_time:.1f}s (attempt {attempt}/{self.max_retries})")
                await asyncio.sleep(wait_time)
            except (httpx.TransportError, OSError) as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise DirectionsError(
                        f"Failed to connect to directions provider at {self.base_url}: {exc}"
                    ) from exc
                wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                logger.debug(f"Directions network error, retrying in {wait_time:.1f}s (attempt {attempt}/{self.max_retries}): {exc}")
                await asyncio.sleep(wait_time)
            except ValueError as exc:
                raise DirectionsError(f"Directions response is not valid JSON: {exc}") from exc


async def check_health(client: DirectionsClient | None = None) -> bool:
    """Probe the provider with a short route; any failure reports unhealthy."""
    if client is None:
        if not settings.directions_base_url:
            return False
        client = DirectionsClient(max_retries=0)
        owns_client = True
    else:
        owns_client = False
    try:
        await client.route(Coordinate(14.5995, 120.9842), Coordinate(14.6042, 120.9822))
        return True
    except DirectionsError:
        return False
    finally:
        if owns_client:
            await client.aclose()
