"""Async REST client for the dispatch system of record."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

import httpx

from ..config import settings
from ..errors import BackendCommandError, MalformedEventError
from ..models.domain import Branch, FieldEngineer, ServiceRequest
from .payloads import (
    branch_fields,
    build_branch,
    build_engineer,
    build_request,
    engineer_fields,
    request_fields,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _wire_id(value: str) -> int | str:
    """Numeric ids go back to the backend as integers."""
    return int(value) if value.isdigit() else value


class BackendClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or settings.backend_base_url
        if not self.base_url:
            raise ValueError("Backend base URL is not configured.")
        self.base_url = self.base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.backend_timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise BackendCommandError(f"{method} {path} failed: {exc}") from exc
        if response.is_error:
            detail = response.text.strip() or f"Error: {response.status_code}"
            raise BackendCommandError(detail, status_code=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendCommandError(f"{method} {path} returned invalid JSON") from exc

    async def _fetch_list(self, path: str, parse: Callable[[Any], T]) -> list[T]:
        data = await self._request("GET", path)
        if not isinstance(data, list):
            raise BackendCommandError(f"GET {path} did not return a list")
        items: list[T] = []
        for raw in data:
            try:
                items.append(parse(raw))
            except (MalformedEventError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping malformed record from {path}: {exc}")
        return items

    async def fetch_branches(self) -> list[Branch]:
        return await self._fetch_list("/branches", lambda raw: build_branch(branch_fields(raw)))

    async def fetch_engineers(self) -> list[FieldEngineer]:
        return await self._fetch_list("/fieldEngineers", lambda raw: build_engineer(engineer_fields(raw)))

    async def fetch_requests(self) -> list[ServiceRequest]:
        return await self._fetch_list("/serviceRequests", lambda raw: build_request(request_fields(raw)))

    async def create_request(self, branch_id: str) -> Optional[dict]:
        payload = {
            "branchId": _wire_id(branch_id),
            "title": "New Service Request",
            "description": "Service required at branch",
            "status": "pending",
            "priority": "Medium",
        }
        data = await self._request("POST", "/serviceRequests", json=payload)
        return data if isinstance(data, dict) else None

    async def accept_request(self, request_id: str, fe_id: str) -> Optional[dict]:
        data = await self._request(
            "POST",
            f"/serviceRequests/{request_id}/accept",
            json={"fieldEngineerId": _wire_id(fe_id)},
        )
        return data if isinstance(data, dict) else None
