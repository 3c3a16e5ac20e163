"""In-memory roster owned by a dispatch session."""

from __future__ import annotations

import itertools
from collections.abc import Iterator, MutableMapping
from typing import Generic, Optional, TypeVar

from ..models.domain import Branch, FieldEngineer, RequestStatus, Route, ServiceRequest

K = TypeVar("K")
V = TypeVar("V")


class KeyedCollection(Generic[K, V]):
    """Insertion-ordered collection of entities keyed by identity."""

    def __init__(self) -> None:
        self._items: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._items[key] = value

    def get(self, key: K) -> V | None:
        return self._items.get(key)

    def pop(self, key: K) -> V | None:
        return self._items.pop(key, None)

    def all(self) -> list[V]:
        return list(self._items.values())

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[V]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)


class DispatchStore:
    """Branches, engineers, requests and active routes for one operator session.

    All mutations happen on the session's event loop, so collections are not
    locked. Route ids come from a counter private to the store.
    """

    def __init__(self, first_route_id: int = 1) -> None:
        self.branches: KeyedCollection[str, Branch] = KeyedCollection()
        self.engineers: KeyedCollection[str, FieldEngineer] = KeyedCollection()
        self.requests: KeyedCollection[str, ServiceRequest] = KeyedCollection()
        self.routes: KeyedCollection[int, Route] = KeyedCollection()
        self.connected: bool = False
        self.selected_route_id: Optional[int] = None
        self._route_ids = itertools.count(first_route_id)

    def allocate_route_id(self) -> int:
        route_id = next(self._route_ids)
        while route_id in self.routes:
            route_id = next(self._route_ids)
        return route_id

    def observe_route_id(self, route_id: int) -> None:
        """Move the counter past an id allocated elsewhere (e.g. by the server)."""
        upcoming = next(self._route_ids)
        self._route_ids = itertools.count(max(upcoming, route_id + 1))

    def route_for_request(self, request_id: str) -> Route | None:
        for route in self.routes:
            if route.request_id == request_id:
                return route
        return None

    def route_for_engineer(self, fe_id: str) -> Route | None:
        for route in self.routes:
            if route.fe_id == fe_id:
                return route
        return None

    def pending_requests(self) -> list[ServiceRequest]:
        return [request for request in self.requests if request.status is RequestStatus.PENDING]

    def clear(self) -> None:
        self.branches.clear()
        self.engineers.clear()
        self.requests.clear()
        self.routes.clear()
        self.connected = False
        self.selected_route_id = None
