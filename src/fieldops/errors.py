"""Exception types raised by the dispatch engine."""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for dispatch engine failures."""


class UnknownEntityError(DispatchError, LookupError):
    """A command referenced a branch, engineer, request or route that is not in the roster."""

    def __init__(self, kind: str, identity: object) -> None:
        super().__init__(f"{kind} '{identity}' not found.")
        self.kind = kind
        self.identity = identity


class BackendCommandError(DispatchError):
    """The system-of-record backend failed or rejected a command."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DirectionsError(DispatchError):
    """The directions provider could not produce a route."""


class MalformedEventError(DispatchError, ValueError):
    """An inbound payload is missing its identity or carries unusable values."""
