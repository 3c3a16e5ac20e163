"""Health endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request, status

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health_root(request: Request) -> dict:
    """Liveness plus the real-time hub flag; never touches collaborators."""
    session = getattr(request.app.state, "session", None)
    return {
        "status": "ok",
        "session": session is not None,
        "realtime_connected": bool(session and session.store.connected),
    }


def _get_directions_health_check():
    """Lazy import to avoid startup failures."""
    from ...services.routing.directions_client import check_health as directions_health_check
    return directions_health_check


@router.get("/health/directions", status_code=status.HTTP_200_OK)
async def health_directions(request: Request) -> dict:
    """Check the directions provider with a short probe route."""
    session = getattr(request.app.state, "session", None)
    client = session.materializer.directions if session is not None else None
    try:
        directions_health_check = _get_directions_health_check()
        status_flag = await directions_health_check(client)
        return {"service": "directions", "healthy": status_flag}
    except Exception as e:
        return {"service": "directions", "healthy": False, "error": str(e)}
