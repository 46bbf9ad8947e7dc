"""Session API — what the browser UI reads and triggers on the session core.

Learn: Routes over the single SessionMonitor held by the app:
- GET /session → current state snapshot
- POST /session/login → email/password sign-in
- POST /session/logout → sign out (always succeeds locally)
- PUT /session/route → tell the core which route the UI is on
- POST /session/profile/refresh → re-fetch the profile
- PATCH /session/profile → apply local profile edits
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from labportal.core.session import SessionMonitor
from labportal.schemas.session import (
    LoginRequest,
    ProfileUpdate,
    RouteUpdate,
    SessionStateRead,
)

router = APIRouter(prefix="/session")


def get_monitor(request: Request) -> SessionMonitor:
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Session core not started")
    return monitor


# ─── State ───────────────────────────────────────────────


@router.get("", response_model=SessionStateRead)
async def read_session(monitor: SessionMonitor = Depends(get_monitor)):
    return SessionStateRead.from_state(monitor.state)


@router.put("/route", response_model=SessionStateRead)
async def update_route(body: RouteUpdate, monitor: SessionMonitor = Depends(get_monitor)):
    """Record a client-side navigation."""
    monitor.navigator.navigate(body.route)
    return SessionStateRead.from_state(monitor.state)


# ─── Login / logout ──────────────────────────────────────


@router.post("/login", response_model=SessionStateRead)
async def login(body: LoginRequest, monitor: SessionMonitor = Depends(get_monitor)):
    """Sign in. Auth failures come back as 401 with the service's message."""
    result = await monitor.login(body.email, body.password)
    if result.error is not None:
        raise HTTPException(
            status_code=401,
            detail=str(result.error),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return SessionStateRead.from_state(monitor.state)


@router.post("/logout", response_model=SessionStateRead)
async def logout(monitor: SessionMonitor = Depends(get_monitor)):
    await monitor.logout()
    return SessionStateRead.from_state(monitor.state)


# ─── Profile ─────────────────────────────────────────────


@router.post("/profile/refresh", response_model=SessionStateRead)
async def refresh_profile(monitor: SessionMonitor = Depends(get_monitor)):
    if not monitor.is_authenticated:
        raise HTTPException(status_code=401, detail="Authentication required")
    await monitor.refresh_profile()
    return SessionStateRead.from_state(monitor.state)


@router.patch("/profile", response_model=SessionStateRead)
async def update_profile(
    body: ProfileUpdate, monitor: SessionMonitor = Depends(get_monitor)
):
    """Merge saved profile edits into the held profile."""
    if monitor.profile is None:
        raise HTTPException(status_code=409, detail="No profile loaded")
    monitor.update_profile(**body.model_dump(exclude_unset=True))
    return SessionStateRead.from_state(monitor.state)
