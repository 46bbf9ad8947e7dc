"""Pydantic schemas for the session API.

Learn: The core hands out frozen dataclasses (Session, Profile,
SessionState). These read models are the JSON shape the browser UI
sees; tokens are deliberately not part of it.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from labportal.core.types import Profile, Session, SessionState


# ─── Requests ─────────────────────────────────────────────


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1)


class RouteUpdate(BaseModel):
    route: str = Field(min_length=1)


class ProfileUpdate(BaseModel):
    """Fields a user may edit on their own profile."""

    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None

    model_config = {"extra": "forbid"}


# ─── Read models ──────────────────────────────────────────


class UserRead(BaseModel):
    identity_id: str
    email: Optional[str]
    issued_at: Optional[datetime]
    expires_at: Optional[datetime]

    @classmethod
    def from_session(cls, session: Session) -> "UserRead":
        return cls(
            identity_id=session.identity_id,
            email=session.email,
            issued_at=session.issued_at,
            expires_at=session.expires_at,
        )


class ProfileRead(BaseModel):
    identity_id: str
    role: Optional[str]
    clinic_id: Optional[str]
    display_fields: dict[str, Any]

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileRead":
        return cls(
            identity_id=profile.identity_id,
            role=profile.role,
            clinic_id=profile.clinic_id,
            display_fields=profile.display_fields,
        )


class SessionStateRead(BaseModel):
    status: str
    is_authenticated: bool
    loading: bool
    route: Optional[str]
    user: Optional[UserRead]
    profile: Optional[ProfileRead]

    @classmethod
    def from_state(cls, state: SessionState) -> "SessionStateRead":
        return cls(
            status=state.status.value,
            is_authenticated=state.is_authenticated,
            loading=state.loading,
            route=state.route,
            user=UserRead.from_session(state.user) if state.user else None,
            profile=ProfileRead.from_profile(state.profile) if state.profile else None,
        )
