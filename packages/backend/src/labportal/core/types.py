"""Value objects shared by the session and change-feed cores.

Learn: Session and Profile are frozen — every auth event replaces them
wholesale instead of patching fields. That makes "did anything change?"
a plain equality check and keeps half-updated state impossible.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ─── Session ──────────────────────────────────────────────


@dataclass(frozen=True)
class Session:
    """A verified remote authentication grant."""

    identity_id: str
    raw_claims: dict[str, Any] = field(default_factory=dict)
    issued_at: Optional[datetime] = None
    access_token: str = field(default="", repr=False)
    refresh_token: str = field(default="", repr=False)
    expires_at: Optional[datetime] = None

    @property
    def email(self) -> Optional[str]:
        return self.raw_claims.get("email")


class AuthEventKind(str, Enum):
    INITIAL_SESSION = "initial_session"
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    TOKEN_REFRESHED = "token_refreshed"
    USER_UPDATED = "user_updated"


@dataclass(frozen=True)
class AuthEvent:
    kind: AuthEventKind
    session: Optional[Session]


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a sign-in call. Exactly one of the two is set."""

    session: Optional[Session] = None
    error: Optional[Exception] = None


# ─── Profile ──────────────────────────────────────────────


PROFILE_IDENTITY_COLUMN = "user_id"


@dataclass(frozen=True)
class Profile:
    """Authorization-relevant record keyed by identity (a `users` row)."""

    identity_id: str
    role: Optional[str] = None
    clinic_id: Optional[str] = None
    display_fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Profile":
        display = {
            k: v
            for k, v in row.items()
            if k not in (PROFILE_IDENTITY_COLUMN, "role", "clinic_id")
        }
        clinic_id = row.get("clinic_id")
        return cls(
            identity_id=str(row[PROFILE_IDENTITY_COLUMN]),
            role=row.get("role"),
            clinic_id=str(clinic_id) if clinic_id is not None else None,
            display_fields=display,
        )

    def merged(self, updates: dict[str, Any]) -> "Profile":
        """Return a copy with `updates` applied. The identity never changes."""
        if PROFILE_IDENTITY_COLUMN in updates or "identity_id" in updates:
            raise ValueError("Profile identity cannot be changed")
        role = updates.get("role", self.role)
        clinic_id = updates.get("clinic_id", self.clinic_id)
        display = {
            **self.display_fields,
            **{k: v for k, v in updates.items() if k not in ("role", "clinic_id")},
        }
        return replace(
            self,
            role=role,
            clinic_id=str(clinic_id) if clinic_id is not None else None,
            display_fields=display,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.display_fields,
            "identity_id": self.identity_id,
            "role": self.role,
            "clinic_id": self.clinic_id,
        }


# ─── Session state ────────────────────────────────────────


class SessionStatus(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    RESOLVING = "resolving"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class SessionState:
    """Read-only snapshot handed to route guards and views."""

    status: SessionStatus
    user: Optional[Session]
    profile: Optional[Profile]
    loading: bool
    route: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED


@dataclass(frozen=True)
class LoginResult:
    session: Optional[Session] = None
    error: Optional[Exception] = None


# ─── Change events ────────────────────────────────────────


class Operation(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"

    @classmethod
    def from_wire(cls, value: str) -> "Operation":
        """Map Postgres trigger ops (INSERT/UPDATE/DELETE) or our own names."""
        mapping = {
            "INSERT": cls.CREATED,
            "UPDATE": cls.UPDATED,
            "DELETE": cls.REMOVED,
        }
        if value.upper() in mapping:
            return mapping[value.upper()]
        return cls(value.lower())


@dataclass(frozen=True)
class ChangeEvent:
    entity_kind: str
    operation: Operation
    row: dict[str, Any]
    # Slim row (key and filter columns only); the rest must be re-queried
    partial: bool = False


@dataclass(frozen=True)
class EqFilter:
    """Equality filter on one column, e.g. clinic_id = C1."""

    column: str
    value: Any

    def matches(self, row: dict[str, Any]) -> bool:
        if self.column not in row:
            return False
        return str(row[self.column]) == str(self.value)

    def to_wire(self) -> str:
        return f"{self.column}=eq.{self.value}"

    @classmethod
    def parse(cls, text: str) -> "EqFilter":
        column, sep, rest = text.partition("=eq.")
        if not sep or not column:
            raise ValueError(f"Not an equality filter: {text!r}")
        return cls(column=column, value=rest)
