"""Remote error taxonomy.

Learn: Every remote adapter (auth over HTTP, records over SQLAlchemy,
changes over Redis) translates its library's exceptions into these at the
boundary. The core only ever sees RemoteError subclasses, so retry and
forced-logout decisions never depend on which transport failed.

The `code` is what retry logic looks at. Transient codes are an
allow-list — anything not on it is treated as a hard failure.
"""

from typing import Optional

# ─── Error codes ──────────────────────────────────────────

TIMEOUT = "timeout"
CONNECTION_ERROR = "connection_error"
RATE_LIMITED = "rate_limited"
SERVICE_UNAVAILABLE = "service_unavailable"
NOT_FOUND = "not_found"
INVALID_CREDENTIALS = "invalid_credentials"
PROFILE_MISSING = "profile_missing"

# PostgREST's code for `.single()` matching zero rows
POSTGREST_NO_ROWS = "PGRST116"

TRANSIENT_CODES = frozenset({
    TIMEOUT,
    CONNECTION_ERROR,
    RATE_LIMITED,
    SERVICE_UNAVAILABLE,
    "408",
    "429",
    "502",
    "503",
    "504",
    # Postgres SQLSTATE class 08 (connection exception)
    "08000",
    "08001",
    "08003",
    "08004",
    "08006",
    # too_many_connections, admin/crash shutdown, cannot_connect_now
    "53300",
    "57P01",
    "57P02",
    "57P03",
    # serialization_failure, deadlock_detected
    "40001",
    "40P01",
})


class RemoteError(Exception):
    """A remote call failed. `code` classifies the failure."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code!r})"


class RecordNotFound(RemoteError):
    """A point lookup matched no row. A business outcome, not a fault."""

    def __init__(self, message: str = "Record not found"):
        super().__init__(message, code=NOT_FOUND)


class AuthError(RemoteError):
    """Sign-in / sign-out / token refresh was rejected."""


class ChannelError(RemoteError):
    """The change-notification channel failed or dropped."""


def is_transient(error: BaseException) -> bool:
    """True if the error is worth retrying."""
    if isinstance(error, RecordNotFound):
        return False
    code = getattr(error, "code", None)
    return code is not None and str(code) in TRANSIENT_CODES


def is_not_found(error: BaseException) -> bool:
    if isinstance(error, RecordNotFound):
        return True
    return getattr(error, "code", None) in (NOT_FOUND, POSTGREST_NO_ROWS)
