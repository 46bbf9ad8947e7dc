"""Remote backend interfaces consumed by the core.

Learn: The core never imports httpx, SQLAlchemy or Redis. It talks to
these four narrow interfaces, and labportal.remote provides the real
implementations. Tests plug in in-memory fakes instead.

    AuthBackend    — session endpoints + auth event stream
    RecordStore    — point lookups and full view queries
    ChangeChannel  — row-change push subscriptions
    Navigator      — where the user currently is, and redirects
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from labportal.core.types import AuthEvent, AuthResult, EqFilter, Session


class AuthBackend(ABC):
    """Session endpoints of the hosted auth service."""

    @abstractmethod
    async def get_current_session(self) -> Optional[Session]:
        """Return the restored session, or None when signed out."""

    @abstractmethod
    def session_events(self) -> AsyncIterator[AuthEvent]:
        """Push stream of auth events (signed in, token refreshed, ...)."""

    @abstractmethod
    async def sign_in_with_credentials(self, identity: str, secret: str) -> AuthResult:
        """Password sign-in. Errors are returned, not raised."""

    @abstractmethod
    async def sign_out(self) -> Optional[Exception]:
        """Revoke the current session. Returns the error, if any."""


class RecordStore(ABC):
    """Query side of the hosted database."""

    @abstractmethod
    async def fetch_one(self, entity_kind: str, column: str, value: Any) -> dict[str, Any]:
        """Point lookup.

        Raises RecordNotFound when no row matches, RemoteError (with a
        classified code) on any other failure.
        """

    @abstractmethod
    async def fetch_view(
        self, view_name: str, row_filter: Optional[EqFilter] = None
    ) -> list[dict[str, Any]]:
        """Full query of a (possibly joined) view, already sorted."""


class ChannelSubscription(ABC):
    """A live subscription on the change channel."""

    @abstractmethod
    async def close(self) -> None:
        """Release server-side resources. Safe to call twice."""


class ChangeChannel(ABC):
    """Row-change notifications pushed by the hosted database."""

    @abstractmethod
    async def subscribe(
        self,
        entity_kind: str,
        row_filter: Optional[EqFilter],
        sink: asyncio.Queue,
    ) -> ChannelSubscription:
        """Start delivering matching ChangeEvents into `sink`.

        Events are put in delivery order. If the channel fails, a
        ChannelError instance is put into the sink and delivery stops.
        """


class Navigator(ABC):
    """The routing surface, as far as the session core needs it."""

    @property
    @abstractmethod
    def current_route(self) -> Optional[str]:
        """Path the user is currently on."""

    @abstractmethod
    def navigate(self, route: str) -> None:
        """Replace the current route."""


class RouteNavigator(Navigator):
    """In-memory navigator: tracks the current route and redirect history."""

    def __init__(self, initial_route: Optional[str] = None):
        self._route = initial_route
        self.history: list[str] = []

    @property
    def current_route(self) -> Optional[str]:
        return self._route

    def navigate(self, route: str) -> None:
        self.history.append(route)
        self._route = route
