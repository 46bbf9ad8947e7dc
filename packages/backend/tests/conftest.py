"""Test fixtures — in-memory fakes for the remote backend.

Learn: The session and change-feed cores only talk to the ABCs in
labportal.core.backend, so tests swap in fakes instead of a live auth
service, database and Redis:

1. FakeAuthBackend records sign-in/sign-out calls and lets a test push
   auth events onto the stream
2. FakeRecordStore serves profiles and view rows from dicts, can fail the
   next N lookups with scripted errors, and can hold a call open on a gate
3. FakeChangeChannel delivers events straight into subscribers' queues

The guard's release delay is zero and retry sleeps are recorded instead
of slept, so nothing here waits on a wall clock.
"""

import asyncio
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from labportal.core.backend import (
    AuthBackend,
    ChangeChannel,
    ChannelSubscription,
    RecordStore,
    RouteNavigator,
)
from labportal.core.changefeed import ChangeFeedSubscriber
from labportal.core.errors import ChannelError, RecordNotFound
from labportal.core.guard import ReentrancyGuard
from labportal.core.profile import ProfileResolver
from labportal.core.session import SessionMonitor
from labportal.core.types import (
    AuthEvent,
    AuthEventKind,
    AuthResult,
    ChangeEvent,
    EqFilter,
    Operation,
    Session,
)


def make_session(identity_id: str, **claims: Any) -> Session:
    return Session(
        identity_id=identity_id,
        raw_claims={"id": identity_id, **claims},
        access_token=f"token-{identity_id}",
    )


def profile_row(identity_id: str, role: str = "admin", clinic_id: str = "C1", **extra) -> dict:
    return {"user_id": identity_id, "role": role, "clinic_id": clinic_id, **extra}


def change(entity_kind: str, operation: str, **row: Any) -> ChangeEvent:
    return ChangeEvent(entity_kind=entity_kind, operation=Operation(operation), row=row)


# ═══════════════════════════════════════════════════════════
# Fakes
# ═══════════════════════════════════════════════════════════


class FakeAuthBackend(AuthBackend):
    def __init__(self):
        self.current: Optional[Session] = None
        self.events: asyncio.Queue = asyncio.Queue()
        self.sign_in_result: Optional[AuthResult] = None
        self.sign_in_calls: list[tuple[str, str]] = []
        self.sign_out_calls = 0
        self.sign_out_error: Optional[Exception] = None

    async def get_current_session(self) -> Optional[Session]:
        return self.current

    async def session_events(self):
        while True:
            yield await self.events.get()

    def push(self, kind: AuthEventKind, session: Optional[Session]) -> None:
        self.events.put_nowait(AuthEvent(kind=kind, session=session))

    async def sign_in_with_credentials(self, identity: str, secret: str) -> AuthResult:
        self.sign_in_calls.append((identity, secret))
        result = self.sign_in_result or AuthResult(session=make_session(identity))
        if result.session is not None:
            self.current = result.session
        return result

    async def sign_out(self) -> Optional[Exception]:
        self.sign_out_calls += 1
        self.current = None
        return self.sign_out_error


class FakeRecordStore(RecordStore):
    def __init__(self):
        self.profiles: dict[str, dict] = {}
        self.views: dict[str, list[dict]] = {}
        self.errors: list[Exception] = []
        self.view_errors: list[Exception] = []
        self.fetch_one_calls = 0
        self.fetch_view_calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.view_gate: Optional[asyncio.Event] = None

    async def fetch_one(self, entity_kind: str, column: str, value: Any) -> dict:
        self.fetch_one_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        row = self.profiles.get(str(value))
        if row is None:
            raise RecordNotFound(f"No {entity_kind} row with {column}={value}")
        return dict(row)

    async def fetch_view(self, view_name: str, row_filter: Optional[EqFilter] = None) -> list[dict]:
        self.fetch_view_calls += 1
        if self.view_gate is not None:
            await self.view_gate.wait()
        if self.view_errors:
            raise self.view_errors.pop(0)
        rows = self.views.get(view_name, [])
        if row_filter is not None:
            rows = [r for r in rows if row_filter.matches(r)]
        return [dict(r) for r in rows]


class FakeSubscription(ChannelSubscription):
    def __init__(self, entity_kind: str, row_filter: Optional[EqFilter], sink: asyncio.Queue):
        self.entity_kind = entity_kind
        self.filter = row_filter
        self.sink = sink
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1


class FakeChangeChannel(ChangeChannel):
    """Filters server-side like the real channel, then puts into the sink."""

    def __init__(self):
        self.subscriptions: list[FakeSubscription] = []
        self.fail_subscribe = False

    async def subscribe(self, entity_kind, row_filter, sink) -> FakeSubscription:
        if self.fail_subscribe:
            raise ChannelError("subscribe refused", code="connection_error")
        sub = FakeSubscription(entity_kind, row_filter, sink)
        self.subscriptions.append(sub)
        return sub

    async def publish(self, event: ChangeEvent) -> None:
        for sub in self.subscriptions:
            if sub.close_calls or sub.entity_kind != event.entity_kind:
                continue
            if sub.filter is not None and not sub.filter.matches(event.row):
                continue
            await sub.sink.put(event)

    async def drop(self) -> None:
        for sub in self.subscriptions:
            await sub.sink.put(ChannelError("channel dropped", code="connection_error"))


# ═══════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def auth() -> FakeAuthBackend:
    return FakeAuthBackend()


@pytest.fixture()
def store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture()
def channel() -> FakeChangeChannel:
    return FakeChangeChannel()


@pytest.fixture()
def navigator() -> RouteNavigator:
    return RouteNavigator("/")


@pytest.fixture()
def resolver(store, sleeps) -> ProfileResolver:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return ProfileResolver(store, retry_delays=(1.0, 2.0), sleep=record_sleep)


@pytest_asyncio.fixture()
async def monitor(auth, resolver, navigator):
    m = SessionMonitor(auth, resolver, navigator, guard=ReentrancyGuard(release_delay=0))
    yield m
    await m.stop()


@pytest_asyncio.fixture()
async def feeds(store, channel):
    subscriber = ChangeFeedSubscriber(store, channel, queue_size=16)
    yield subscriber
    await subscriber.close_all()


@pytest_asyncio.fixture()
async def client(monitor):
    """HTTP client against the real app, with the session core built on fakes.

    Learn: ASGITransport doesn't run the lifespan, so nothing connects to
    the auth service, Postgres or Redis; we hang the fake-backed monitor
    on app.state ourselves.
    """
    from labportal.main import create_app

    app = create_app()
    app.state.monitor = monitor
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
