"""Session monitor — the authentication state machine.

Learn: One SessionMonitor lives for the whole application. It turns raw
session values (restored at startup or pushed by the auth event stream)
into a consistent {session, profile, status} triple:

    unauthenticated ──new identity──▶ resolving ──profile found──▶ authenticated
          ▲                              │                          │  ▲
          └──────── profile absent ──────┘                          │  │
          └──────── sign-out / not found ───────────────────────────┘  │
                                                  same identity, new claims

The same-identity branch is the important one. Token refreshes and
user-metadata updates re-deliver the session for the user who is already
signed in. Re-fetching the profile there would turn any transient
backend hiccup into a forced logout, so that branch only swaps the claims.

Only identities we have not yet trusted are logged out when their profile
can't be resolved. A definite "no profile" logs anyone out.
"""

import asyncio
from typing import Any, Optional

import structlog

from labportal.core.backend import AuthBackend, Navigator
from labportal.core.errors import AuthError, PROFILE_MISSING, RemoteError
from labportal.core.guard import ReentrancyGuard
from labportal.core.profile import LookupOutcome, ProfileResolver
from labportal.core.types import (
    LoginResult,
    Profile,
    Session,
    SessionState,
    SessionStatus,
)

logger = structlog.get_logger()

DEFAULT_AUTH_FLOW_ROUTES = (
    "/login",
    "/forgot-password",
    "/reset-password",
    "/auth/callback",
)


class SessionMonitor:
    """Owns Session + Profile and exposes them to the rest of the app."""

    def __init__(
        self,
        auth: AuthBackend,
        resolver: ProfileResolver,
        navigator: Navigator,
        guard: Optional[ReentrancyGuard] = None,
        sign_in_route: str = "/login",
        auth_flow_routes: tuple[str, ...] | list[str] = DEFAULT_AUTH_FLOW_ROUTES,
    ):
        self.auth = auth
        self.resolver = resolver
        self.navigator = navigator
        self.guard = guard or ReentrancyGuard()
        self.sign_in_route = sign_in_route
        self.auth_flow_routes = tuple(auth_flow_routes)

        self._session: Optional[Session] = None
        self._profile: Optional[Profile] = None
        self._status = SessionStatus.UNAUTHENTICATED
        self._loading = True
        self._events_task: Optional[asyncio.Task] = None
        # Bumped on every clear; lookups started under an older value are stale
        self._generation = 0

    # ─── Exposed state ────────────────────────────────────

    @property
    def is_authenticated(self) -> bool:
        return self._status is SessionStatus.AUTHENTICATED

    @property
    def user(self) -> Optional[Session]:
        return self._session

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def state(self) -> SessionState:
        return SessionState(
            status=self._status,
            user=self._session,
            profile=self._profile,
            loading=self._loading,
            route=self.navigator.current_route,
        )

    # ─── Lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        """Restore the current session, then follow the auth event stream."""
        try:
            session = await self.auth.get_current_session()
        except RemoteError as e:
            logger.warning("session.restore_failed", code=e.code, error=e.message)
            session = None

        try:
            await self.handle_session(session)
        finally:
            self._loading = False

        if self._events_task is None:
            self._events_task = asyncio.create_task(self._follow_events())

    async def stop(self) -> None:
        if self._events_task is not None:
            self._events_task.cancel()
            try:
                await self._events_task
            except asyncio.CancelledError:
                pass
            self._events_task = None
        self.guard.release_now()

    async def _follow_events(self) -> None:
        try:
            async for event in self.auth.session_events():
                logger.debug("session.auth_event", kind=event.kind.value)
                try:
                    await self.handle_session(event.session)
                except Exception:
                    # One bad event must not end the stream
                    logger.exception("session.event_failed", kind=event.kind.value)
        except RemoteError as e:
            logger.error("session.event_stream_closed", code=e.code, error=e.message)

    # ─── Transition logic ─────────────────────────────────

    async def handle_session(self, session: Optional[Session]) -> bool:
        """Reconcile local state with an incoming session value.

        Returns False if the event was dropped because another one is
        still being processed; a later event will re-trigger.
        """
        if not self.guard.try_enter():
            logger.debug("session.event_dropped")
            return False
        try:
            await self._reconcile(session)
        finally:
            self.guard.leave()
        return True

    async def _reconcile(self, session: Optional[Session]) -> None:
        if session is None or not session.identity_id:
            if self._session is not None:
                logger.info("session.signed_out", identity_id=self._session.identity_id)
            self._clear()
            self._redirect_to_sign_in()
            return

        held = self._session
        if held is not None and held.identity_id == session.identity_id:
            if held.raw_claims != session.raw_claims:
                self._session = session
                logger.info("session.claims_updated", identity_id=session.identity_id)
            return

        await self._adopt(session)

    async def _adopt(self, session: Session) -> None:
        """A new identity: resolve its profile before trusting it."""
        generation = self._generation
        previous = self._status
        self._status = SessionStatus.RESOLVING
        try:
            lookup = await self.resolver.resolve(session.identity_id)
        except BaseException:
            if self._generation == generation:
                self._status = previous
            raise

        if self._generation != generation:
            # Signed out while the lookup was in flight
            logger.info("session.stale_lookup_dropped", identity_id=session.identity_id)
            return

        if lookup.found:
            self._session = session
            self._profile = lookup.profile
            self._status = SessionStatus.AUTHENTICATED
            logger.info(
                "session.authenticated",
                identity_id=session.identity_id,
                role=lookup.profile.role,
                attempts=lookup.attempts,
            )
            return

        logger.warning(
            "session.profile_unresolved",
            identity_id=session.identity_id,
            outcome=lookup.outcome.value,
        )
        await self._force_sign_out()

    async def _force_sign_out(self) -> None:
        self._clear()
        error = await self._remote_sign_out()
        if error is not None:
            logger.error("session.forced_sign_out_failed", error=str(error))
        self._redirect_to_sign_in()

    # ─── Operations ───────────────────────────────────────

    async def login(self, identity: str, secret: str) -> LoginResult:
        """Sign in and reconcile immediately. Never raises."""
        try:
            result = await self.auth.sign_in_with_credentials(identity, secret)
        except Exception as e:
            logger.exception("session.login_failed")
            return LoginResult(error=e)

        if result.error is not None or result.session is None:
            error = result.error or AuthError("Sign-in returned no session")
            logger.info("session.login_rejected", error=str(error))
            return LoginResult(error=error)

        # Wait for the guard rather than being dropped like a burst event
        await self.guard.enter()
        try:
            await self._reconcile(result.session)
        except Exception as e:
            logger.exception("session.login_reconcile_failed")
            return LoginResult(error=e)
        finally:
            self.guard.leave()

        if not self.is_authenticated:
            return LoginResult(
                error=AuthError("No portal profile for this account", code=PROFILE_MISSING)
            )
        return LoginResult(session=self._session)

    async def logout(self) -> None:
        """Sign out. Local state is cleared even if the remote call fails."""
        try:
            error = await self._remote_sign_out()
            if error is not None:
                logger.error("session.logout_failed", error=str(error))
        finally:
            self._clear()
            self.navigator.navigate(self.sign_in_route)

    async def refresh_profile(self) -> Optional[Profile]:
        """Re-resolve the held identity's profile.

        Found replaces it, absent signs the user out, a failed lookup keeps
        the profile we already have.
        """
        if self._session is None:
            return None
        identity_id = self._session.identity_id
        generation = self._generation
        lookup = await self.resolver.resolve(identity_id)

        if self._generation != generation or self._session is None \
                or self._session.identity_id != identity_id:
            # Session changed while we were fetching
            return self._profile

        if lookup.outcome is LookupOutcome.FOUND:
            self._profile = lookup.profile
        elif lookup.outcome is LookupOutcome.ABSENT:
            logger.warning("session.profile_removed", identity_id=identity_id)
            await self._force_sign_out()
        else:
            logger.warning("session.profile_refresh_failed", identity_id=identity_id)
        return self._profile

    def update_profile(self, **fields: Any) -> Profile:
        """Apply local edits to the held profile (e.g. after a settings form save)."""
        if self._profile is None:
            raise RuntimeError("No profile to update")
        self._profile = self._profile.merged(fields)
        return self._profile

    # ─── Helpers ──────────────────────────────────────────

    async def _remote_sign_out(self) -> Optional[Exception]:
        try:
            return await self.auth.sign_out()
        except Exception as e:
            return e

    def _clear(self) -> None:
        self._generation += 1
        self._session = None
        self._profile = None
        self._status = SessionStatus.UNAUTHENTICATED

    def on_auth_flow_route(self) -> bool:
        route = self.navigator.current_route
        if not route:
            return False
        path = route.split("?", 1)[0]
        return path in self.auth_flow_routes

    def _redirect_to_sign_in(self) -> None:
        if not self.on_auth_flow_route():
            self.navigator.navigate(self.sign_in_route)
