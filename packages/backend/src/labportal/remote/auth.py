"""Auth backend over the hosted auth service's REST API (GoTrue-compatible).

Learn: The hosted auth service speaks plain JSON over HTTP:

    POST /auth/v1/token?grant_type=password       {email, password}
    POST /auth/v1/token?grant_type=refresh_token  {refresh_token}
    POST /auth/v1/logout                           (Bearer access token)
    GET  /auth/v1/user                             (Bearer access token)

Token responses carry the access JWT, a refresh token, and the user
object. The user object becomes Session.raw_claims: it's what changes
when metadata is edited, and it stays identical across a plain token
refresh, which is exactly the distinction SessionMonitor needs.

Besides the calls, this backend is the source of the auth event stream:
every sign-in, refresh and sign-out is pushed to each session_events()
listener, the way the browser SDK's onAuthStateChange does it.

With a SessionStorage attached, the refresh token is mirrored into it on
every change, and the first get_current_session() of a fresh process
trades the stored token for a live session (INITIAL_SESSION).
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional

import httpx
import jwt
import structlog

from labportal.core.backend import AuthBackend
from labportal.core.errors import (
    CONNECTION_ERROR,
    INVALID_CREDENTIALS,
    RATE_LIMITED,
    SERVICE_UNAVAILABLE,
    TIMEOUT,
    AuthError,
    RemoteError,
    is_transient,
)
from labportal.core.types import AuthEvent, AuthEventKind, AuthResult, Session
from labportal.remote.storage import SessionStorage

logger = structlog.get_logger()


class GoTrueAuthBackend(AuthBackend):
    """AuthBackend talking to a GoTrue-style auth service with httpx."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        jwt_secret: str = "",
        jwt_algorithm: str = "HS256",
        timeout: float = 10.0,
        cache_seconds: float = 5.0,
        refresh_margin_seconds: int = 60,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        storage: Optional[SessionStorage] = None,
    ):
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.cache_seconds = cache_seconds
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"apikey": anon_key},
        )
        self._clock = clock
        self._current: Optional[Session] = None
        self._checked_at: Optional[float] = None
        self._listeners: list[asyncio.Queue] = []
        self._refresh_task: Optional[asyncio.Task] = None
        self._storage = storage
        # True once the persisted session was tried or replaced
        self._restored = storage is None

    # ─── Transport ────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request; map transport failures and 429/5xx to RemoteError."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteError(f"Auth service timed out: {e}", code=TIMEOUT)
        except httpx.TransportError as e:
            raise RemoteError(f"Auth service unreachable: {e}", code=CONNECTION_ERROR)

        if response.status_code == 429:
            raise RemoteError("Auth service rate limit exceeded", code=RATE_LIMITED)
        if response.status_code >= 500:
            raise RemoteError(
                f"Auth service error {response.status_code}", code=SERVICE_UNAVAILABLE
            )
        return response

    @staticmethod
    def _auth_error(response: httpx.Response, default_code: Optional[str] = None) -> AuthError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = (
            body.get("error_description")
            or body.get("msg")
            or body.get("message")
            or f"Auth request failed ({response.status_code})"
        )
        code = body.get("error_code") or body.get("error") or default_code
        return AuthError(message, code=code or str(response.status_code))

    @staticmethod
    def _bearer(session: Session) -> dict[str, str]:
        return {"Authorization": f"Bearer {session.access_token}"}

    # ─── Token handling ───────────────────────────────────

    def decode_claims(self, token: str) -> dict[str, Any]:
        """Decode the access JWT, verifying it when a secret is configured."""
        try:
            if self.jwt_secret:
                return jwt.decode(
                    token,
                    self.jwt_secret,
                    algorithms=[self.jwt_algorithm],
                    options={"verify_aud": False},
                )
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.ExpiredSignatureError:
            raise AuthError("Access token has expired", code="token_expired")
        except jwt.InvalidTokenError as e:
            raise AuthError(f"Invalid access token: {e}", code="invalid_token")

    def session_from_payload(self, payload: dict[str, Any]) -> Session:
        """Build a Session from a token-grant response body."""
        access_token = payload.get("access_token") or ""
        claims = self.decode_claims(access_token)
        user = payload.get("user") or {
            k: v for k, v in claims.items() if k not in ("iat", "exp", "session_id")
        }

        identity_id = str(user.get("id") or claims.get("sub") or "")
        if not identity_id:
            raise AuthError("Token grant carries no identity", code="invalid_token")

        issued_at = None
        if "iat" in claims:
            issued_at = datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc)
        expires_at = None
        if payload.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)
        elif "exp" in claims:
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)

        return Session(
            identity_id=identity_id,
            raw_claims=user,
            issued_at=issued_at,
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or "",
            expires_at=expires_at,
        )

    async def _refresh_grant(self, refresh_token: str) -> Session:
        response = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        if not response.is_success:
            raise self._auth_error(response)
        return self.session_from_payload(response.json())

    def _expiring(self, session: Session) -> bool:
        if session.expires_at is None:
            return False
        return session.expires_at - self.refresh_margin <= datetime.now(timezone.utc)

    # ─── Event stream ─────────────────────────────────────

    def _emit(self, kind: AuthEventKind, session: Optional[Session]) -> None:
        event = AuthEvent(kind=kind, session=session)
        for queue in list(self._listeners):
            queue.put_nowait(event)

    async def session_events(self) -> AsyncIterator[AuthEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._listeners.remove(queue)

    async def _set_current(self, session: Optional[Session]) -> None:
        self._current = session
        self._restored = True
        self._checked_at = self._clock() if session is not None else None
        await self._persist(session)

    # ─── Persistence ──────────────────────────────────────

    async def _persist(self, session: Optional[Session]) -> None:
        """Mirror the held refresh token into storage. Failures only log."""
        if self._storage is None:
            return
        try:
            if session is not None and session.refresh_token:
                await self._storage.save({
                    "refresh_token": session.refresh_token,
                    "identity_id": session.identity_id,
                })
            else:
                await self._storage.clear()
        except RemoteError as e:
            logger.warning("auth.persist_failed", code=e.code, error=e.message)

    async def _restore(self) -> Optional[Session]:
        """Trade a persisted refresh token for a live session, once per process."""
        self._restored = True
        try:
            record = await self._storage.load()
        except RemoteError as e:
            logger.warning("auth.restore_failed", code=e.code, error=e.message)
            return None
        refresh_token = (record or {}).get("refresh_token")
        if not refresh_token:
            return None

        try:
            session = await self._refresh_grant(refresh_token)
        except AuthError as e:
            logger.info("auth.stored_session_rejected", code=e.code, error=e.message)
            await self._set_current(None)
            return None
        except RemoteError as e:
            logger.warning("auth.restore_failed", code=e.code, error=e.message)
            return None

        await self._set_current(session)
        logger.info("auth.session_restored", identity_id=session.identity_id)
        self._emit(AuthEventKind.INITIAL_SESSION, session)
        return session

    # ─── AuthBackend ──────────────────────────────────────

    async def get_current_session(self) -> Optional[Session]:
        """Return the held session, re-validated at most every cache_seconds.

        With nothing held, the persisted session (if any) is restored on the
        first call.
        """
        session = self._current
        if session is None:
            if not self._restored:
                return await self._restore()
            return None
        if (
            self._checked_at is not None
            and self._clock() - self._checked_at < self.cache_seconds
            and not self._expiring(session)
        ):
            return session

        try:
            if self._expiring(session):
                return await self.refresh_session()

            response = await self._request("GET", "/auth/v1/user", headers=self._bearer(session))
            if response.status_code in (401, 403):
                return await self.refresh_session()
            if response.is_success:
                self._checked_at = self._clock()
                return self._current
            raise self._auth_error(response)
        except AuthError as e:
            logger.info("auth.session_invalid", code=e.code, error=e.message)
            await self._set_current(None)
            self._emit(AuthEventKind.SIGNED_OUT, None)
            return None
        except RemoteError as e:
            # Don't drop a session over a hiccup; validate again next time
            logger.warning("auth.session_check_failed", code=e.code, error=e.message)
            return self._current

    async def sign_in_with_credentials(self, identity: str, secret: str) -> AuthResult:
        try:
            response = await self._request(
                "POST",
                "/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": identity, "password": secret},
            )
            if not response.is_success:
                return AuthResult(error=self._auth_error(response, INVALID_CREDENTIALS))
            session = self.session_from_payload(response.json())
        except RemoteError as e:
            return AuthResult(error=e)

        await self._set_current(session)
        logger.info("auth.signed_in", identity_id=session.identity_id)
        self._emit(AuthEventKind.SIGNED_IN, session)
        return AuthResult(session=session)

    async def refresh_session(self) -> Optional[Session]:
        """Exchange the refresh token for a new access token.

        Raises AuthError if the refresh token is rejected, RemoteError on
        transport failure.
        """
        current = self._current
        if current is None or not current.refresh_token:
            return None

        session = await self._refresh_grant(current.refresh_token)
        await self._set_current(session)
        logger.debug("auth.token_refreshed", identity_id=session.identity_id)
        self._emit(AuthEventKind.TOKEN_REFRESHED, session)
        return session

    async def sign_out(self) -> Optional[Exception]:
        """Revoke the session remotely. Local state is dropped regardless."""
        current = self._current
        await self._set_current(None)
        error: Optional[Exception] = None

        if current is not None:
            try:
                response = await self._request(
                    "POST", "/auth/v1/logout", headers=self._bearer(current)
                )
                # 401/404: the grant is already gone, which is what we wanted
                if not response.is_success and response.status_code not in (401, 404):
                    error = self._auth_error(response)
            except RemoteError as e:
                error = e

        self._emit(AuthEventKind.SIGNED_OUT, None)
        return error

    # ─── Auto refresh ─────────────────────────────────────

    def start_auto_refresh(self) -> None:
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._auto_refresh_loop())

    async def _auto_refresh_loop(self) -> None:
        """Refresh the access token shortly before it expires."""
        while True:
            session = self._current
            delay = 30.0
            if session is not None and session.expires_at is not None:
                due = session.expires_at - self.refresh_margin
                delay = max((due - datetime.now(timezone.utc)).total_seconds(), 0.0)
            await asyncio.sleep(delay)

            if self._current is None or not self._expiring(self._current):
                continue
            try:
                await self.refresh_session()
            except AuthError as e:
                logger.info("auth.refresh_rejected", code=e.code, error=e.message)
                await self._set_current(None)
                self._emit(AuthEventKind.SIGNED_OUT, None)
            except RemoteError as e:
                logger.warning("auth.refresh_failed", code=e.code, transient=is_transient(e))
                await asyncio.sleep(5.0)

    async def aclose(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        await self._client.aclose()
