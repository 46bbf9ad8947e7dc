"""SessionMonitor tests — the authentication state machine.

Learn: These pin the same-identity rule. Once a user is signed in, a
re-delivered session for them (token refresh, metadata edit) must never
re-fetch or clear their profile, and a failed lookup only logs out an
identity we haven't trusted yet.
"""

import asyncio

import pytest

from conftest import make_session, profile_row
from labportal.core.errors import (
    INVALID_CREDENTIALS,
    PROFILE_MISSING,
    TIMEOUT,
    AuthError,
    RemoteError,
)
from labportal.core.guard import ReentrancyGuard
from labportal.core.session import SessionMonitor
from labportal.core.types import AuthEventKind, AuthResult, SessionStatus


async def sign_in(monitor, auth, store, identity_id="U1", **claims):
    store.profiles.setdefault(identity_id, profile_row(identity_id))
    auth.current = make_session(identity_id, **claims)
    await monitor.start()


async def drain(auth):
    """Let the event follower consume everything pushed so far."""
    for _ in range(20):
        if auth.events.empty():
            break
        await asyncio.sleep(0)
    await asyncio.sleep(0)
    await asyncio.sleep(0)


# ═══════════════════════════════════════════════════════════
# Restore
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_restore_resolves_profile_once(monitor, auth, store):
    """Restored session with no cached profile → one fetch → authenticated."""
    await sign_in(monitor, auth, store)

    assert monitor.is_authenticated
    assert monitor.status is SessionStatus.AUTHENTICATED
    assert monitor.user.identity_id == "U1"
    assert monitor.profile.identity_id == "U1"
    assert not monitor.loading
    assert store.fetch_one_calls == 1


@pytest.mark.asyncio
async def test_restore_without_session(monitor, navigator):
    await monitor.start()

    assert not monitor.is_authenticated
    assert monitor.user is None
    assert monitor.profile is None
    assert not monitor.loading
    assert navigator.current_route == "/login"


@pytest.mark.asyncio
async def test_restore_failure_is_treated_as_signed_out(monitor, auth, navigator):
    async def broken():
        raise RemoteError("auth service down", code=TIMEOUT)

    auth.get_current_session = broken
    await monitor.start()

    assert not monitor.is_authenticated
    assert not monitor.loading
    assert navigator.current_route == "/login"


@pytest.mark.asyncio
async def test_no_redirect_on_auth_flow_route(monitor, navigator):
    navigator.navigate("/reset-password?token=abc")
    navigator.history.clear()

    await monitor.start()

    assert navigator.current_route == "/reset-password?token=abc"
    assert navigator.history == []


# ═══════════════════════════════════════════════════════════
# Same identity
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_token_refresh_with_identical_claims_is_noop(monitor, auth, store):
    await sign_in(monitor, auth, store)
    held_session = monitor.user
    held_profile = monitor.profile

    auth.push(AuthEventKind.TOKEN_REFRESHED, make_session("U1"))
    await drain(auth)

    assert store.fetch_one_calls == 1
    assert monitor.user is held_session
    assert monitor.profile is held_profile
    assert monitor.is_authenticated


@pytest.mark.asyncio
async def test_metadata_update_replaces_claims_only(monitor, auth, store):
    await sign_in(monitor, auth, store)
    held_profile = monitor.profile

    # The profile store is broken now; a refetch would log the user out
    store.errors = [RemoteError("timed out", code=TIMEOUT) for _ in range(5)]
    updated = await monitor.handle_session(make_session("U1", user_metadata={"theme": "dark"}))

    assert updated is True
    assert monitor.user.raw_claims["user_metadata"] == {"theme": "dark"}
    assert monitor.profile is held_profile
    assert monitor.is_authenticated
    assert store.fetch_one_calls == 1


# ═══════════════════════════════════════════════════════════
# New identity
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_new_identity_without_profile_is_signed_out(monitor, auth, store, navigator):
    await monitor.start()
    navigator.navigate("/dashboard")

    await monitor.handle_session(make_session("stranger"))

    assert not monitor.is_authenticated
    assert monitor.user is None
    assert auth.sign_out_calls == 1
    assert navigator.current_route == "/login"


@pytest.mark.asyncio
async def test_forced_sign_out_stays_on_auth_flow_route(monitor, auth, navigator):
    navigator.navigate("/auth/callback")
    navigator.history.clear()

    await monitor.handle_session(make_session("stranger"))

    assert not monitor.is_authenticated
    assert auth.sign_out_calls == 1
    assert navigator.current_route == "/auth/callback"
    assert navigator.history == []


@pytest.mark.asyncio
async def test_new_identity_with_failing_lookup_is_signed_out(monitor, auth, store, sleeps):
    await monitor.start()
    store.profiles["U2"] = profile_row("U2")
    store.errors = [RemoteError("timed out", code=TIMEOUT) for _ in range(3)]

    await monitor.handle_session(make_session("U2"))

    assert not monitor.is_authenticated
    assert auth.sign_out_calls == 1
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_switching_identity_resolves_new_profile(monitor, auth, store):
    await sign_in(monitor, auth, store)
    store.profiles["U2"] = profile_row("U2", role="client", clinic_id="C2")

    await monitor.handle_session(make_session("U2"))

    assert monitor.user.identity_id == "U2"
    assert monitor.profile.clinic_id == "C2"
    assert store.fetch_one_calls == 2


@pytest.mark.asyncio
async def test_signed_out_event_clears_state(monitor, auth, store, navigator):
    await sign_in(monitor, auth, store)
    navigator.navigate("/clinics")

    auth.push(AuthEventKind.SIGNED_OUT, None)
    await drain(auth)

    assert not monitor.is_authenticated
    assert monitor.user is None
    assert monitor.profile is None
    assert navigator.current_route == "/login"


# ═══════════════════════════════════════════════════════════
# Reentrancy
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_overlapping_events_are_dropped(monitor, store):
    store.profiles["U1"] = profile_row("U1")
    store.gate = asyncio.Event()

    first = asyncio.create_task(monitor.handle_session(make_session("U1")))
    await asyncio.sleep(0)
    dropped = await monitor.handle_session(make_session("U1"))
    store.gate.set()
    processed = await first

    assert processed is True
    assert dropped is False
    assert store.fetch_one_calls == 1
    assert monitor.is_authenticated


@pytest.mark.asyncio
async def test_guard_released_after_error(monitor, resolver):
    async def explode(identity_id, attempt=0):
        raise RuntimeError("boom")

    resolver.resolve = explode
    with pytest.raises(RuntimeError):
        await monitor.handle_session(make_session("U1"))

    assert not monitor.guard.entered
    assert monitor.status is SessionStatus.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_refresh_burst_is_coalesced_by_release_delay(auth, resolver, navigator, store):
    store.profiles["U1"] = profile_row("U1")
    monitor = SessionMonitor(auth, resolver, navigator, guard=ReentrancyGuard(release_delay=0.05))
    try:
        assert await monitor.handle_session(make_session("U1")) is True
        # token_refreshed re-delivered inside the release window
        assert await monitor.handle_session(make_session("U1")) is False
        assert store.fetch_one_calls == 1

        await asyncio.sleep(0.1)
        assert await monitor.handle_session(make_session("U1")) is True
        assert store.fetch_one_calls == 1
        assert monitor.is_authenticated
    finally:
        await monitor.stop()


# ═══════════════════════════════════════════════════════════
# Login / logout
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_login_authenticates_immediately(monitor, auth, store):
    await monitor.start()
    store.profiles["ann@example.com"] = profile_row("ann@example.com")

    result = await monitor.login("ann@example.com", "secret")

    assert result.error is None
    assert result.session.identity_id == "ann@example.com"
    assert monitor.is_authenticated
    assert auth.sign_in_calls == [("ann@example.com", "secret")]


@pytest.mark.asyncio
async def test_login_returns_auth_error(monitor, auth):
    await monitor.start()
    auth.sign_in_result = AuthResult(
        error=AuthError("Invalid login credentials", code=INVALID_CREDENTIALS)
    )

    result = await monitor.login("ann@example.com", "wrong")

    assert result.session is None
    assert result.error.code == INVALID_CREDENTIALS
    assert not monitor.is_authenticated


@pytest.mark.asyncio
async def test_login_never_raises(monitor, auth):
    await monitor.start()

    async def broken(identity, secret):
        raise ConnectionError("network down")

    auth.sign_in_with_credentials = broken
    result = await monitor.login("ann@example.com", "secret")

    assert isinstance(result.error, ConnectionError)
    assert not monitor.is_authenticated


@pytest.mark.asyncio
async def test_login_without_profile_reports_profile_missing(monitor, auth):
    await monitor.start()

    result = await monitor.login("ghost@example.com", "secret")

    assert result.error.code == PROFILE_MISSING
    assert not monitor.is_authenticated
    assert auth.sign_out_calls == 1


@pytest.mark.asyncio
async def test_logout_clears_state_even_if_remote_fails(monitor, auth, store, navigator):
    await sign_in(monitor, auth, store)
    auth.sign_out_error = RemoteError("auth service down", code=TIMEOUT)

    await monitor.logout()

    assert not monitor.is_authenticated
    assert monitor.user is None
    assert monitor.profile is None
    assert navigator.current_route == "/login"
    assert auth.sign_out_calls == 1


@pytest.mark.asyncio
async def test_logout_survives_raising_backend(monitor, auth, store):
    await sign_in(monitor, auth, store)

    async def broken():
        raise ConnectionError("network down")

    auth.sign_out = broken
    await monitor.logout()

    assert monitor.user is None


@pytest.mark.asyncio
async def test_logout_during_lookup_is_not_undone(monitor, store, navigator):
    store.profiles["U1"] = profile_row("U1")
    store.gate = asyncio.Event()

    pending = asyncio.create_task(monitor.handle_session(make_session("U1")))
    await asyncio.sleep(0)
    await monitor.logout()
    store.gate.set()
    await pending

    assert not monitor.is_authenticated
    assert monitor.user is None
    assert monitor.profile is None
    assert monitor.status is SessionStatus.UNAUTHENTICATED
    assert navigator.current_route == "/login"


# ═══════════════════════════════════════════════════════════
# Profile refresh
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_refresh_profile_not_found_forces_sign_out(monitor, auth, store, navigator):
    """Authenticated user whose profile disappears is signed out."""
    await sign_in(monitor, auth, store)
    navigator.navigate("/reports")
    del store.profiles["U1"]

    await monitor.refresh_profile()

    assert not monitor.is_authenticated
    assert auth.sign_out_calls == 1
    assert navigator.current_route == "/login"


@pytest.mark.asyncio
async def test_refresh_profile_failure_keeps_existing_user(monitor, auth, store):
    await sign_in(monitor, auth, store)
    held_profile = monitor.profile
    store.errors = [RemoteError("timed out", code=TIMEOUT) for _ in range(3)]

    profile = await monitor.refresh_profile()

    assert profile is held_profile
    assert monitor.is_authenticated
    assert auth.sign_out_calls == 0


@pytest.mark.asyncio
async def test_refresh_profile_picks_up_changes(monitor, auth, store):
    await sign_in(monitor, auth, store)
    store.profiles["U1"] = profile_row("U1", role="client", clinic_id="C9")

    profile = await monitor.refresh_profile()

    assert profile.role == "client"
    assert monitor.profile.clinic_id == "C9"


@pytest.mark.asyncio
async def test_update_profile_merges_fields(monitor, auth, store):
    await sign_in(monitor, auth, store)

    profile = monitor.update_profile(name="Ann Lee", avatar_url="https://cdn/x.png")

    assert profile.identity_id == "U1"
    assert profile.display_fields["name"] == "Ann Lee"
    assert monitor.profile is profile


@pytest.mark.asyncio
async def test_update_profile_requires_profile(monitor):
    await monitor.start()
    with pytest.raises(RuntimeError):
        monitor.update_profile(name="x")


@pytest.mark.asyncio
async def test_update_profile_cannot_change_identity(monitor, auth, store):
    await sign_in(monitor, auth, store)
    with pytest.raises(ValueError):
        monitor.update_profile(user_id="U2")
