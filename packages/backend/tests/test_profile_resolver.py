"""ProfileResolver tests — outcomes, bounded retries, shared lookups.

Learn: The resolver's sleep is injected, so `sleeps` holds the backoff
delays it would have waited instead of actually waiting them.
"""

import asyncio

import pytest

from conftest import profile_row
from labportal.core.errors import (
    POSTGREST_NO_ROWS,
    RATE_LIMITED,
    TIMEOUT,
    RemoteError,
)
from labportal.core.profile import LookupOutcome


@pytest.mark.asyncio
async def test_found_returns_profile(resolver, store):
    store.profiles["U1"] = profile_row("U1", role="admin", clinic_id="C1", name="Ann")

    lookup = await resolver.resolve("U1")

    assert lookup.found
    assert lookup.attempts == 1
    assert lookup.profile.identity_id == "U1"
    assert lookup.profile.role == "admin"
    assert lookup.profile.clinic_id == "C1"
    assert lookup.profile.display_fields == {"name": "Ann"}


@pytest.mark.asyncio
async def test_not_found_is_not_retried(resolver, store, sleeps):
    lookup = await resolver.resolve("nobody")

    assert lookup.outcome is LookupOutcome.ABSENT
    assert lookup.profile is None
    assert store.fetch_one_calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_postgrest_no_rows_counts_as_absent(resolver, store, sleeps):
    store.errors = [RemoteError("JSON object requested, multiple (or no) rows returned", code=POSTGREST_NO_ROWS)]

    lookup = await resolver.resolve("U1")

    assert lookup.outcome is LookupOutcome.ABSENT
    assert store.fetch_one_calls == 1


@pytest.mark.asyncio
async def test_transient_error_then_success(resolver, store, sleeps):
    store.profiles["U1"] = profile_row("U1")
    store.errors = [RemoteError("timed out", code=TIMEOUT)]

    lookup = await resolver.resolve("U1")

    assert lookup.found
    assert lookup.attempts == 2
    assert sleeps == [1.0]


@pytest.mark.asyncio
async def test_retries_exactly_twice_then_fails(resolver, store, sleeps):
    store.profiles["U1"] = profile_row("U1")
    store.errors = [
        RemoteError("timed out", code=TIMEOUT),
        RemoteError("slow down", code=RATE_LIMITED),
        RemoteError("bad gateway", code="502"),
    ]

    lookup = await resolver.resolve("U1")

    assert lookup.outcome is LookupOutcome.FAILED
    assert lookup.error.code == "502"
    assert lookup.attempts == 3
    assert store.fetch_one_calls == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_attempts_already_spent_shrink_the_budget(resolver, store, sleeps):
    store.errors = [RemoteError("timed out", code=TIMEOUT) for _ in range(3)]

    lookup = await resolver.resolve("U1", attempt=1)

    assert lookup.outcome is LookupOutcome.FAILED
    assert store.fetch_one_calls == 2
    assert sleeps == [2.0]


@pytest.mark.asyncio
async def test_non_transient_error_is_not_retried(resolver, store, sleeps):
    store.errors = [RemoteError("permission denied", code="42501")]

    lookup = await resolver.resolve("U1")

    assert lookup.outcome is LookupOutcome.FAILED
    assert store.fetch_one_calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_lookup(resolver, store):
    store.profiles["U1"] = profile_row("U1")
    store.gate = asyncio.Event()

    first = asyncio.create_task(resolver.resolve("U1"))
    second = asyncio.create_task(resolver.resolve("U1"))
    await asyncio.sleep(0)
    store.gate.set()
    a, b = await asyncio.gather(first, second)

    assert a.found and b.found
    assert store.fetch_one_calls == 1


@pytest.mark.asyncio
async def test_sequential_resolves_fetch_again(resolver, store):
    store.profiles["U1"] = profile_row("U1", role="client")
    await resolver.resolve("U1")

    store.profiles["U1"] = profile_row("U1", role="admin")
    lookup = await resolver.resolve("U1")

    assert lookup.profile.role == "admin"
    assert store.fetch_one_calls == 2
