"""Profile resolution — identity → `users` row, with bounded retries.

Learn: Three outcomes, and the caller needs to tell them apart:

    found   — the row exists, here it is
    absent  — the lookup succeeded and there is no row (never retried)
    failed  — the backend kept failing; we don't actually know

"absent" is a business fact (this login has no portal account).
"failed" is a transport fact. SessionMonitor treats them differently for
identities it already trusts, so collapsing both into None would lose
exactly the information it needs.

Transient failures are retried with fixed backoff (1s, then 2s by
default). Concurrent resolve() calls for the same identity share one
lookup, so a burst of events can't fan out into duplicate fetches.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

import structlog

from labportal.core.backend import RecordStore
from labportal.core.errors import RemoteError, is_not_found, is_transient
from labportal.core.types import PROFILE_IDENTITY_COLUMN, Profile

logger = structlog.get_logger()

PROFILE_ENTITY_KIND = "users"


class LookupOutcome(str, Enum):
    FOUND = "found"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass(frozen=True)
class ProfileLookup:
    """Result of ProfileResolver.resolve()."""

    outcome: LookupOutcome
    profile: Optional[Profile] = None
    error: Optional[RemoteError] = None
    attempts: int = 1

    @property
    def found(self) -> bool:
        return self.outcome is LookupOutcome.FOUND


class ProfileResolver:
    """Fetches the profile tied to an identity."""

    def __init__(
        self,
        store: RecordStore,
        retry_delays: Sequence[float] = (1.0, 2.0),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.retry_delays = tuple(retry_delays)
        self._sleep = sleep
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def max_retries(self) -> int:
        return len(self.retry_delays)

    async def resolve(self, identity_id: str, attempt: int = 0) -> ProfileLookup:
        """Look up the profile for `identity_id`.

        `attempt` is the number of tries already spent; a caller that has
        retried on its own passes it in to shrink the remaining budget.
        """
        task = self._in_flight.get(identity_id)
        if task is None or task.done():
            task = asyncio.ensure_future(self._lookup(identity_id, attempt))
            self._in_flight[identity_id] = task
            task.add_done_callback(
                lambda t, key=identity_id: self._forget(key, t)
            )
        else:
            logger.debug("profile.lookup_joined", identity_id=identity_id)
        # shield: one waiter being cancelled must not cancel the shared lookup
        return await asyncio.shield(task)

    def _forget(self, identity_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(identity_id) is task:
            del self._in_flight[identity_id]

    async def _lookup(self, identity_id: str, attempt: int) -> ProfileLookup:
        while True:
            try:
                row = await self.store.fetch_one(
                    PROFILE_ENTITY_KIND, PROFILE_IDENTITY_COLUMN, identity_id
                )
            except RemoteError as e:
                if is_not_found(e):
                    logger.info("profile.absent", identity_id=identity_id)
                    return ProfileLookup(LookupOutcome.ABSENT, attempts=attempt + 1)

                if is_transient(e) and attempt < self.max_retries:
                    delay = self.retry_delays[attempt]
                    logger.warning(
                        "profile.lookup_retry",
                        identity_id=identity_id,
                        attempt=attempt + 1,
                        delay=delay,
                        code=e.code,
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue

                logger.error(
                    "profile.lookup_failed",
                    identity_id=identity_id,
                    attempts=attempt + 1,
                    code=e.code,
                    error=e.message,
                )
                return ProfileLookup(
                    LookupOutcome.FAILED, error=e, attempts=attempt + 1
                )

            return ProfileLookup(
                LookupOutcome.FOUND,
                profile=Profile.from_row(row),
                attempts=attempt + 1,
            )
