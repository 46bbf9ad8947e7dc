"""Reentrancy guard for session-change processing.

Learn: Auth events arrive in bursts — a sign-in is often followed within
milliseconds by a token refresh for the same grant. The guard lets the
first event through and drops the rest while it is held. Release is
delayed a little so the tail of the burst is dropped too; whatever comes
after the delay is processed normally.

No locks: everything runs on one event loop, and try_enter() checks and
sets the flag without awaiting in between.
"""

import asyncio
from typing import Optional


class ReentrancyGuard:
    """Boolean flag with delayed release. One instance per SessionMonitor."""

    def __init__(self, release_delay: float = 0.1):
        self.release_delay = release_delay
        self._entered = False
        self._release_handle: Optional[asyncio.TimerHandle] = None
        self._released = asyncio.Event()
        self._released.set()

    @property
    def entered(self) -> bool:
        return self._entered

    def try_enter(self) -> bool:
        """Take the guard. Returns False if it is already held."""
        if self._entered:
            return False
        self._entered = True
        self._released.clear()
        return True

    async def enter(self) -> None:
        """Wait until the guard is free, then take it."""
        while not self.try_enter():
            await self._released.wait()

    def leave(self) -> None:
        """Release after `release_delay` seconds (immediately if none)."""
        if not self._entered:
            return
        if self.release_delay <= 0:
            self.release_now()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.release_now()
            return
        if self._release_handle is not None:
            self._release_handle.cancel()
        self._release_handle = loop.call_later(self.release_delay, self.release_now)

    def release_now(self) -> None:
        if self._release_handle is not None:
            self._release_handle.cancel()
            self._release_handle = None
        self._entered = False
        self._released.set()
