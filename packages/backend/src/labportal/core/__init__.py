"""Session & live-data reconciliation core.

Learn: Four pieces, leaves first:
1. ReentrancyGuard — drops overlapping session-change events
2. ProfileResolver — identity → profile, with bounded retries
3. SessionMonitor — the auth state machine the whole app reads
4. ChangeFeedSubscriber — live view collections fed by row changes

The core depends only on the interfaces in core.backend; the real
HTTP / SQL / Redis implementations live in labportal.remote.
"""

from labportal.core.changefeed import (
    ChangeFeedSubscriber,
    ReconciledCollection,
    SubscriptionHandle,
)
from labportal.core.guard import ReentrancyGuard
from labportal.core.profile import LookupOutcome, ProfileLookup, ProfileResolver
from labportal.core.session import SessionMonitor

__all__ = [
    "ChangeFeedSubscriber",
    "LookupOutcome",
    "ProfileLookup",
    "ProfileResolver",
    "ReconciledCollection",
    "ReentrancyGuard",
    "SessionMonitor",
    "SubscriptionHandle",
]
