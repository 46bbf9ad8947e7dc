"""Change-feed subscriber — live collections kept in step with the database.

Learn: Every mounted view opens one SubscriptionHandle:

    ChangeChannel ──events──▶ asyncio.Queue ──▶ reconcile loop ──▶ ReconciledCollection
                              (bounded)        (one per handle)

The channel only ever puts into the queue; a single loop per handle takes
events out in delivery order and applies them. When the loop falls behind,
the bounded queue pushes back on the channel reader instead of piling up
tasks.

Flat views patch the collection from the event row. Derived views (joins,
aggregates) can't be rebuilt from one changed row, so each event costs one
full re-query. Overlapping writes are last-write-wins; that's fine because
every write is keyed by row id.

Closing a handle stops the loop and releases the channel. Anything that
comes back after that — a slow refetch, a late event — is dropped without
touching the collection.

No reconnection: if the channel dies the handle records the error and the
view keeps its last-known rows until it is mounted again.
"""

import asyncio
import bisect
import uuid
from typing import Awaitable, Callable, Optional, Union

import structlog

from labportal.core.backend import ChangeChannel, ChannelSubscription, RecordStore
from labportal.core.errors import ChannelError, RemoteError
from labportal.core.types import ChangeEvent, EqFilter, Operation
from labportal.core.views import PortalRow, ViewSpec, get_view

logger = structlog.get_logger()

IncrementalHandler = Callable[["ReconciledCollection", ChangeEvent], None]
RefetchHandler = Callable[["SubscriptionHandle"], Awaitable[None]]


# ═══════════════════════════════════════════════════════════
# Collection
# ═══════════════════════════════════════════════════════════


class ReconciledCollection:
    """Ordered rows of one view, unique by id."""

    def __init__(self, view: ViewSpec):
        self.view = view
        self._rows: list[PortalRow] = []
        self.version = 0
        self._changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self):
        return iter(list(self._rows))

    @property
    def rows(self) -> list[PortalRow]:
        return list(self._rows)

    def ids(self) -> list[str]:
        return [r.id for r in self._rows]

    def index_of(self, row_id: str) -> Optional[int]:
        for i, row in enumerate(self._rows):
            if row.id == row_id:
                return i
        return None

    def get(self, row_id: str) -> Optional[PortalRow]:
        i = self.index_of(row_id)
        return self._rows[i] if i is not None else None

    # ─── Writes ───────────────────────────────────────────

    def apply(self, event: ChangeEvent) -> bool:
        """Incremental merge. Returns True if the collection changed."""
        row_id = self.view.row_id(event.row)
        if row_id is None:
            logger.warning("changefeed.event_without_key", view=self.view.name)
            return False

        if event.operation is Operation.CREATED:
            if self.index_of(row_id) is not None:
                return False
            self._insert(self.view.parse(event.row))
        elif event.operation is Operation.UPDATED:
            i = self.index_of(row_id)
            if i is None:
                # Not in this view (yet); a refetch will pick it up
                return False
            self._rows[i] = self._rows[i].merge(event.row)
        elif event.operation is Operation.REMOVED:
            i = self.index_of(row_id)
            if i is None:
                return False
            del self._rows[i]
        else:
            return False

        self._touch()
        return True

    def replace_all(self, rows: list[PortalRow]) -> None:
        seen: set[str] = set()
        unique = []
        for row in rows:
            if row.id not in seen:
                seen.add(row.id)
                unique.append(row)
        self._rows = unique
        self._touch()

    def _insert(self, row: PortalRow) -> None:
        key = self.view.sort_key
        value = row.sort_value(key) if key else None
        if value is None:
            self._rows.insert(0, row)
            return

        # Rows without a sort value stay where they are; compare only sortable ones
        positions = [i for i, r in enumerate(self._rows) if r.sort_value(key) is not None]
        values = [self._rows[i].sort_value(key) for i in positions]
        if self.view.descending:
            # bisect needs ascending order; search the negated index space
            j = len(values) - bisect.bisect_right(values[::-1], value)
        else:
            j = bisect.bisect_right(values, value)
        at = positions[j] if j < len(positions) else len(self._rows)
        self._rows.insert(at, row)

    def _touch(self) -> None:
        self.version += 1
        self._changed.set()

    async def wait_for_change(self, since: int) -> int:
        """Wait until `version` moves past `since`. Returns the new version."""
        while self.version <= since:
            self._changed.clear()
            await self._changed.wait()
        return self.version


# ═══════════════════════════════════════════════════════════
# Handle
# ═══════════════════════════════════════════════════════════


class SubscriptionHandle:
    """One view's live subscription. Owned by the view that opened it."""

    def __init__(
        self,
        view: ViewSpec,
        row_filter: Optional[EqFilter],
        queue_size: int,
        on_incremental: Optional[IncrementalHandler],
        on_fallback_refetch: Optional[RefetchHandler],
    ):
        self.id = uuid.uuid4().hex
        self.view = view
        self.filter = row_filter
        self.collection = ReconciledCollection(view)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.on_incremental = on_incremental
        self.on_fallback_refetch = on_fallback_refetch
        self.error: Optional[RemoteError] = None
        self.closed = False
        self._channel: Optional[ChannelSubscription] = None
        self._loop_task: Optional[asyncio.Task] = None

    async def settle(self) -> None:
        """Wait until every queued event has been applied."""
        if self._loop_task is None or self._loop_task.done():
            return
        await self.queue.join()

    def __repr__(self) -> str:
        return f"SubscriptionHandle({self.view.name}, {self.filter}, closed={self.closed})"


# ═══════════════════════════════════════════════════════════
# Subscriber
# ═══════════════════════════════════════════════════════════


class ChangeFeedSubscriber:
    """Opens and tears down live view subscriptions."""

    def __init__(
        self,
        store: RecordStore,
        channel: ChangeChannel,
        queue_size: int = 256,
    ):
        self.store = store
        self.channel = channel
        self.queue_size = queue_size
        self._handles: dict[str, SubscriptionHandle] = {}

    @property
    def open_handles(self) -> list[SubscriptionHandle]:
        return list(self._handles.values())

    async def open(
        self,
        view: Union[ViewSpec, str],
        row_filter: Optional[EqFilter] = None,
        on_incremental: Optional[IncrementalHandler] = None,
        on_fallback_refetch: Optional[RefetchHandler] = None,
    ) -> SubscriptionHandle:
        """Subscribe a view. The caller must close() the handle exactly once."""
        if isinstance(view, str):
            view = get_view(view)

        handle = SubscriptionHandle(
            view, row_filter, self.queue_size, on_incremental, on_fallback_refetch
        )
        try:
            handle._channel = await self.channel.subscribe(
                view.entity_kind, row_filter, handle.queue
            )
        except ChannelError as e:
            # The view still works off full fetches, just without live updates
            handle.error = e
            logger.error("changefeed.subscribe_failed", view=view.name, error=e.message)
        else:
            handle._loop_task = asyncio.create_task(self._reconcile_loop(handle))
        self._handles[handle.id] = handle
        logger.info(
            "changefeed.opened",
            handle=handle.id,
            view=view.name,
            filter=row_filter.to_wire() if row_filter else None,
        )
        return handle

    async def close(self, handle: SubscriptionHandle) -> None:
        """Release a handle. Closing twice is a no-op."""
        if handle.closed:
            return
        handle.closed = True
        self._handles.pop(handle.id, None)

        if handle._loop_task is not None:
            handle._loop_task.cancel()
            try:
                await handle._loop_task
            except asyncio.CancelledError:
                pass
        if handle._channel is not None:
            try:
                await handle._channel.close()
            except RemoteError as e:
                logger.warning("changefeed.release_failed", handle=handle.id, error=e.message)
        logger.info("changefeed.closed", handle=handle.id, view=handle.view.name)

    async def close_all(self) -> None:
        for handle in list(self._handles.values()):
            await self.close(handle)

    async def refetch(self, handle: SubscriptionHandle) -> bool:
        """Full re-query of the handle's view. Returns False if discarded."""
        if handle.closed:
            return False
        try:
            rows = await self.store.fetch_view(handle.view.name, handle.filter)
        except RemoteError as e:
            logger.error(
                "changefeed.refetch_failed",
                handle=handle.id,
                view=handle.view.name,
                code=e.code,
                error=e.message,
            )
            return False
        if handle.closed:
            logger.debug("changefeed.stale_refetch_dropped", handle=handle.id)
            return False
        handle.collection.replace_all([handle.view.parse(r) for r in rows])
        return True

    # ─── Reconcile loop ───────────────────────────────────

    async def _reconcile_loop(self, handle: SubscriptionHandle) -> None:
        while True:
            item = await handle.queue.get()
            try:
                if isinstance(item, ChannelError):
                    handle.error = item
                    logger.error(
                        "changefeed.channel_error",
                        handle=handle.id,
                        view=handle.view.name,
                        error=item.message,
                    )
                    return
                await self._dispatch(handle, item)
            except Exception:
                logger.exception("changefeed.event_failed", handle=handle.id)
            finally:
                handle.queue.task_done()

    async def _dispatch(self, handle: SubscriptionHandle, event: ChangeEvent) -> None:
        if handle.closed:
            return
        if handle.filter is not None and handle.filter.column in event.row:
            if not handle.filter.matches(event.row):
                return

        # A partial row can still remove by key; anything else needs the full row
        partial = event.partial and event.operation is not Operation.REMOVED
        if handle.view.derived or partial:
            if handle.on_fallback_refetch is not None:
                await handle.on_fallback_refetch(handle)
            else:
                await self.refetch(handle)
            return

        if handle.on_incremental is not None:
            handle.on_incremental(handle.collection, event)
        else:
            handle.collection.apply(event)
