"""WebSocket endpoint — live views for the browser UI.

Learn: Connecting to /ws/views/{view}?column=clinic_id&value=C1 is the
"mount" of a live view; disconnecting is the "unmount". The handler:
1. Refuses the connection unless the session core is authenticated
2. Opens a ChangeFeedSubscriber handle and does the initial full fetch
3. Sends a snapshot of the collection after every reconciliation
4. Closes the handle when the client goes away, whatever the reason

One handle per connection, so two tabs on the same view never share a
collection.
"""

import asyncio
import json
from typing import Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from labportal.core.changefeed import ChangeFeedSubscriber, SubscriptionHandle
from labportal.core.types import EqFilter
from labportal.core.views import get_view

logger = structlog.get_logger()
router = APIRouter()


def snapshot_message(handle: SubscriptionHandle) -> str:
    collection = handle.collection
    return json.dumps({
        "type": "snapshot",
        "view": handle.view.name,
        "version": collection.version,
        "rows": [row.model_dump(mode="json") for row in collection],
        "error": handle.error.message if handle.error else None,
    })


@router.websocket("/ws/views/{view_name}")
async def view_websocket(
    websocket: WebSocket,
    view_name: str,
    column: Optional[str] = None,
    value: Optional[str] = None,
):
    """Stream snapshots of one live view to the client."""
    monitor = getattr(websocket.app.state, "monitor", None)
    feeds: Optional[ChangeFeedSubscriber] = getattr(websocket.app.state, "feeds", None)

    # ── Authentication ──────────────────────────────────────
    if monitor is None or feeds is None or not monitor.is_authenticated:
        await websocket.close(code=4001, reason="Authentication required")
        return

    try:
        view = get_view(view_name)
    except KeyError as e:
        await websocket.close(code=4004, reason=str(e))
        return

    row_filter = EqFilter(column, value) if column and value is not None else None

    # ── Mount ───────────────────────────────────────────────
    await websocket.accept()
    handle = await feeds.open(view, row_filter)

    async def sender():
        """Send a snapshot now, then again after every change."""
        await feeds.refetch(handle)
        version = handle.collection.version
        await websocket.send_text(snapshot_message(handle))
        while True:
            version = await handle.collection.wait_for_change(version)
            await websocket.send_text(snapshot_message(handle))

    async def client_listener():
        """Answer pings; return when the client disconnects."""
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if not isinstance(msg, dict):
                    continue
                if msg.get("type") == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))
                elif msg.get("type") == "refetch":
                    await feeds.refetch(handle)
        except WebSocketDisconnect:
            pass

    send_task = asyncio.create_task(sender())
    client_task = asyncio.create_task(client_listener())

    try:
        done, pending = await asyncio.wait(
            [send_task, client_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning("views_ws.task_failed", view=view.name, error=str(task.exception()))
    finally:
        # ── Unmount ─────────────────────────────────────────
        await feeds.close(handle)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
