"""Change channel over Redis pub/sub.

Learn: The relay republishes every row change onto a per-table channel:

    labportal:changes:{table}

A subscription SUBSCRIBEs to its table's channel, decodes each message
into a ChangeEvent, drops the ones outside its equality filter, and puts
the rest into the subscriber's queue. Each subscription has its own
pubsub connection, so two views on the same table never share state, and
closing one UNSUBSCRIBEs only that connection.

Redis pub/sub is fire-and-forget: a message published while nobody is
subscribed is gone. Views do a full fetch when they mount, so they only
ever need the changes that happen after that.
"""

import asyncio
import json
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from labportal.core.backend import ChangeChannel, ChannelSubscription
from labportal.core.errors import CONNECTION_ERROR, ChannelError
from labportal.core.types import ChangeEvent, EqFilter, Operation

logger = structlog.get_logger()

CHANNEL_PREFIX = "labportal:changes"


def channel_for(entity_kind: str) -> str:
    return f"{CHANNEL_PREFIX}:{entity_kind}"


def decode_change(payload: Any) -> Optional[ChangeEvent]:
    """Decode a relay message. Returns None for anything malformed.

    Payload shape (from the NOTIFY trigger):
        {"table": ..., "type": "INSERT|UPDATE|DELETE",
         "record": {...} | null, "old_record": {...} | null,
         "partial": true}            # only on oversized rows
    """
    try:
        data = json.loads(payload)
        operation = Operation.from_wire(data["type"])
        if operation is Operation.REMOVED:
            row = data.get("old_record") or {}
        else:
            row = data.get("record") or {}
        if not isinstance(row, dict) or not row:
            return None
        return ChangeEvent(
            entity_kind=data["table"],
            operation=operation,
            row=row,
            partial=bool(data.get("partial")),
        )
    except (ValueError, KeyError, TypeError):
        return None


class RedisChannelSubscription(ChannelSubscription):
    def __init__(
        self,
        pubsub,
        entity_kind: str,
        row_filter: Optional[EqFilter],
        sink: asyncio.Queue,
    ):
        self.pubsub = pubsub
        self.entity_kind = entity_kind
        self.filter = row_filter
        self.sink = sink
        self.closed = False
        self._reader: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read())

    async def _read(self) -> None:
        """Forward matching messages into the sink, in delivery order."""
        try:
            async for message in self.pubsub.listen():
                if message["type"] != "message":
                    continue
                event = decode_change(message["data"])
                if event is None:
                    logger.warning("channel.malformed_message", entity_kind=self.entity_kind)
                    continue
                if self.filter is not None and not self.filter.matches(event.row):
                    continue
                await self.sink.put(event)
        except asyncio.CancelledError:
            raise
        except (RedisError, OSError) as e:
            logger.warning("channel.dropped", entity_kind=self.entity_kind, error=str(e))
            await self.sink.put(ChannelError(f"Change channel dropped: {e}", code=CONNECTION_ERROR))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        try:
            await self.pubsub.unsubscribe(channel_for(self.entity_kind))
            await self.pubsub.aclose()
        except (RedisError, OSError) as e:
            # Connection is gone anyway; the server drops the subscription with it
            logger.warning("channel.unsubscribe_failed", entity_kind=self.entity_kind, error=str(e))


class RedisChangeChannel(ChangeChannel):
    """ChangeChannel reading the relay's Redis channels."""

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def subscribe(
        self,
        entity_kind: str,
        row_filter: Optional[EqFilter],
        sink: asyncio.Queue,
    ) -> RedisChannelSubscription:
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(channel_for(entity_kind))
        except (RedisError, OSError) as e:
            raise ChannelError(f"Could not subscribe to {entity_kind}: {e}", code=CONNECTION_ERROR)

        subscription = RedisChannelSubscription(pubsub, entity_kind, row_filter, sink)
        subscription.start()
        return subscription
