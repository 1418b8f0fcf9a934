"""
Change feed over PostgreSQL LISTEN/NOTIFY.

Each subscription holds its own asyncpg connection listening on the channel
the ``notify_change_feed`` trigger publishes to. Notifications are decoded
into ``ChangeEvent`` values; payloads that fail to decode are logged and
skipped. A dropped connection ends iteration with ``TransportDisconnected``.

Notifications too large for NOTIFY arrive marked ``truncated``; the row is
then re-read by id on the same connection before decoding.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Union

import asyncpg

from app.approvals.application.ports import ChangeFeed, ChangeSubscription
from app.approvals.domain.change_events import (
    ROW_DECODERS,
    ChangeEvent,
    ChangeOperation,
    decode_change_event,
)
from app.approvals.domain.errors import MalformedChangeEvent, TransportDisconnected

logger = logging.getLogger(__name__)

_CLOSED = object()
_DISCONNECTED = object()


class PgChangeSubscription(ChangeSubscription):
    def __init__(self, connection: asyncpg.Connection, channel: str) -> None:
        self._connection = connection
        self._channel = channel
        self._queue: "asyncio.Queue[Union[str, object]]" = asyncio.Queue()
        self._closed = False

    async def start(self) -> None:
        self._connection.add_termination_listener(self._on_termination)
        await self._connection.add_listener(self._channel, self._on_notification)

    def _on_notification(self, connection, pid, channel, payload) -> None:
        self._queue.put_nowait(payload)

    def _on_termination(self, connection) -> None:
        if not self._closed:
            self._queue.put_nowait(_DISCONNECTED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                raise StopAsyncIteration
            if item is _DISCONNECTED:
                raise TransportDisconnected(f"Lost LISTEN connection on {self._channel}")

            try:
                payload = json.loads(item)
                if isinstance(payload, dict) and payload.get("truncated"):
                    payload = await self._hydrate(payload)
                    if payload is None:
                        continue
                return decode_change_event(payload)
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping non-JSON change payload: {e}")
            except MalformedChangeEvent as e:
                logger.warning(f"Skipping malformed change event: {e}")

    async def _hydrate(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        table = payload.get("table")
        if not isinstance(table, str) or table not in ROW_DECODERS:
            raise MalformedChangeEvent(f"Unknown table: {table!r}")
        if str(payload.get("operation")).lower() == ChangeOperation.DELETE.value:
            return payload

        try:
            row = await self._connection.fetchval(
                f"SELECT row_to_json(t)::text FROM {table} t WHERE t.id = $1", payload.get("id")
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise TransportDisconnected(f"Could not re-read {table} row: {e}")
        if row is None:
            logger.info(f"Skipping truncated change for missing {table} row {payload.get('id')}")
            return None
        return {**payload, "before": None, "after": json.loads(row)}

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self._connection.is_closed():
            return
        try:
            await self._connection.remove_listener(self._channel, self._on_notification)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.warning(f"Could not UNLISTEN {self._channel}: {e}")
        finally:
            await self._connection.close()


class PgChangeFeed(ChangeFeed):
    def __init__(self, dsn: str, channel: str, connect_timeout: Optional[float] = 10) -> None:
        self._dsn = dsn
        self._channel = channel
        self._connect_timeout = connect_timeout

    async def subscribe(self) -> PgChangeSubscription:
        try:
            connection = await asyncpg.connect(self._dsn, timeout=self._connect_timeout)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Change feed connection failed: {e}")
            raise TransportDisconnected(f"Could not connect change feed: {e}")

        subscription = PgChangeSubscription(connection, self._channel)
        try:
            await subscription.start()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            await connection.close()
            logger.error(f"LISTEN {self._channel} failed: {e}")
            raise TransportDisconnected(f"Could not listen on {self._channel}: {e}")

        logger.info(f"Subscribed to change feed channel {self._channel}")
        return subscription
