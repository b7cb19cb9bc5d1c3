from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import asyncpg


logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


class PgNotificationListener:
    """LISTEN on a dedicated asyncpg connection.

    The connection is opened outside the SQLAlchemy pool: LISTEN state lives
    in the server session, and pooled connections are handed to other callers
    between uses.
    """

    def __init__(
        self,
        *,
        dsn: str,
        channel: str,
        on_notify: Callable[[str], None],
        on_lost: Callable[[], None],
        connector: Connector | None = None,
    ) -> None:
        self._dsn = dsn
        self._channel = channel
        self._on_notify = on_notify
        self._on_lost = on_lost
        self._connector = connector or asyncpg.connect
        self._conn: Any = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def connect(self) -> None:
        # Reconnecting while already connected is a no-op, so only one LISTEN is ever active.
        if self.connected:
            return
        self._closing = False
        conn = await self._connector(self._dsn)
        try:
            await conn.add_listener(self._channel, self._handle_notification)
        except Exception:
            await conn.close()
            raise
        conn.add_termination_listener(self._handle_termination)
        self._conn = conn
        logger.info("job_listener_connected channel=%s", self._channel)

    async def close(self) -> None:
        self._closing = True
        conn, self._conn = self._conn, None
        if conn is None or conn.is_closed():
            return
        try:
            await conn.remove_listener(self._channel, self._handle_notification)
        finally:
            await conn.close()
        logger.info("job_listener_closed channel=%s", self._channel)

    def _handle_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        self._on_notify(payload)

    def _handle_termination(self, connection: Any) -> None:
        # Fired for server-side disconnects; our own close() sets _closing first.
        if self._closing:
            return
        if self._conn is connection:
            self._conn = None
        logger.warning("job_listener_lost channel=%s", self._channel)
        self._on_lost()
