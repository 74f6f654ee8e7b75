"""
Postgres data source

Reads and writes the attendee table directly and receives push deltas
through LISTEN/NOTIFY. The table's change trigger (see
``sql/attendees_setup.sql``) publishes ``{eventType, new, old}`` JSON
payloads on the table's change channel.

psycopg2 is blocking, so queries run in a worker thread and the
listening connection is watched by the event loop with ``add_reader``.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from psycopg2.extras import RealDictCursor

from ..config import DatabaseSettings
from ..exceptions import SourceMisconfigured, SourceUnavailable, UpdateRejected
from ..models import AttendeeRecord, CheckInStatus, PushDelta, SourceKind
from .base import DataSource, PushChannel

logger = logging.getLogger(__name__)


class DatabaseDataSource(DataSource):
    """
    Data source backed by a Postgres table

    The push subscription lives from ``open`` to ``close``; individual
    loads and updates use short-lived connections.
    """

    kind = SourceKind.DATABASE

    def __init__(self, settings: DatabaseSettings, email_validator=None,
                 connect: Optional[Callable] = None):
        """
        Args:
            settings: Database settings
            email_validator: Optional email validation capability
            connect: Connection factory, ``psycopg2.connect`` by default
        """
        super().__init__(settings, email_validator)
        self._connect = connect or psycopg2.connect
        self._listen_conn = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._channel: Optional[PushChannel] = None

    def supports_push(self) -> bool:
        return True

    def push_channel(self) -> Optional[PushChannel]:
        return self._channel

    def _require_dsn(self) -> str:
        if not self.settings.dsn:
            raise SourceMisconfigured(self.kind.value, "dsn")
        return self.settings.dsn

    def _table(self) -> sql.Identifier:
        return sql.Identifier(self.settings.table_name)

    def _select_all(self) -> List[Dict]:
        try:
            conn = self._connect(self._require_dsn())
        except psycopg2.Error as e:
            raise SourceUnavailable(self.kind.value, f"cannot connect: {e}")
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    sql.SQL("SELECT * FROM {} ORDER BY attendee_name ASC").format(self._table())
                )
                return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise SourceUnavailable(self.kind.value, f"query failed: {e}")
        finally:
            conn.close()

    def _update_row(self, attendee_id: str, status: CheckInStatus,
                    checked_in_at: Optional[datetime]) -> None:
        try:
            conn = self._connect(self._require_dsn())
        except psycopg2.Error as e:
            raise UpdateRejected(attendee_id, f"cannot connect: {e}")
        try:
            with conn:
                with conn.cursor() as cur:
                    cur.execute(
                        sql.SQL("UPDATE {} SET status = %s, checked_in_at = %s WHERE id = %s")
                        .format(self._table()),
                        (status.value, checked_in_at, attendee_id),
                    )
                    if cur.rowcount == 0:
                        raise UpdateRejected(attendee_id, "no such row")
        except psycopg2.Error as e:
            raise UpdateRejected(attendee_id, str(e).strip())
        finally:
            conn.close()

    async def load_data(self) -> List[AttendeeRecord]:
        self._require_dsn()
        rows = await asyncio.to_thread(self._select_all)
        return self._normalize(rows)

    async def update_attendee(self, attendee_id: str, status: CheckInStatus,
                              checked_in_at: Optional[datetime]) -> None:
        if not self.settings.dsn:
            raise UpdateRejected(attendee_id, "database not configured")
        await asyncio.to_thread(self._update_row, attendee_id, status, checked_in_at)
        logger.debug("Updated attendee %s in database", attendee_id)

    def _listen(self):
        conn = self._connect(self._require_dsn())
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        with conn.cursor() as cur:
            cur.execute(sql.SQL("LISTEN {}").format(sql.Identifier(self.settings.notify_channel)))
        return conn

    async def open(self) -> None:
        """
        Subscribe to the table's change channel

        Raises:
            SourceMisconfigured: If no DSN is configured
            SourceUnavailable: If the subscription cannot be set up
        """
        if self._listen_conn is not None:
            return
        self._require_dsn()
        try:
            conn = await asyncio.to_thread(self._listen)
        except psycopg2.Error as e:
            raise SourceUnavailable(self.kind.value, f"cannot subscribe: {e}")

        self._loop = asyncio.get_running_loop()
        self._channel = PushChannel()
        self._listen_conn = conn
        self._loop.add_reader(conn, self._drain_notifications)
        logger.info("Subscribed to %s", self.settings.notify_channel)

    def _drain_notifications(self) -> None:
        conn = self._listen_conn
        if conn is None:
            return
        try:
            conn.poll()
        except psycopg2.Error:
            logger.exception("Lost connection to %s", self.settings.notify_channel)
            self._loop.remove_reader(conn)
            self._channel.close()
            return

        while conn.notifies:
            notify = conn.notifies.pop(0)
            try:
                payload = json.loads(notify.payload)
            except ValueError:
                logger.warning("Ignoring malformed notification: %r", notify.payload)
                continue
            if not isinstance(payload, dict):
                logger.warning("Ignoring notification that is not an object: %r", payload)
                continue
            self._channel.publish(PushDelta.from_payload(payload))

    async def close(self) -> None:
        conn, self._listen_conn = self._listen_conn, None
        if conn is None:
            return
        self._loop.remove_reader(conn)
        self._channel.close()
        try:
            conn.close()
        except psycopg2.Error as e:
            logger.warning("Error closing listen connection: %s", e)
        logger.info("Unsubscribed from %s", self.settings.notify_channel)

    async def test_connection(self) -> bool:
        if not self.settings.dsn:
            return False

        def ping():
            conn = self._connect(self.settings.dsn)
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            finally:
                conn.close()

        try:
            await asyncio.to_thread(ping)
            return True
        except psycopg2.Error as e:
            logger.info("Database connection test failed: %s", e)
            return False
