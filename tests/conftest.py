# Shared pytest fixtures
import pytest

from event_checkin.config import DataSourceConfig
from event_checkin.models import SourceKind, format_timestamp
from event_checkin.sources.base import DataSource, PushChannel


class FakeSource(DataSource):
    """In-memory DataSource whose loads and updates tests can steer"""

    kind = SourceKind.CSV

    def __init__(self, rows=None, kind=SourceKind.CSV, polling=False, push=False,
                 interval=0.0):
        super().__init__(settings=None)
        self.kind = kind
        self.rows = [dict(row) for row in rows or []]
        self.load_error = None
        self.update_error = None
        # asyncio.Event; when set on the fake, loads/updates wait for it
        self.gate = None
        self.update_gate = None
        self.loads = 0
        self.updates = []
        self.opened = False
        self.closed = False
        self._polling = polling
        self._push = push
        self._interval = interval
        self._channel = None

    def supports_polling(self):
        return self._polling

    def supports_push(self):
        return self._push

    @property
    def poll_interval(self):
        return self._interval

    def push_channel(self):
        return self._channel

    async def open(self):
        self.opened = True
        if self._push:
            self._channel = PushChannel()

    async def close(self):
        self.closed = True
        if self._channel is not None:
            self._channel.close()

    async def load_data(self):
        self.loads += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.load_error is not None:
            raise self.load_error
        return self._normalize([dict(row) for row in self.rows])

    async def update_attendee(self, attendee_id, status, checked_in_at):
        self.updates.append((attendee_id, status, checked_in_at))
        if self.update_gate is not None:
            await self.update_gate.wait()
        if self.update_error is not None:
            raise self.update_error
        for row in self.rows:
            if str(row.get("id")) == attendee_id:
                row["status"] = status.value
                row["checkedInAt"] = format_timestamp(checked_in_at)


class FakeFactory:
    """Source factory handing out prepared sources in order"""

    def __init__(self, *sources):
        self.sources = list(sources)
        self.created = []

    def __call__(self, config, kind):
        source = self.sources.pop(0)
        self.created.append((kind, source))
        return source


ROWS = [
    {"id": "1", "tableNumber": "Table 1", "groupName": "VIP", "attendeeName": "Ada Lovelace",
     "ticketType": "VIP Ticket", "email": "ada@example.com"},
    {"id": "2", "tableNumber": "Table 2", "groupName": "Press", "attendeeName": "Grace Hopper",
     "ticketType": "Standard"},
    {"id": "7", "tableNumber": "Table 10", "groupName": "Staff", "attendeeName": "Alan Turing",
     "ticketType": "Staff", "status": "checked-in", "checkedInAt": "2026-01-23T09:30:00Z"},
]


@pytest.fixture()
def rows():
    return [dict(row) for row in ROWS]


@pytest.fixture()
def source(rows):
    return FakeSource(rows)


@pytest.fixture()
def config():
    return DataSourceConfig.from_dict({
        "type": "csv",
        "settings": {"csv": {"pollUrl": "https://checkin.example.org/csv.php", "pollInterval": 0}},
    })


@pytest.fixture()
def recorder():
    """Listener collecting every published roster"""
    snapshots = []

    def listener(roster):
        snapshots.append(roster)

    listener.snapshots = snapshots
    return listener
