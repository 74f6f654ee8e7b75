"""
Data Source Base Classes

This module defines the contract every data source adapter implements,
following the Repository pattern: the manager talks to one abstract
interface and never to a backend directly.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from ..exceptions import EventCheckinException, SourceUnavailable, UpdateRejected
from ..models import (
    AttendeeRecord,
    CheckInStatus,
    PushDelta,
    SourceKind,
    format_timestamp,
    parse_timestamp,
)
from ..normalizer import coerce_check_in, normalize_rows

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class DataSource(ABC):
    """
    Abstract base class for attendee data sources

    Adapters return freshly normalized records on every load and never
    hold on to the roster the manager keeps.
    """

    kind: SourceKind

    def __init__(self, settings, email_validator=None):
        """
        Initialize data source

        Args:
            settings: Source-specific settings dataclass
            email_validator: Optional email validation capability
        """
        self.settings = settings
        self.email_validator = email_validator
        self.last_dropped = 0

    @abstractmethod
    async def load_data(self) -> List[AttendeeRecord]:
        """
        Fetch and normalize a full snapshot

        Returns:
            List of AttendeeRecord instances

        Raises:
            SourceMisconfigured: If required settings are missing
            SourceUnavailable: If the backend cannot be reached
            SourceParseError: If the payload cannot be parsed
        """

    @abstractmethod
    async def update_attendee(self, attendee_id: str, status: CheckInStatus,
                              checked_in_at: Optional[datetime]) -> None:
        """
        Persist one check-in change

        Raises:
            UpdateRejected: If the backend reports a failure
        """

    def supports_polling(self) -> bool:
        return False

    def supports_push(self) -> bool:
        return False

    @property
    def poll_interval(self) -> float:
        return getattr(self.settings, "poll_interval", 0.0)

    def push_channel(self) -> Optional['PushChannel']:
        """Channel of push deltas, for sources that support push"""
        return None

    async def open(self) -> None:
        """Acquire long-lived resources such as subscriptions"""

    async def close(self) -> None:
        """Release everything acquired by ``open``"""

    async def test_connection(self) -> bool:
        """
        Check whether a snapshot can be loaded

        Returns:
            True if ``load_data`` succeeds
        """
        try:
            await self.load_data()
            return True
        except EventCheckinException as e:
            logger.info("Connection test for %s failed: %s", self.kind.value, e)
            return False

    def _normalize(self, rows) -> List[AttendeeRecord]:
        result = normalize_rows(rows, self.kind, self.email_validator)
        self.last_dropped = result.dropped
        return result.records

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class HttpDataSource(DataSource):
    """
    Base class for sources fetched over HTTP

    Owns an ``httpx.AsyncClient`` unless one is injected.
    """

    def __init__(self, settings, email_validator=None,
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings, email_validator)
        self._client = client
        self._owns_client = client is None

    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, follow_redirects=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(self, url, **kwargs) -> httpx.Response:
        """
        GET a URL, translating transport and status failures

        Raises:
            SourceUnavailable: On any HTTP error
        """
        try:
            response = await self.http().get(url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise SourceUnavailable(
                self.kind.value,
                f"HTTP {e.response.status_code} from {e.request.url}",
            )
        except httpx.HTTPError as e:
            raise SourceUnavailable(self.kind.value, str(e) or type(e).__name__)


class CheckinOverlayClient:
    """
    Client for the server-held check-in map

    File- and sheet-based sources cannot write rows, so check-in state is
    kept by the CSV-store endpoint as a map of attendee id to status and
    merged into each snapshot.
    """

    def __init__(self, source: HttpDataSource, store_url: str):
        """
        Args:
            source: Source whose HTTP client and kind are used
            store_url: Any URL of the CSV-store endpoint; its ``action``
                parameter is replaced per call
        """
        self.source = source
        self.store_url = store_url

    def action_url(self, action: str) -> httpx.URL:
        return httpx.URL(self.store_url).copy_set_param("action", action)

    async def fetch(self) -> Dict[str, Dict]:
        """
        Load the check-in map

        Returns:
            Dictionary of attendee id to ``{status, checkedInAt}``
        """
        response = await self.source._get(self.action_url("getcheckins"))
        try:
            payload = response.json()
        except ValueError as e:
            raise SourceUnavailable(self.source.kind.value, f"invalid check-in map: {e}")
        # An empty PHP array encodes as []
        if isinstance(payload, list):
            return {}
        if not isinstance(payload, dict):
            raise SourceUnavailable(self.source.kind.value, "check-in map is not an object")
        return payload

    async def push(self, attendee_id: str, status: CheckInStatus,
                   checked_in_at: Optional[datetime]) -> None:
        """
        Store one check-in change

        Raises:
            UpdateRejected: If the request fails or the store reports failure
        """
        body = {
            "attendeeId": attendee_id,
            "status": status.value,
            "checkedInAt": format_timestamp(checked_in_at),
        }
        try:
            response = await self.source.http().post(self.action_url("checkin"), json=body)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as e:
            raise UpdateRejected(attendee_id, f"server error {e.response.status_code}")
        except httpx.HTTPError as e:
            raise UpdateRejected(attendee_id, str(e) or type(e).__name__)
        except ValueError as e:
            raise UpdateRejected(attendee_id, f"invalid response: {e}")

        if not isinstance(result, dict) or not result.get("success"):
            reason = result.get("error") if isinstance(result, dict) else None
            raise UpdateRejected(attendee_id, reason or "store did not confirm the update")

    async def clear(self, admin_token: str) -> None:
        """
        Remove every stored check-in

        Raises:
            UpdateRejected: If the store refuses the reset
        """
        try:
            response = await self.source.http().post(
                self.action_url("clearcheckins"),
                headers={"X-Admin-Token": admin_token},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpdateRejected("*", f"could not clear check-ins: {e}")

    @staticmethod
    def apply(records: List[AttendeeRecord], overlay: Dict[str, Dict]) -> List[AttendeeRecord]:
        """
        Merge a check-in map into a snapshot by attendee id

        Entries for ids not in the snapshot are ignored.
        """
        merged = []
        for record in records:
            entry = overlay.get(record.id)
            if not isinstance(entry, dict):
                merged.append(record)
                continue
            status, checked_in_at = coerce_check_in(
                CheckInStatus.from_value(entry.get("status")),
                parse_timestamp(entry.get("checkedInAt")),
                record.id,
            )
            merged.append(record.with_status(status, checked_in_at)
                          if status is not record.status else record)
        return merged

    async def overlay(self, records: List[AttendeeRecord]) -> List[AttendeeRecord]:
        """
        Fetch the check-in map and merge it, keeping the bare snapshot
        when the map cannot be loaded
        """
        try:
            check_ins = await self.fetch()
        except SourceUnavailable as e:
            logger.warning("Failed to load check-in data from server: %s", e)
            return records
        return self.apply(records, check_ins)


class _Closed:
    pass


_CLOSED = _Closed()


class PushChannel:
    """
    Async stream of push deltas

    The producer calls ``publish``; the consumer iterates with
    ``async for``. Iteration ends once ``close`` is called.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, delta: PushDelta) -> None:
        if not self._closed:
            self._queue.put_nowait(delta)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> PushDelta:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item
