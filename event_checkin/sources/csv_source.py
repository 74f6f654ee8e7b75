"""
CSV-store data source

The CSV-store endpoint has already parsed the uploaded file and serves
its rows as JSON. Check-in state lives in a separate map on the same
endpoint and is merged into every snapshot.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from ..config import CsvSettings
from ..exceptions import SourceMisconfigured, SourceParseError, SourceUnavailable
from ..models import AttendeeRecord, CheckInStatus, SourceKind
from .base import CheckinOverlayClient, HttpDataSource

logger = logging.getLogger(__name__)


class CsvDataSource(HttpDataSource):
    """Data source backed by the CSV-store HTTP endpoint"""

    kind = SourceKind.CSV

    def __init__(self, settings: CsvSettings, email_validator=None, client=None):
        super().__init__(settings, email_validator, client)
        self.check_ins = CheckinOverlayClient(self, settings.poll_url)

    def supports_polling(self) -> bool:
        return True

    def _require_url(self) -> str:
        if not self.settings.poll_url:
            raise SourceMisconfigured(self.kind.value, "pollUrl")
        return self.settings.poll_url

    async def load_data(self) -> List[AttendeeRecord]:
        url = self._require_url()
        logger.debug("CSV source loading from %s", url)

        response = await self._get(self.check_ins.action_url("get"))
        try:
            rows = response.json()
        except ValueError as e:
            raise SourceParseError(self.kind.value, f"response is not JSON: {e}")
        if not isinstance(rows, list):
            raise SourceParseError(self.kind.value, "expected a JSON array of rows")

        records = self._normalize(rows)
        return await self.check_ins.overlay(records)

    async def update_attendee(self, attendee_id: str, status: CheckInStatus,
                              checked_in_at: Optional[datetime]) -> None:
        self._require_url()
        await self.check_ins.push(attendee_id, status, checked_in_at)
        logger.debug("CSV source: check-in synced to server for %s", attendee_id)

    async def fetch_status(self) -> Dict:
        """
        Describe the currently stored upload

        Returns:
            Dictionary with ``has_data`` and upload ``metadata``
        """
        self._require_url()
        response = await self._get(self.check_ins.action_url("status"))
        try:
            return response.json()
        except ValueError as e:
            raise SourceUnavailable(self.kind.value, f"invalid status response: {e}")

    async def clear_check_ins(self, admin_token: str) -> None:
        self._require_url()
        await self.check_ins.clear(admin_token)
