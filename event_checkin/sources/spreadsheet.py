"""
Published spreadsheet data source

A human-entered sheet URL is turned into a tabular export URL and
fetched through an ordered list of acquisition strategies. The first
strategy that yields at least one data row wins.
"""

import asyncio
import csv
import io
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import gspread
from google.oauth2.service_account import Credentials

from ..config import SpreadsheetSettings
from ..exceptions import (
    EventCheckinException,
    SourceMisconfigured,
    SourceParseError,
    SourceUnavailable,
    UpdateRejected,
)
from ..models import AttendeeRecord, CheckInStatus, SourceKind
from .base import CheckinOverlayClient, HttpDataSource

logger = logging.getLogger(__name__)

GOOGLE_SHEETS_HOST = "docs.google.com"
SCOPES = ["https://www.googleapis.com/auth/spreadsheets.readonly"]


def _sheet_id_and_gid(sheet_url: str) -> Tuple[Optional[str], Optional[str]]:
    parsed = urlparse(sheet_url)
    segments = [segment for segment in parsed.path.split("/") if segment]
    sheet_id = None
    if "spreadsheets" in segments:
        position = segments.index("spreadsheets")
        if segments[position + 1:position + 2] == ["d"] and len(segments) > position + 2:
            sheet_id = segments[position + 2]

    gid = (parse_qs(parsed.query).get("gid") or [None])[0]
    if not gid and "gid=" in parsed.fragment:
        gid = (parse_qs(parsed.fragment).get("gid") or [None])[0]
    return sheet_id, gid


def build_export_url(sheet_url: str) -> str:
    """
    Derive a CSV export URL from a sheet URL

    Viewer URLs (``/edit``, ``/view``) become
    ``/spreadsheets/d/<id>/export?format=csv`` with the optional
    ``gid`` sub-sheet preserved. Published and export URLs, and URLs
    that are not Google Sheets at all, are returned unchanged.

    Args:
        sheet_url: URL as entered by the organizer

    Returns:
        Direct export URL
    """
    trimmed = (sheet_url or "").strip()
    if not trimmed:
        return ""

    parsed = urlparse(trimmed)
    if GOOGLE_SHEETS_HOST not in parsed.netloc:
        return trimmed

    query = parse_qs(parsed.query)
    if "/pub" in parsed.path or "/export" in parsed.path or query.get("output") == ["csv"]:
        return trimmed

    sheet_id, gid = _sheet_id_and_gid(trimmed)
    if not sheet_id:
        return trimmed

    export_url = f"https://{GOOGLE_SHEETS_HOST}/spreadsheets/d/{sheet_id}/export?format=csv"
    if gid:
        export_url += f"&gid={gid}"
    return export_url


def parse_table(text: str, source: str = SourceKind.SPREADSHEET.value) -> List[List[str]]:
    """
    Parse delimited text into data rows

    The first row is a header and is skipped, as are blank rows.
    Quoted fields may contain the delimiter.

    Raises:
        SourceParseError: If the text is not valid CSV
    """
    try:
        rows = list(csv.reader(io.StringIO(text.lstrip("\ufeff"))))
    except csv.Error as e:
        raise SourceParseError(source, str(e))
    return data_rows(rows)


def data_rows(rows: List[List[str]]) -> List[List[str]]:
    """Drop the header row and rows without any non-blank cell"""
    return [row for row in rows[1:] if any(str(cell).strip() for cell in row)]


class AcquisitionStrategy:
    """One way of getting the sheet's rows"""

    name = ""

    async def fetch(self, source: 'SpreadsheetDataSource') -> List[List[str]]:
        raise NotImplementedError


class DirectFetch(AcquisitionStrategy):
    """Fetch the export URL directly; works for published sheets"""

    name = "direct"

    async def fetch(self, source):
        if not source.export_url:
            raise SourceMisconfigured(source.kind.value, "sheetUrl")
        response = await source._get(source.export_url)
        return parse_table(response.text)


class RelayFetch(AcquisitionStrategy):
    """Fetch through a pass-through relay, ``GET <relay>?url=<export url>``"""

    name = "relay"

    async def fetch(self, source):
        if not source.export_url:
            raise SourceMisconfigured(source.kind.value, "sheetUrl")
        if not source.settings.relay_url:
            raise SourceMisconfigured(source.kind.value, "proxyUrl")
        response = await source._get(source.settings.relay_url,
                                     params={"url": source.export_url})
        return parse_table(response.text)


class ServiceAccountFetch(AcquisitionStrategy):
    """Read a private sheet with gspread and a service account"""

    name = "service_account"

    async def fetch(self, source):
        if not source.settings.service_account_info:
            raise SourceMisconfigured(source.kind.value, "serviceAccountInfo")
        return await asyncio.to_thread(self._read, source.settings)

    def _read(self, settings: SpreadsheetSettings) -> List[List[str]]:
        try:
            creds = Credentials.from_service_account_info(
                settings.service_account_info, scopes=SCOPES)
            client = gspread.authorize(creds)
            spreadsheet = client.open_by_url(settings.sheet_url)
            _, gid = _sheet_id_and_gid(settings.sheet_url)
            worksheet = spreadsheet.get_worksheet_by_id(int(gid)) if gid else spreadsheet.sheet1
            return data_rows(worksheet.get_all_values())
        except Exception as e:
            raise SourceUnavailable(SourceKind.SPREADSHEET.value, f"service account read failed: {e}")


class ManualFile(AcquisitionStrategy):
    """Read a CSV export the organizer saved locally"""

    name = "manual"

    async def fetch(self, source):
        if not source.settings.manual_file:
            raise SourceMisconfigured(source.kind.value, "manualFile")
        path = Path(source.settings.manual_file)
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8-sig")
        except OSError as e:
            raise SourceUnavailable(source.kind.value, f"cannot read {path}: {e}")
        return parse_table(text)


STRATEGIES: Dict[str, AcquisitionStrategy] = {
    strategy.name: strategy
    for strategy in (DirectFetch(), RelayFetch(), ServiceAccountFetch(), ManualFile())
}


class SpreadsheetDataSource(HttpDataSource):
    """
    Data source backed by a published spreadsheet

    The sheet is read-only; check-ins are stored on the CSV-store
    endpoint named by ``checkin_store_url``.
    """

    kind = SourceKind.SPREADSHEET

    def __init__(self, settings: SpreadsheetSettings, email_validator=None, client=None,
                 strategies: Optional[Dict[str, AcquisitionStrategy]] = None):
        super().__init__(settings, email_validator, client)
        self.strategies = strategies if strategies is not None else STRATEGIES
        self.check_ins = (CheckinOverlayClient(self, settings.checkin_store_url)
                          if settings.checkin_store_url else None)
        self.last_strategy: Optional[str] = None

    def supports_polling(self) -> bool:
        return True

    @property
    def export_url(self) -> str:
        return build_export_url(self.settings.sheet_url)

    def ordered_strategies(self) -> List[AcquisitionStrategy]:
        ordered = []
        for name in self.settings.fallback_methods:
            strategy = self.strategies.get(name)
            if strategy is None:
                logger.warning("Unknown spreadsheet acquisition method %r ignored", name)
                continue
            ordered.append(strategy)
        return ordered

    async def fetch_rows(self) -> List[List[str]]:
        """
        Run the acquisition strategies in order

        Returns:
            Data rows from the first strategy that produced any

        Raises:
            SourceMisconfigured: If neither a sheet URL nor a manual file is set
            SourceUnavailable: If every strategy failed
        """
        if not self.settings.sheet_url and not self.settings.manual_file:
            raise SourceMisconfigured(self.kind.value, "sheetUrl")

        for strategy in self.ordered_strategies():
            try:
                logger.debug("Trying spreadsheet acquisition method: %s", strategy.name)
                rows = await strategy.fetch(self)
            except EventCheckinException as e:
                logger.warning("Method %s failed: %s", strategy.name, e)
                continue
            if rows:
                logger.info("Loaded %d rows using %s method", len(rows), strategy.name)
                self.last_strategy = strategy.name
                return rows
            logger.warning("Method %s returned no rows", strategy.name)

        raise SourceUnavailable(
            self.kind.value,
            "all acquisition methods failed; upload the sheet manually instead",
        )

    async def load_data(self) -> List[AttendeeRecord]:
        rows = await self.fetch_rows()
        records = self._normalize(rows)
        if self.check_ins is None:
            return records
        return await self.check_ins.overlay(records)

    async def update_attendee(self, attendee_id: str, status: CheckInStatus,
                              checked_in_at: Optional[datetime]) -> None:
        if self.check_ins is None:
            raise UpdateRejected(attendee_id, "no check-in store configured for the spreadsheet")
        await self.check_ins.push(attendee_id, status, checked_in_at)

    async def clear_check_ins(self, admin_token: str) -> None:
        if self.check_ins is None:
            raise SourceMisconfigured(self.kind.value, "checkinUrl")
        await self.check_ins.clear(admin_token)
