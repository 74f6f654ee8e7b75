"""
Data source configuration

Settings are accepted in the JSON layout the admin panel stores
(camelCase keys, poll intervals in milliseconds) and exposed as
dataclasses with intervals in seconds. Environment variables override
values read from the optional config file.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple

from .exceptions import SourceMisconfigured
from .models import SourceKind

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_TABLE_NAME = "html_attendees"
DEFAULT_FALLBACK_METHODS = ("direct", "relay", "manual")


def _seconds(value, default: float) -> float:
    """Convert a millisecond interval from the wire into seconds"""
    if value is None or value == "":
        return default
    try:
        return max(float(value), 0.0) / 1000.0
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid poll interval %r", value)
        return default


def _milliseconds(seconds: float) -> int:
    return int(round(seconds * 1000))


@dataclass(frozen=True)
class CsvSettings:
    """Settings for the CSV-store endpoint"""
    poll_url: str = ""
    poll_interval: float = DEFAULT_POLL_INTERVAL

    @classmethod
    def from_dict(cls, data: Mapping) -> 'CsvSettings':
        return cls(
            poll_url=(data.get("pollUrl") or "").strip(),
            poll_interval=_seconds(data.get("pollInterval"), DEFAULT_POLL_INTERVAL),
        )

    def to_dict(self) -> Dict:
        return {"pollUrl": self.poll_url, "pollInterval": _milliseconds(self.poll_interval)}


@dataclass(frozen=True)
class SpreadsheetSettings:
    """
    Settings for a published spreadsheet

    ``checkin_store_url`` points at the CSV-store endpoint that keeps
    check-in state, since the sheet itself is read-only.
    """
    sheet_url: str = ""
    poll_interval: float = DEFAULT_POLL_INTERVAL
    relay_url: str = ""
    checkin_store_url: str = ""
    manual_file: str = ""
    fallback_methods: Tuple[str, ...] = DEFAULT_FALLBACK_METHODS
    service_account_info: Optional[Dict] = None

    @classmethod
    def from_dict(cls, data: Mapping) -> 'SpreadsheetSettings':
        methods = data.get("fallbackMethods") or DEFAULT_FALLBACK_METHODS
        return cls(
            sheet_url=(data.get("sheetUrl") or "").strip(),
            poll_interval=_seconds(data.get("pollInterval"), DEFAULT_POLL_INTERVAL),
            relay_url=(data.get("proxyUrl") or data.get("relayUrl") or "").strip(),
            checkin_store_url=(data.get("checkinUrl") or "").strip(),
            manual_file=(data.get("manualFile") or "").strip(),
            fallback_methods=tuple(str(method).strip().lower() for method in methods),
            service_account_info=data.get("serviceAccountInfo"),
        )

    def to_dict(self) -> Dict:
        return {
            "sheetUrl": self.sheet_url,
            "pollInterval": _milliseconds(self.poll_interval),
            "proxyUrl": self.relay_url,
            "checkinUrl": self.checkin_store_url,
            "manualFile": self.manual_file,
            "fallbackMethods": list(self.fallback_methods),
            "serviceAccountInfo": self.service_account_info,
        }


@dataclass(frozen=True)
class DatabaseSettings:
    """Settings for the Postgres attendee table"""
    dsn: str = ""
    table_name: str = DEFAULT_TABLE_NAME
    channel: str = ""

    # Push-based; never polled
    poll_interval: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping) -> 'DatabaseSettings':
        return cls(
            dsn=(data.get("dsn") or data.get("databaseUrl") or "").strip(),
            table_name=(data.get("tableName") or DEFAULT_TABLE_NAME).strip(),
            channel=(data.get("channel") or "").strip(),
        )

    def to_dict(self) -> Dict:
        return {"dsn": self.dsn, "tableName": self.table_name, "channel": self.channel}

    @property
    def notify_channel(self) -> str:
        return self.channel or f"{self.table_name}_changes"


SETTINGS_CLASSES = {
    SourceKind.CSV: CsvSettings,
    SourceKind.SPREADSHEET: SpreadsheetSettings,
    SourceKind.DATABASE: DatabaseSettings,
}


@dataclass(frozen=True)
class DataSourceConfig:
    """Active source type plus one settings object per source"""
    active_type: SourceKind = SourceKind.CSV
    csv: CsvSettings = field(default_factory=CsvSettings)
    spreadsheet: SpreadsheetSettings = field(default_factory=SpreadsheetSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)

    def settings_for(self, kind: SourceKind):
        """Settings object for ``kind``"""
        return {
            SourceKind.CSV: self.csv,
            SourceKind.SPREADSHEET: self.spreadsheet,
            SourceKind.DATABASE: self.database,
        }[SourceKind.from_value(kind)]

    @property
    def active_settings(self):
        return self.settings_for(self.active_type)

    def with_source(self, kind, overrides: Optional[Mapping] = None) -> 'DataSourceConfig':
        """
        Return a config with ``kind`` active and its settings overridden

        Args:
            kind: Source type to activate
            overrides: Optional camelCase settings merged over the current ones

        Returns:
            New DataSourceConfig
        """
        kind = SourceKind.from_value(kind)
        settings = self.settings_for(kind)
        if overrides:
            merged = dict(settings.to_dict())
            merged.update(overrides)
            settings = SETTINGS_CLASSES[kind].from_dict(merged)
        attribute = {
            SourceKind.CSV: "csv",
            SourceKind.SPREADSHEET: "spreadsheet",
            SourceKind.DATABASE: "database",
        }[kind]
        return replace(self, active_type=kind, **{attribute: settings})

    @classmethod
    def from_dict(cls, data: Mapping) -> 'DataSourceConfig':
        """
        Create config from the stored JSON layout

        Accepts either the data source block itself or a full app config
        holding it under ``dataSource``.
        """
        block = data.get("dataSource", data)
        settings = block.get("settings") or {}
        try:
            active_type = SourceKind.from_value(block.get("type") or SourceKind.CSV.value)
        except ValueError as e:
            raise SourceMisconfigured("config", "type", str(e))
        return cls(
            active_type=active_type,
            csv=CsvSettings.from_dict(settings.get("csv") or {}),
            spreadsheet=SpreadsheetSettings.from_dict(settings.get("googlesheets") or {}),
            database=DatabaseSettings.from_dict(settings.get("supabase") or {}),
        )

    def to_dict(self) -> Dict:
        return {
            "type": self.active_type.value,
            "settings": {
                "csv": self.csv.to_dict(),
                "googlesheets": self.spreadsheet.to_dict(),
                "supabase": self.database.to_dict(),
            },
        }


ENV_OVERRIDES = (
    ("CHECKIN_CSV_POLL_URL", "csv", "pollUrl"),
    ("CHECKIN_SHEET_URL", "googlesheets", "sheetUrl"),
    ("CHECKIN_PROXY_URL", "googlesheets", "proxyUrl"),
    ("CHECKIN_CHECKIN_STORE_URL", "googlesheets", "checkinUrl"),
    ("CHECKIN_DATABASE_URL", "supabase", "dsn"),
    ("CHECKIN_TABLE_NAME", "supabase", "tableName"),
)


def _read_config_file(path: str) -> Dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        logger.info("Config file %s not found; using defaults", path)
        return {}
    except json.JSONDecodeError as e:
        raise SourceMisconfigured("config", path, f"invalid JSON: {e}")
    except OSError as e:
        raise SourceMisconfigured("config", path, str(e))


def load_config(path: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> DataSourceConfig:
    """
    Load data source configuration from file and environment

    Args:
        path: Optional JSON file; defaults to ``CHECKIN_CONFIG_FILE``
        environ: Environment mapping, ``os.environ`` by default

    Returns:
        DataSourceConfig instance

    Raises:
        SourceMisconfigured: If the file or an override is invalid
    """
    if environ is None:
        environ = os.environ

    path = path or environ.get("CHECKIN_CONFIG_FILE")
    data = _read_config_file(path) if path else {}
    block = dict(data.get("dataSource", data))
    settings = {name: dict(values) for name, values in (block.get("settings") or {}).items()}

    for variable, source, key in ENV_OVERRIDES:
        if environ.get(variable):
            settings.setdefault(source, {})[key] = environ[variable]

    if environ.get("GOOGLE_SERVICE_ACCOUNT_JSON"):
        try:
            info = json.loads(environ["GOOGLE_SERVICE_ACCOUNT_JSON"])
        except json.JSONDecodeError as e:
            raise SourceMisconfigured("googlesheets", "GOOGLE_SERVICE_ACCOUNT_JSON", str(e))
        settings.setdefault("googlesheets", {})["serviceAccountInfo"] = info

    if environ.get("CHECKIN_SOURCE_TYPE"):
        block["type"] = environ["CHECKIN_SOURCE_TYPE"]

    block["settings"] = settings
    return DataSourceConfig.from_dict(block)
