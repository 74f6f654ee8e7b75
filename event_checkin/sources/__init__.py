"""
Data source adapters

One adapter per backend, all implementing DataSource, plus a factory
that builds the adapter matching a source kind.
"""

from typing import Optional

from ..config import DataSourceConfig
from ..models import SourceKind
from .base import CheckinOverlayClient, DataSource, HttpDataSource, PushChannel
from .csv_source import CsvDataSource
from .database import DatabaseDataSource
from .spreadsheet import SpreadsheetDataSource, build_export_url, parse_table

SOURCE_CLASSES = {
    SourceKind.CSV: CsvDataSource,
    SourceKind.SPREADSHEET: SpreadsheetDataSource,
    SourceKind.DATABASE: DatabaseDataSource,
}


class DataSourceFactory:
    """
    Factory class for creating data source instances

    Centralizes the mapping from configured source type to adapter.
    """

    def __init__(self, email_validator=None):
        self.email_validator = email_validator

    def create(self, config: DataSourceConfig, kind: Optional[SourceKind] = None) -> DataSource:
        """
        Create the adapter for ``kind`` (default: the active type)

        Args:
            config: Data source configuration
            kind: Optional source kind overriding the active one

        Returns:
            DataSource instance

        Raises:
            ValueError: If the source type is not supported
        """
        kind = SourceKind.from_value(kind or config.active_type)
        source_class = SOURCE_CLASSES[kind]
        return source_class(config.settings_for(kind), email_validator=self.email_validator)

    def __call__(self, config: DataSourceConfig, kind: Optional[SourceKind] = None) -> DataSource:
        return self.create(config, kind)


__all__ = [
    "CheckinOverlayClient",
    "CsvDataSource",
    "DataSource",
    "DataSourceFactory",
    "DatabaseDataSource",
    "HttpDataSource",
    "PushChannel",
    "SpreadsheetDataSource",
    "build_export_url",
    "parse_table",
]
