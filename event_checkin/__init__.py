"""
Event Check-in Package

Data source core for an event check-in desk. Attendee rosters are loaded
from one of three interchangeable backends (a CSV-store endpoint, a
published spreadsheet or a Postgres table), normalized into a single
record shape and kept current by polling or push notifications while
staff check attendees in.

Main Components:
- models: Attendee record, status and source kind types
- normalizer: Raw row to AttendeeRecord conversion
- sources: One adapter per backend plus the adapter factory
- manager: Active source lifecycle, roster state and optimistic updates
- config: Data source settings from file and environment
- app: Flask JSON surface over the manager

Usage:
    from event_checkin import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"

from .app import EventCheckinApp, create_app, create_development_app, create_production_app
from .config import DataSourceConfig, load_config
from .dispatcher import UpdateDispatcher
from .exceptions import (
    AttendeeNotFound,
    EventCheckinException,
    SourceMisconfigured,
    SourceParseError,
    SourceUnavailable,
    UpdateRejected,
)
from .manager import DataSourceManager, ManagerState
from .models import AttendeeRecord, CheckInStatus, PushDelta, SourceKind
from .normalizer import normalize, normalize_rows
from .sources import DataSource, DataSourceFactory
from .validation import EmailValidator

__all__ = [
    # App factory functions
    'EventCheckinApp',
    'create_app',
    'create_development_app',
    'create_production_app',

    # Configuration
    'DataSourceConfig',
    'load_config',

    # Data models
    'AttendeeRecord',
    'CheckInStatus',
    'PushDelta',
    'SourceKind',

    # Core
    'DataSource',
    'DataSourceFactory',
    'DataSourceManager',
    'EmailValidator',
    'ManagerState',
    'UpdateDispatcher',
    'normalize',
    'normalize_rows',

    # Exceptions
    'EventCheckinException',
    'SourceMisconfigured',
    'SourceUnavailable',
    'SourceParseError',
    'UpdateRejected',
    'AttendeeNotFound',
]
