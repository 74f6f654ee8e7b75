"""
Main Application Module for Event Check-in

This module contains the Flask application that exposes the data source
manager to the browser: roster listing with search and sorting, live
statistics, check-in and undo, refresh and source switching.

The manager is asynchronous. It runs on a dedicated event loop in a
background thread; views submit coroutines to that loop and wait for
the result, so all roster mutations stay on one thread.
"""

import asyncio
import logging
import os
import threading
from typing import Optional

from flask import Flask, request

from .config import DataSourceConfig, load_config
from .exceptions import (
    AttendeeNotFound,
    EventCheckinException,
    SourceMisconfigured,
    SourceUnavailable,
    UpdateRejected,
)
from .logging_config import setup_logging
from .manager import DataSourceManager
from .models import CheckInStatus
from .roster import filter_by_status, search_roster, sort_roster

logger = logging.getLogger(__name__)


class EventCheckinApp:
    """
    Main Flask application class for event check-in

    Owns the Flask app, the source manager and the event loop thread
    the manager runs on.
    """

    def __init__(self, config: Optional[dict] = None,
                 source_config: Optional[DataSourceConfig] = None,
                 manager: Optional[DataSourceManager] = None):
        """
        Initialize the event check-in application

        Args:
            config: Optional Flask configuration overrides
            source_config: Data source configuration; loaded from file
                and environment when omitted
            manager: Optional pre-built manager
        """
        self.app = Flask(__name__)
        self._configure_app(config)

        self.manager = manager or DataSourceManager(source_config or load_config())

        self._loop = asyncio.new_event_loop()
        self._thread: Optional[threading.Thread] = None

        self._register_routes()
        self._register_error_handlers()

    def _configure_app(self, config: Optional[dict] = None) -> None:
        """
        Configure Flask application settings

        Args:
            config: Optional configuration dictionary
        """
        default_config = {
            'SECRET_KEY': os.environ.get("FLASK_SECRET_KEY", "dev-secret-key-change-in-production"),
            'DEBUG': False,
            'TESTING': False,
            'REQUEST_TIMEOUT': 30.0,
        }

        if config:
            default_config.update(config)

        self.app.config.update(default_config)
        self.app.secret_key = default_config['SECRET_KEY']

    # -- event loop bridge -----------------------------------------------

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def _ensure_loop(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run_loop, name="event-checkin-loop", daemon=True)
            self._thread.start()

    def call(self, coro):
        """
        Run a coroutine on the manager's loop and wait for its result

        Raises:
            Whatever the coroutine raises
        """
        self._ensure_loop()
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout=self.app.config['REQUEST_TIMEOUT'])

    def call_sync(self, fn, *args):
        """Run a plain manager method on the loop thread"""
        async def runner():
            return fn(*args)
        return self.call(runner())

    def start(self) -> 'EventCheckinApp':
        """Start the loop thread and load the configured source"""
        self._ensure_loop()
        self.call(self.manager.initialize())
        logger.info("Event check-in started with %s source",
                    self.manager.get_active_source_type().value)
        return self

    def shutdown(self) -> None:
        """Dispose the manager and stop the loop thread"""
        if self._thread is None:
            return
        self.call(self.manager.dispose())
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        self._thread = None

    # -- routing ---------------------------------------------------------

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        self.app.add_url_rule("/health", "health", self.health)
        self.app.add_url_rule("/api/attendees", "attendees", self.attendees)
        self.app.add_url_rule("/api/stats", "stats", self.stats)
        self.app.add_url_rule("/api/attendees/<attendee_id>/check-in", "check_in",
                              self.check_in, methods=["POST"])
        self.app.add_url_rule("/api/attendees/<attendee_id>/undo", "undo",
                              self.undo, methods=["POST"])
        self.app.add_url_rule("/api/refresh", "refresh", self.refresh, methods=["POST"])
        self.app.add_url_rule("/api/source", "source", self.source, methods=["GET"])
        self.app.add_url_rule("/api/source", "switch_source", self.switch_source,
                              methods=["POST"])
        self.app.add_url_rule("/api/check-ins/reset", "reset_check_ins",
                              self.reset_check_ins, methods=["POST"])

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        def error_body(e: EventCheckinException):
            return {"error": e.message, "code": e.error_code}

        @self.app.errorhandler(AttendeeNotFound)
        def handle_attendee_not_found(e):
            return error_body(e), 404

        @self.app.errorhandler(UpdateRejected)
        def handle_update_rejected(e):
            return error_body(e), 502

        @self.app.errorhandler(SourceUnavailable)
        def handle_source_unavailable(e):
            return error_body(e), 503

        @self.app.errorhandler(SourceMisconfigured)
        def handle_source_misconfigured(e):
            return error_body(e), 400

        @self.app.errorhandler(EventCheckinException)
        def handle_event_checkin_exception(e):
            return error_body(e), 500

    # -- views -----------------------------------------------------------

    def health(self):
        """Liveness plus the manager's source status"""
        status = self.call_sync(self.manager.get_status)
        return {"status": "ok", **status}

    def attendees(self):
        """
        Roster listing

        Query parameters: ``q`` search text, ``status`` (pending or
        checked-in), ``sort`` (an attendee field name) and ``direction``
        (asc or desc).
        """
        roster = self.call_sync(self.manager.get_current_roster)

        status_param = request.args.get("status")
        try:
            status = CheckInStatus(status_param) if status_param else None
        except ValueError:
            return {"error": f"Unknown status: {status_param}"}, 400

        records = filter_by_status(search_roster(roster, request.args.get("q", "")), status)
        try:
            records = sort_roster(records, request.args.get("sort", "attendeeName"),
                                  request.args.get("direction", "asc") == "desc")
        except ValueError as e:
            return {"error": str(e)}, 400

        return {
            "attendees": [record.to_dict() for record in records],
            "count": len(records),
            "stats": self.call_sync(self.manager.get_stats).to_dict(),
        }

    def stats(self):
        """Live check-in statistics"""
        return self.call_sync(self.manager.get_stats).to_dict()

    def check_in(self, attendee_id: str):
        record = self.call(self.manager.update_check_in(attendee_id, CheckInStatus.CHECKED_IN))
        return {"attendee": record.to_dict()}

    def undo(self, attendee_id: str):
        record = self.call(self.manager.update_check_in(attendee_id, CheckInStatus.PENDING))
        return {"attendee": record.to_dict()}

    def refresh(self):
        roster = self.call(self.manager.refresh())
        return {"count": len(roster), **self.call_sync(self.manager.get_status)}

    def source(self):
        status = self.call_sync(self.manager.get_status)
        return {**status, "config": self._public_config()}

    def _public_config(self) -> dict:
        # Credentials stay server-side
        config = self.manager.config.to_dict()
        config["settings"]["googlesheets"].pop("serviceAccountInfo", None)
        config["settings"]["supabase"].pop("dsn", None)
        return config

    def switch_source(self):
        """
        Switch the active data source

        Body: ``{"type": ..., "settings": {...}, "confirm": true}``.
        Without ``confirm`` nothing changes and 409 is returned.
        """
        payload = request.get_json(silent=True) or {}
        if not payload.get("type"):
            return {"error": "Missing source type"}, 400
        try:
            switched = self.call(self.manager.switch_source(
                payload["type"], payload.get("settings"), bool(payload.get("confirm"))))
        except ValueError as e:
            return {"error": str(e)}, 400

        if not switched:
            return {
                "switched": False,
                "error": "Switching sources clears all current check-in data; "
                         "resend with confirm=true to continue",
            }, 409
        return {"switched": True, **self.call_sync(self.manager.get_status)}

    def reset_check_ins(self):
        payload = request.get_json(silent=True) or {}
        if not payload.get("confirm"):
            return {"error": "Reset all check-ins requires confirm=true"}, 409
        count = self.call(self.manager.reset_check_ins())
        return {"reset": count}

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask application

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        try:
            self.app.run(host=host, port=port, debug=self.app.config['DEBUG'],
                         use_reloader=False)
        finally:
            self.shutdown()


def create_app(config: Optional[dict] = None,
               source_config: Optional[DataSourceConfig] = None,
               manager: Optional[DataSourceManager] = None,
               start: bool = True) -> EventCheckinApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional Flask configuration overrides
        source_config: Optional data source configuration
        manager: Optional pre-built manager
        start: Whether to start the loop and load the source now

    Returns:
        Configured EventCheckinApp instance
    """
    application = EventCheckinApp(config, source_config, manager)
    if start:
        application.start()
    return application


def create_development_app() -> EventCheckinApp:
    """
    Create application configured for development

    Returns:
        EventCheckinApp configured for development
    """
    setup_logging("DEBUG")
    return create_app({'DEBUG': True})


def create_production_app() -> EventCheckinApp:
    """
    Create application configured for production

    Returns:
        EventCheckinApp configured for production

    Raises:
        RuntimeError: If FLASK_SECRET_KEY is not set
    """
    secret_key = os.environ.get("FLASK_SECRET_KEY")
    if not secret_key:
        raise RuntimeError("FLASK_SECRET_KEY must be set in production")
    setup_logging(os.environ.get("CHECKIN_LOG_LEVEL", "INFO"))
    return create_app({'DEBUG': False, 'SECRET_KEY': secret_key})


if __name__ == "__main__":
    setup_logging(os.environ.get("CHECKIN_LOG_LEVEL", "INFO"))
    create_app().run(
        host=os.environ.get("CHECKIN_HOST", "127.0.0.1"),
        port=int(os.environ.get("CHECKIN_PORT", 5000)),
    )
