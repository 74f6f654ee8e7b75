"""
Custom Exceptions for Event Check-in

This module defines the error taxonomy shared by the data source adapters,
the source manager and the HTTP layer. Every adapter failure is translated
into one of these classes before it leaves the adapter.
"""


class EventCheckinException(Exception):
    """
    Base exception for the event check-in package

    All custom exceptions in the system inherit from this base class
    for consistent error handling.
    """

    def __init__(self, message: str, error_code: str = None):
        """
        Initialize event check-in exception

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def __str__(self) -> str:
        """String representation of the exception"""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class SourceMisconfigured(EventCheckinException):
    """
    Raised when a data source lacks the settings it needs

    Fatal until the source is reconfigured; never retried automatically.
    """

    def __init__(self, source: str, setting: str, details: str = None):
        """
        Initialize source misconfigured exception

        Args:
            source: Source type that is misconfigured
            setting: Name of the missing or invalid setting
            details: Optional extra explanation
        """
        message = f"{source} source is missing required setting '{setting}'"
        if details:
            message = f"{message}: {details}"
        super().__init__(message, "SOURCE_MISCONFIGURED")
        self.source = source
        self.setting = setting


class SourceUnavailable(EventCheckinException):
    """
    Raised when a data source cannot be reached

    Transient; safe to retry. Polling retries naturally on the next tick.
    """

    def __init__(self, source: str, details: str):
        message = f"{source} source unavailable: {details}"
        super().__init__(message, "SOURCE_UNAVAILABLE")
        self.source = source
        self.details = details


class SourceParseError(EventCheckinException):
    """
    Raised when a source payload cannot be parsed into rows
    """

    def __init__(self, source: str, details: str):
        message = f"Could not parse {source} payload: {details}"
        super().__init__(message, "SOURCE_PARSE_ERROR")
        self.source = source
        self.details = details


class UpdateRejected(EventCheckinException):
    """
    Raised when persisting a check-in change fails

    Callers treat this as recoverable: the manager rolls back its
    optimistic change and the user may retry.
    """

    def __init__(self, attendee_id: str, reason: str):
        """
        Initialize update rejected exception

        Args:
            attendee_id: ID of the attendee whose update failed
            reason: Reason reported by the backend
        """
        message = f"Check-in update for attendee '{attendee_id}' rejected: {reason}"
        super().__init__(message, "UPDATE_REJECTED")
        self.attendee_id = attendee_id
        self.reason = reason


class AttendeeNotFound(EventCheckinException):
    """
    Raised when an attendee is not in the current roster
    """

    def __init__(self, attendee_id: str):
        message = f"Attendee with ID '{attendee_id}' not found"
        super().__init__(message, "ATTENDEE_NOT_FOUND")
        self.attendee_id = attendee_id
