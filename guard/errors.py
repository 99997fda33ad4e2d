"""
Guard Exceptions
"""


class GuardError(Exception):
    """Base class for access-guard errors."""
    pass


class InvalidIdentifier(GuardError):
    """Raised when a login identifier is malformed (before any state mutation)."""
    pass


class SinkUnavailable(GuardError):
    """Raised when the audit sink cannot accept an event."""
    pass


class UnknownSession(GuardError):
    """Raised when a session id is not tracked."""
    pass


class SessionExpired(GuardError):
    """Raised when activity arrives for a session in a terminal state."""
    pass


class AlertNotFound(GuardError):
    """Raised when resolving an alert id that does not exist."""
    pass
