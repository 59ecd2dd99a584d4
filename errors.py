"""Exception types shared by the calendar bot components."""
from typing import Optional


class CalendarBotError(Exception):
    """Base class for all calendar bot errors."""


class TransportError(CalendarBotError):
    """HTTP or network failure reaching the calendar or Matrix server."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = True
    ):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class ProtocolError(CalendarBotError):
    """Unexpected status code or unusable response body from a server."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(CalendarBotError):
    """A single calendar payload could not be turned into an event."""


class MalformedPayload(ParseError):
    """No calendar object could be decoded from the payload."""


class UnsupportedPayload(ParseError):
    """The payload decodes, but does not hold exactly one event."""


class MissingField(ParseError):
    """A mandatory event field is absent."""

    def __init__(self, field: str, resource_url: str = ''):
        super().__init__(f"Missing {field} for item {resource_url}")
        self.field = field


class InconsistentTimes(ParseError):
    """DTSTART and DTEND mix a date with a timestamp."""


class InvertedRange(ParseError):
    """An all-day event starts after it ends."""


class AuthError(CalendarBotError):
    """Login to the Matrix homeserver was refused."""


class PersistenceError(CalendarBotError):
    """The session record could not be read or written."""
