"""Formatter rendering calendar events into chat digests."""
import html
from datetime import date, datetime, timedelta
from typing import List, Tuple

from processor.models import Date, Event, EventTime, Instant


class MessageFormatter:
    """Renders events as a plain-text body and an HTML body."""

    HEADER = 'Upcoming Events'
    NO_EVENTS = 'No events this period'
    FAILURE = 'Failed to get calendar events'
    INVALID_DATE = 'Invalid Date: Check Calendar'

    def format_events(self, events: List[Event]) -> Tuple[str, str]:
        """
        Render a digest of events.

        Args:
            events: Events ordered by start time

        Returns:
            Tuple of (plain text body, HTML body)
        """
        body = f"{self.HEADER}\n\n"
        html_body = f"<h3>{self.HEADER}</h3><br />"

        if not events:
            body += self.NO_EVENTS
            html_body += f"<p>{self.NO_EVENTS}</p>"
            return body, html_body

        entries = []
        for event in events:
            times = self.format_event_times(event.start, event.end)
            entries.append(f"{event.name}:\n{times}")
            html_body += (
                f"<p><strong>{html.escape(event.name)}</strong><br />"
                f"{html.escape(times)}</p>"
            )

        body += '\n\n'.join(entries)
        return body, html_body

    def format_failure(self) -> Tuple[str, str]:
        """Render the digest sent when the calendar could not be fetched."""
        return self.FAILURE, f"<p>{self.FAILURE}</p>"

    def format_event_times(self, start: EventTime, end: EventTime) -> str:
        """
        Render the time span of an event.

        Args:
            start: Event start
            end: Event end

        Returns:
            Human-readable span, e.g. "2:00 PM – 3:00 PM Monday, 17 June, 2024"
        """
        if isinstance(start, Date) and isinstance(end, Date):
            if start.value == end.value - timedelta(days=1):
                return f"{self.format_date(start.value)} – All Day"
            return f"{self.format_date(start.value)} – {self.format_date(end.value)}"

        if isinstance(start, Instant) and isinstance(end, Instant):
            if start.value.date() == end.value.date():
                return f"{self.format_time(start.value)} – {self.format_timestamp(end.value)}"
            return f"{self.format_timestamp(start.value)} – {self.format_timestamp(end.value)}"

        return self.INVALID_DATE

    @staticmethod
    def format_date(value: date) -> str:
        """Render a date as "Monday, 17 June, 2024"."""
        return f"{value:%A}, {value.day} {value:%B}, {value:%Y}"

    @staticmethod
    def format_time(value: datetime) -> str:
        """Render a time of day as "2:00 PM"."""
        hour = value.hour % 12 or 12
        meridiem = 'AM' if value.hour < 12 else 'PM'
        return f"{hour}:{value:%M} {meridiem}"

    def format_timestamp(self, value: datetime) -> str:
        """Render a timestamp as "2:00 PM Monday, 17 June, 2024"."""
        return f"{self.format_time(value)} {self.format_date(value)}"
