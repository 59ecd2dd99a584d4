"""Parser turning raw iCal payloads into Event objects."""
import logging
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

from icalendar import Calendar

from errors import (
    InconsistentTimes,
    InvertedRange,
    MalformedPayload,
    MissingField,
    UnsupportedPayload,
)
from processor.models import Date, Event, EventTime, ExtraProperty, Instant

logger = logging.getLogger(__name__)


class ICalParser:
    """Parser for single-event iCal calendar objects (RFC 5545)."""

    UTC_TIMESTAMP_FORMAT = '%Y%m%dT%H%M%SZ'
    LOCAL_TIMESTAMP_FORMAT = '%Y%m%dT%H%M%S'
    DATE_FORMAT = '%Y%m%d'

    TIME_PROPERTIES = ('DTSTART', 'DTEND', 'LAST-MODIFIED', 'CREATED')

    def parse(self, payload_text: str, resource_url: str) -> Event:
        """
        Parse one calendar object into an Event.

        Args:
            payload_text: Raw iCal text holding exactly one VCALENDAR
            resource_url: URL of the calendar resource the payload came from

        Returns:
            Parsed Event

        Raises:
            ParseError: If the payload is malformed, holds anything other
                than a single VEVENT, or misses mandatory fields
        """
        calendar = self._decode_single_calendar(payload_text, resource_url)
        event = self._single_event(calendar, resource_url)

        name = None
        uid = None
        dtstart = None
        dtend = None
        location = None
        description = None
        last_modified = None
        creation_date = None
        extra_properties: List[ExtraProperty] = []

        for prop_name, value in self._iter_properties(event):
            if prop_name == 'SUMMARY':
                name = str(value)
            elif prop_name == 'UID':
                uid = str(value)
            elif prop_name == 'DTSTART':
                dtstart = self._parse_event_time(self._raw_value(value))
            elif prop_name == 'DTEND':
                dtend = self._parse_event_time(self._raw_value(value))
            elif prop_name == 'LOCATION':
                location = str(value)
            elif prop_name == 'DESCRIPTION':
                description = str(value)
            elif prop_name == 'LAST-MODIFIED':
                last_modified = self._parse_timestamp(self._raw_value(value))
            elif prop_name == 'CREATED':
                creation_date = self._parse_timestamp(self._raw_value(value))
            else:
                # Unrecognized properties are kept verbatim
                extra_properties.append(
                    (prop_name, self._raw_parameters(value), self._raw_value(value))
                )

        # icalendar drops values it cannot decode and records them here
        for prop_name, error in getattr(event, 'errors', []):
            if prop_name in self.TIME_PROPERTIES:
                logger.warning(
                    f"Invalid timestamp for {prop_name} in item {resource_url}: {error}"
                )

        if name is None:
            raise MissingField('name', resource_url)
        if uid is None:
            raise MissingField('uid', resource_url)
        if dtstart is None:
            raise MissingField('dtstart', resource_url)
        if dtend is None:
            raise MissingField('dtend', resource_url)
        if last_modified is None:
            # Required by RFC 5545
            raise MissingField('last_modified', resource_url)

        common = dict(
            name=name,
            uid=uid,
            last_modified=last_modified,
            source_url=resource_url,
            location=location,
            description=description,
            creation_date=creation_date,
            extra_properties=tuple(extra_properties)
        )

        if isinstance(dtstart, Instant) and isinstance(dtend, Instant):
            return Event.new_timed(start=dtstart.value, end=dtend.value, **common)

        if isinstance(dtstart, Date) and isinstance(dtend, Date):
            if dtstart.value > dtend.value:
                raise InvertedRange(f"DTSTART for item {resource_url} is after DTEND")
            return Event.new_all_day(start=dtstart.value, end=dtend.value, **common)

        if isinstance(dtstart, Date):
            raise InconsistentTimes(
                f"DTSTART for item {resource_url} is a date, but DTEND is a datetime"
            )
        raise InconsistentTimes(
            f"DTEND for item {resource_url} is a date, but DTSTART is a datetime"
        )

    def _decode_single_calendar(self, payload_text: str, resource_url: str) -> Calendar:
        try:
            components = Calendar.from_ical(payload_text, multiple=True)
        except ValueError as e:
            raise MalformedPayload(
                f"Unable to parse iCal data for item {resource_url}: {e}"
            ) from e

        if not components:
            raise MalformedPayload(f"Invalid iCal data to parse for item {resource_url}")
        if components[0].name != 'VCALENDAR':
            raise MalformedPayload(
                f"Expected VCALENDAR for item {resource_url}, got {components[0].name}"
            )
        if len(components) > 1:
            raise UnsupportedPayload("Parsing multiple items is not supported")
        return components[0]

    def _single_event(self, calendar: Calendar, resource_url: str):
        counts = {'VEVENT': 0, 'VTODO': 0, 'VJOURNAL': 0}
        events = []
        for component in calendar.subcomponents:
            if component.name in counts:
                counts[component.name] += 1
            if component.name == 'VEVENT':
                events.append(component)

        if counts['VEVENT'] != 1:
            raise UnsupportedPayload(
                f"Only a single EVENT is supported, item {resource_url} "
                f"holds {counts['VEVENT']}"
            )
        if counts['VTODO'] or counts['VJOURNAL']:
            raise UnsupportedPayload(
                f"Only a single TODO or a single EVENT is supported, item {resource_url} "
                f"mixes component types"
            )
        return events[0]

    @staticmethod
    def _iter_properties(component) -> Iterator[Tuple[str, object]]:
        for prop_name, value in component.items():
            values = value if isinstance(value, list) else [value]
            for single in values:
                yield prop_name.upper(), single

    @staticmethod
    def _raw_parameters(value) -> str:
        params = getattr(value, 'params', None)
        if not params:
            return ''
        raw = params.to_ical(sorted=False)
        return raw.decode('utf-8') if isinstance(raw, bytes) else str(raw)

    @staticmethod
    def _raw_value(value) -> str:
        if hasattr(value, 'to_ical'):
            raw = value.to_ical()
            return raw.decode('utf-8') if isinstance(raw, bytes) else str(raw)
        return str(value)

    def _parse_event_time(self, value: str) -> Optional[EventTime]:
        """
        Parse a DTSTART/DTEND value.

        Tries a UTC timestamp, then a local timestamp (taken as UTC), then a
        bare date.

        Args:
            value: Raw property value

        Returns:
            Instant, Date, or None when the value cannot be parsed
        """
        value = value.strip()
        for fmt in (self.UTC_TIMESTAMP_FORMAT, self.LOCAL_TIMESTAMP_FORMAT):
            try:
                parsed = datetime.strptime(value, fmt)
                return Instant(parsed.replace(tzinfo=timezone.utc))
            except ValueError:
                continue

        try:
            return Date(datetime.strptime(value, self.DATE_FORMAT).date())
        except ValueError:
            logger.warning(f"Invalid timestamp: {value}")
            return None

    def _parse_timestamp(self, value: str) -> Optional[datetime]:
        value = value.strip()
        try:
            parsed = datetime.strptime(value, self.UTC_TIMESTAMP_FORMAT)
        except ValueError:
            logger.warning(f"Invalid timestamp: {value}")
            return None
        return parsed.replace(tzinfo=timezone.utc)
