"""Data models for calendar events."""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Tuple

# Unrecognized iCal property as (name, parameters, value), e.g.
# ('ATTENDEE', 'CN=Jane Doe;ROLE=CHAIR', 'mailto:jane@example.com')
ExtraProperty = Tuple[str, str, str]


def _to_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _midnight_utc(value: date) -> Optional[datetime]:
    try:
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    except (OverflowError, ValueError):
        return None


class EventTime:
    """
    Start or end of an event.

    Either a ``Date`` (all-day events) or an ``Instant`` (timed events).
    Both variants share one total order: a ``Date`` compares as midnight UTC
    of that day against an ``Instant``. A ``Date`` that cannot be expressed
    as a UTC midnight is always the lesser element.
    """

    __slots__ = ()

    def cmp(self, other: 'EventTime') -> int:
        """
        Compare two event times.

        Args:
            other: Event time to compare against

        Returns:
            -1, 0 or 1 when self is before, equal to or after other
        """
        if isinstance(self, Date) and isinstance(other, Date):
            return _sign(self.value, other.value)
        if isinstance(self, Instant) and isinstance(other, Instant):
            return _sign(self.value, other.value)
        if isinstance(self, Date) and isinstance(other, Instant):
            midnight = _midnight_utc(self.value)
            if midnight is None:
                return -1
            return _sign(midnight, other.value)
        if isinstance(self, Instant) and isinstance(other, Date):
            midnight = _midnight_utc(other.value)
            if midnight is None:
                return 1
            return _sign(self.value, midnight)
        raise TypeError(f"Cannot compare {type(self).__name__} with {type(other).__name__}")

    def as_date(self) -> Optional[date]:
        return None

    def as_instant(self) -> Optional[datetime]:
        return None

    def __eq__(self, other):
        if not isinstance(other, EventTime):
            return NotImplemented
        return self.cmp(other) == 0

    def __lt__(self, other):
        if not isinstance(other, EventTime):
            return NotImplemented
        return self.cmp(other) < 0

    def __le__(self, other):
        if not isinstance(other, EventTime):
            return NotImplemented
        return self.cmp(other) <= 0

    def __gt__(self, other):
        if not isinstance(other, EventTime):
            return NotImplemented
        return self.cmp(other) > 0

    def __ge__(self, other):
        if not isinstance(other, EventTime):
            return NotImplemented
        return self.cmp(other) >= 0

    def __hash__(self):
        return hash(self._hash_key())

    def _hash_key(self):
        raise NotImplementedError


def _sign(left, right) -> int:
    return (left > right) - (left < right)


@dataclass(frozen=True, eq=False)
class Date(EventTime):
    """All-day event boundary."""
    value: date

    def as_date(self) -> Optional[date]:
        return self.value

    def _hash_key(self):
        # Must hash like the Instant it compares equal to.
        midnight = _midnight_utc(self.value)
        return midnight if midnight is not None else self.value


@dataclass(frozen=True, eq=False)
class Instant(EventTime):
    """Timed event boundary, always held in UTC."""
    value: datetime

    def __post_init__(self):
        object.__setattr__(self, 'value', _to_utc(self.value))

    def as_instant(self) -> Optional[datetime]:
        return self.value

    def _hash_key(self):
        return self.value


@dataclass(frozen=True, eq=False)
class Event:
    """
    Calendar event parsed from a single iCal VEVENT.

    Events order by start time only and are equal when their UIDs match.
    Build them through ``new_timed`` or ``new_all_day``.
    """
    uid: str
    name: str
    start: EventTime
    end: EventTime
    last_modified: datetime
    source_url: str
    location: Optional[str] = None
    description: Optional[str] = None
    creation_date: Optional[datetime] = None
    extra_properties: Tuple[ExtraProperty, ...] = ()

    def __post_init__(self):
        if type(self.start) is not type(self.end):
            raise ValueError(
                f"Event {self.uid} mixes {type(self.start).__name__} start "
                f"with {type(self.end).__name__} end"
            )
        object.__setattr__(self, 'last_modified', _to_utc(self.last_modified))
        if self.creation_date is not None:
            object.__setattr__(self, 'creation_date', _to_utc(self.creation_date))
        object.__setattr__(self, 'extra_properties', tuple(self.extra_properties))

    @classmethod
    def new_timed(
        cls,
        name: str,
        uid: str,
        start: datetime,
        end: datetime,
        last_modified: datetime,
        source_url: str,
        location: Optional[str] = None,
        description: Optional[str] = None,
        creation_date: Optional[datetime] = None,
        extra_properties: Tuple[ExtraProperty, ...] = ()
    ) -> 'Event':
        """Build an event that starts and ends at precise instants."""
        return cls(
            uid=uid,
            name=name,
            start=Instant(start),
            end=Instant(end),
            last_modified=last_modified,
            source_url=source_url,
            location=location,
            description=description,
            creation_date=creation_date,
            extra_properties=extra_properties
        )

    @classmethod
    def new_all_day(
        cls,
        name: str,
        uid: str,
        start: date,
        end: date,
        last_modified: datetime,
        source_url: str,
        location: Optional[str] = None,
        description: Optional[str] = None,
        creation_date: Optional[datetime] = None,
        extra_properties: Tuple[ExtraProperty, ...] = ()
    ) -> 'Event':
        """Build an event spanning whole days; ``end`` is exclusive."""
        return cls(
            uid=uid,
            name=name,
            start=Date(start),
            end=Date(end),
            last_modified=last_modified,
            source_url=source_url,
            location=location,
            description=description,
            creation_date=creation_date,
            extra_properties=extra_properties
        )

    @property
    def is_all_day(self) -> bool:
        return isinstance(self.start, Date)

    def __eq__(self, other):
        if not isinstance(other, Event):
            return NotImplemented
        return self.uid == other.uid

    def __hash__(self):
        return hash(self.uid)

    def __lt__(self, other):
        if not isinstance(other, Event):
            return NotImplemented
        return self.start < other.start

    def __le__(self, other):
        if not isinstance(other, Event):
            return NotImplemented
        return self.start <= other.start

    def __gt__(self, other):
        if not isinstance(other, Event):
            return NotImplemented
        return self.start > other.start

    def __ge__(self, other):
        if not isinstance(other, Event):
            return NotImplemented
        return self.start >= other.start


@dataclass(frozen=True)
class CalDavCredentials:
    """Location of a CalDAV calendar and the basic-auth pair to read it."""
    url: str
    username: str
    password: str
