"""Unit tests for the event model."""
from datetime import date, datetime, timedelta, timezone

import pytest

from processor.models import Date, Event, Instant

UTC = timezone.utc
LAST_MODIFIED = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def make_timed(uid, start, end=None, name='Meeting'):
    return Event.new_timed(
        name=name,
        uid=uid,
        start=start,
        end=end or start + timedelta(hours=1),
        last_modified=LAST_MODIFIED,
        source_url='https://cal.example.com/cal/'
    )


def make_all_day(uid, start, end=None, name='Holiday'):
    return Event.new_all_day(
        name=name,
        uid=uid,
        start=start,
        end=end or start + timedelta(days=1),
        last_modified=LAST_MODIFIED,
        source_url='https://cal.example.com/cal/'
    )


class TestEventTime:
    """Test cases for EventTime ordering."""

    def test_dates_compare_by_date(self):
        """Test that two dates order by calendar date."""
        assert Date(date(2024, 6, 17)) < Date(date(2024, 6, 18))
        assert Date(date(2024, 6, 18)) > Date(date(2024, 6, 17))
        assert Date(date(2024, 6, 17)) == Date(date(2024, 6, 17))

    def test_instants_compare_by_instant(self):
        """Test that instants with different offsets compare as UTC."""
        paris = timezone(timedelta(hours=2))
        earlier = Instant(datetime(2024, 6, 17, 13, 0, tzinfo=paris))
        later = Instant(datetime(2024, 6, 17, 12, 0, tzinfo=UTC))

        assert earlier < later
        assert earlier.value == datetime(2024, 6, 17, 11, 0, tzinfo=UTC)

    def test_naive_instant_is_treated_as_utc(self):
        """Test that naive datetimes are taken as UTC."""
        instant = Instant(datetime(2024, 6, 17, 9, 30))

        assert instant.value.tzinfo == UTC
        assert instant == Instant(datetime(2024, 6, 17, 9, 30, tzinfo=UTC))

    def test_date_equals_instant_at_midnight_utc(self):
        """Test that a date equals the instant at midnight UTC of that day."""
        day = Date(date(2024, 6, 17))
        midnight = Instant(datetime(2024, 6, 17, 0, 0, tzinfo=UTC))

        assert day == midnight
        assert midnight == day
        assert day.cmp(midnight) == 0
        assert hash(day) == hash(midnight)

    def test_date_against_instant_later_that_day(self):
        """Test cross-variant ordering on either side of midnight."""
        day = Date(date(2024, 6, 17))
        morning = Instant(datetime(2024, 6, 17, 9, 0, tzinfo=UTC))
        night_before = Instant(datetime(2024, 6, 16, 23, 59, tzinfo=UTC))

        assert day < morning
        assert morning > day
        assert night_before < day
        assert day.cmp(night_before) == 1
        assert night_before.cmp(day) == -1

    def test_total_order_over_mixed_values(self):
        """Test antisymmetry, transitivity and trichotomy on a sample."""
        values = [
            Date(date(2024, 6, 18)),
            Instant(datetime(2024, 6, 17, 15, 0, tzinfo=UTC)),
            Date(date(2024, 6, 17)),
            Instant(datetime(2024, 6, 16, 8, 0, tzinfo=UTC)),
            Instant(datetime(2024, 6, 18, 0, 0, tzinfo=UTC)),
        ]

        for a in values:
            for b in values:
                assert a.cmp(b) == -b.cmp(a)
                assert sum([a < b, a == b, a > b]) == 1
                for c in values:
                    if a <= b and b <= c:
                        assert a <= c

        ordered = sorted(values)
        assert ordered[0] == Instant(datetime(2024, 6, 16, 8, 0, tzinfo=UTC))
        assert ordered[-1] == Date(date(2024, 6, 18))

    def test_variant_accessors(self):
        """Test as_date and as_instant on both variants."""
        day = Date(date(2024, 6, 17))
        instant = Instant(datetime(2024, 6, 17, 9, 0, tzinfo=UTC))

        assert day.as_date() == date(2024, 6, 17)
        assert day.as_instant() is None
        assert instant.as_instant() == datetime(2024, 6, 17, 9, 0, tzinfo=UTC)
        assert instant.as_date() is None


class TestEvent:
    """Test cases for Event construction, ordering and equality."""

    def test_new_timed_builds_instants(self):
        """Test that new_timed wraps start and end as instants."""
        event = make_timed('a', datetime(2024, 6, 17, 14, 0, tzinfo=UTC))

        assert isinstance(event.start, Instant)
        assert isinstance(event.end, Instant)
        assert event.is_all_day is False
        assert event.location is None
        assert event.description is None
        assert event.creation_date is None

    def test_new_all_day_builds_dates(self):
        """Test that new_all_day wraps start and end as dates."""
        event = make_all_day('a', date(2024, 6, 17))

        assert event.start == Date(date(2024, 6, 17))
        assert event.end == Date(date(2024, 6, 18))
        assert event.is_all_day is True

    def test_mixed_variants_rejected(self):
        """Test that an event cannot mix a date with an instant."""
        with pytest.raises(ValueError):
            Event(
                uid='a',
                name='Broken',
                start=Date(date(2024, 6, 17)),
                end=Instant(datetime(2024, 6, 17, 10, 0, tzinfo=UTC)),
                last_modified=LAST_MODIFIED,
                source_url='https://cal.example.com/cal/'
            )

    def test_event_is_immutable(self):
        """Test that fields cannot be reassigned."""
        event = make_all_day('a', date(2024, 6, 17))

        with pytest.raises(AttributeError):
            event.name = 'Changed'

    def test_equality_by_uid_only(self):
        """Test that events with the same UID are equal despite other fields."""
        first = make_timed('same', datetime(2024, 6, 17, 14, 0, tzinfo=UTC), name='One')
        second = make_all_day('same', date(2024, 7, 1), name='Two')
        other = make_timed('other', datetime(2024, 6, 17, 14, 0, tzinfo=UTC), name='One')

        assert first == second
        assert first != other
        assert len({first, second, other}) == 2

    def test_ordering_by_start_only(self):
        """Test that events sort by start time across variants."""
        timed = make_timed('timed', datetime(2024, 6, 17, 9, 0, tzinfo=UTC), name='Z')
        all_day = make_all_day('day', date(2024, 6, 17), name='Y')
        later = make_timed('later', datetime(2024, 6, 18, 9, 0, tzinfo=UTC), name='A')

        assert sorted([later, timed, all_day]) == [all_day, timed, later]
        assert [e.uid for e in sorted([later, timed, all_day])] == ['day', 'timed', 'later']
