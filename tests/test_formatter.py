"""Unit tests for MessageFormatter."""
from datetime import date, datetime, timezone

from processor.formatter import MessageFormatter
from processor.models import Date, Event, Instant

UTC = timezone.utc
LAST_MODIFIED = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class TestFormatEventTimes:
    """Test cases for rendering event time spans."""

    def test_single_all_day(self):
        """Test that a one-day all-day event renders as All Day."""
        text = MessageFormatter().format_event_times(
            Date(date(2024, 6, 17)), Date(date(2024, 6, 18))
        )

        assert text == 'Monday, 17 June, 2024 – All Day'

    def test_multi_day_all_day(self):
        """Test that a multi-day all-day event shows both dates."""
        text = MessageFormatter().format_event_times(
            Date(date(2024, 6, 17)), Date(date(2024, 6, 20))
        )

        assert text == 'Monday, 17 June, 2024 – Thursday, 20 June, 2024'

    def test_same_day_timed(self):
        """Test that a same-day timed event shortens the start."""
        text = MessageFormatter().format_event_times(
            Instant(datetime(2024, 6, 17, 14, 0, tzinfo=UTC)),
            Instant(datetime(2024, 6, 17, 15, 0, tzinfo=UTC))
        )

        assert text == '2:00 PM – 3:00 PM Monday, 17 June, 2024'

    def test_multi_day_timed(self):
        """Test that a timed event over midnight shows both timestamps."""
        text = MessageFormatter().format_event_times(
            Instant(datetime(2024, 6, 17, 22, 30, tzinfo=UTC)),
            Instant(datetime(2024, 6, 18, 0, 5, tzinfo=UTC))
        )

        assert text == (
            '10:30 PM Monday, 17 June, 2024 – 12:05 AM Tuesday, 18 June, 2024'
        )

    def test_mixed_variants(self):
        """Test the fallback for a date paired with an instant."""
        formatter = MessageFormatter()

        assert formatter.format_event_times(
            Date(date(2024, 6, 17)),
            Instant(datetime(2024, 6, 17, 15, 0, tzinfo=UTC))
        ) == 'Invalid Date: Check Calendar'
        assert formatter.format_event_times(
            Instant(datetime(2024, 6, 17, 15, 0, tzinfo=UTC)),
            Date(date(2024, 6, 17))
        ) == 'Invalid Date: Check Calendar'

    def test_morning_time(self):
        """Test 12-hour rendering of morning hours."""
        assert MessageFormatter.format_time(datetime(2024, 6, 17, 9, 5)) == '9:05 AM'
        assert MessageFormatter.format_time(datetime(2024, 6, 17, 12, 0)) == '12:00 PM'


class TestFormatEvents:
    """Test cases for rendering whole digests."""

    def test_empty_list(self):
        """Test that no events renders a placeholder message."""
        body, html_body = MessageFormatter().format_events([])

        assert 'No events this period' in body
        assert '<p>No events this period</p>' in html_body
        assert body.startswith('Upcoming Events')

    def test_events_rendered_in_order(self):
        """Test plain text and HTML entries for each event."""
        events = [
            Event.new_all_day(
                name='Holiday',
                uid='a',
                start=date(2024, 6, 17),
                end=date(2024, 6, 18),
                last_modified=LAST_MODIFIED,
                source_url='https://cal.example.com/'
            ),
            Event.new_timed(
                name='Dinner <family>',
                uid='b',
                start=datetime(2024, 6, 18, 18, 0, tzinfo=UTC),
                end=datetime(2024, 6, 18, 20, 0, tzinfo=UTC),
                last_modified=LAST_MODIFIED,
                source_url='https://cal.example.com/'
            ),
        ]

        body, html_body = MessageFormatter().format_events(events)

        assert 'Holiday:\nMonday, 17 June, 2024 – All Day' in body
        assert 'Dinner <family>:\n6:00 PM – 8:00 PM Tuesday, 18 June, 2024' in body
        assert body.index('Holiday') < body.index('Dinner')
        assert '<p><strong>Holiday</strong><br />Monday, 17 June, 2024 – All Day</p>' in html_body
        assert '<strong>Dinner &lt;family&gt;</strong>' in html_body
        assert 'No events' not in body

    def test_failure_message(self):
        """Test the digest sent when fetching failed."""
        body, html_body = MessageFormatter().format_failure()

        assert body == 'Failed to get calendar events'
        assert html_body == '<p>Failed to get calendar events</p>'
