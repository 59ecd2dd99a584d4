"""CalDAV client fetching events from a remote calendar."""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

import requests
from bs4 import BeautifulSoup, Tag
from lxml import etree

from errors import ParseError, ProtocolError, TransportError
from processor.ical_parser import ICalParser
from processor.models import CalDavCredentials, Event

logger = logging.getLogger(__name__)

DAV_NS = 'DAV:'
CALDAV_NS = 'urn:ietf:params:xml:ns:caldav'

CALENDAR_QUERY_TEMPLATE = """<?xml version="1.0" encoding="UTF-8" ?>
<C:calendar-query xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop xmlns:D="DAV:">
    <D:getetag/>
    <C:calendar-data>
      <C:comp name="VCALENDAR">
        <C:comp name="VEVENT"/>
      </C:comp>
    </C:calendar-data>
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT">
        <C:time-range start="{start}" end="{end}"/>
      </C:comp-filter>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>
"""

ElementPredicate = Callable[[Optional[str], str], bool]


def element_named(namespace: Optional[str], name: str) -> ElementPredicate:
    """Build a predicate matching elements by namespace URI and local name."""
    def predicate(element_namespace: Optional[str], element_name: str) -> bool:
        return element_namespace == namespace and element_name == name
    return predicate


def find_elements(root: Tag, predicate: ElementPredicate) -> List[Tag]:
    """
    Walk an XML tree and return every element matching the predicate.

    The walk is depth-first in document order with no depth limit. A
    matching element is returned as a whole and its descendants are not
    searched.

    Args:
        root: Element whose descendants are searched
        predicate: Called with each element's namespace URI and local name

    Returns:
        Matching elements in document order
    """
    found = []
    for child in root.children:
        if not isinstance(child, Tag):
            continue
        if predicate(child.namespace, child.name):
            found.append(child)
        else:
            found.extend(find_elements(child, predicate))
    return found


def _children(element: Tag, predicate: ElementPredicate) -> List[Tag]:
    return [
        child for child in element.children
        if isinstance(child, Tag) and predicate(child.namespace, child.name)
    ]


def extract_calendar_data(responses: List[Tag]) -> List[str]:
    """
    Collect calendar-data payloads from DAV response elements.

    Follows response -> propstat -> prop -> calendar-data; elements with any
    other name or namespace are skipped.

    Args:
        responses: DAV:response elements

    Returns:
        Raw iCal payload strings in document order
    """
    is_response = element_named(DAV_NS, 'response')
    is_propstat = element_named(DAV_NS, 'propstat')
    is_prop = element_named(DAV_NS, 'prop')
    is_calendar_data = element_named(CALDAV_NS, 'calendar-data')

    payloads = []
    for response in responses:
        if not is_response(response.namespace, response.name):
            continue
        for propstat in _children(response, is_propstat):
            for prop in _children(propstat, is_prop):
                for calendar_data in _children(prop, is_calendar_data):
                    payloads.append(calendar_data.get_text())
    return payloads


def format_caldav_timestamp(value: datetime) -> str:
    """Format a datetime as a CalDAV UTC timestamp (YYYYMMDDThhmmssZ)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')


class CalDavClient:
    """Client issuing time-windowed calendar queries against a CalDAV server."""

    def __init__(
        self,
        timeout: int = 30,
        max_retries: int = 3,
        base_delay: float = 1,
        parser: Optional[ICalParser] = None
    ):
        """
        Initialize the CalDAV client.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts made for transient failures (default: 3)
            base_delay: First retry delay in seconds, doubled per attempt
            parser: Payload parser (default: ICalParser())
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.parser = parser or ICalParser()

    def fetch_events(
        self,
        credentials: CalDavCredentials,
        window_start: datetime,
        window_end: datetime
    ) -> List[Event]:
        """
        Fetch events overlapping a time window, never raising.

        Server and network failures are logged and give an empty list.

        Args:
            credentials: Calendar URL and basic-auth credentials
            window_start: Start of the window
            window_end: End of the window

        Returns:
            Events sorted by start time
        """
        try:
            return self.query_events(credentials, window_start, window_end)
        except (TransportError, ProtocolError) as e:
            logger.error(f"Error fetching calendar events: {e}")
            return []

    def query_events(
        self,
        credentials: CalDavCredentials,
        window_start: datetime,
        window_end: datetime
    ) -> List[Event]:
        """
        Fetch events overlapping a time window.

        Args:
            credentials: Calendar URL and basic-auth credentials
            window_start: Start of the window
            window_end: End of the window

        Returns:
            Events sorted by start time; items that fail to parse are skipped

        Raises:
            TransportError: If the server cannot be reached
            ProtocolError: If the server answers with an error or bad XML
        """
        body = self.build_query(window_start, window_end)

        logger.info("Requesting items from calendar")
        content = self._request(credentials, 'REPORT', body, depth=1)
        root = self._parse_document(content)

        responses = find_elements(root, element_named(DAV_NS, 'response'))
        payloads = extract_calendar_data(responses)
        logger.debug(f"Found {len(payloads)} calendar payloads in {len(responses)} responses")

        events = []
        for payload in payloads:
            try:
                events.append(self.parser.parse(payload, credentials.url))
            except ParseError as e:
                logger.warning(f"Skipping calendar item: {e}")
                continue

        events.sort()
        logger.info(f"Fetched {len(events)} events out of {len(payloads)} items")
        return events

    @staticmethod
    def build_query(window_start: datetime, window_end: datetime) -> str:
        """Build the calendar-query REPORT body for a time window."""
        return CALENDAR_QUERY_TEMPLATE.format(
            start=format_caldav_timestamp(window_start),
            end=format_caldav_timestamp(window_end)
        )

    def _request(
        self,
        credentials: CalDavCredentials,
        method: str,
        body: str,
        depth: int
    ) -> bytes:
        """
        Issue a WebDAV request with retry logic.

        Args:
            credentials: Target URL and basic-auth credentials
            method: HTTP method, e.g. REPORT
            body: XML request body
            depth: Value of the Depth header

        Returns:
            Response body

        Raises:
            TransportError: If every attempt fails to reach the server
            ProtocolError: If the server answers with a non-2xx status
        """
        headers = {
            'Depth': str(depth),
            'Content-Type': 'application/xml'
        }

        for attempt in range(self.max_retries):
            try:
                response = requests.request(
                    method,
                    credentials.url,
                    data=body.encode('utf-8'),
                    headers=headers,
                    auth=(credentials.username, credentials.password),
                    timeout=self.timeout
                )
                logger.debug(f"Response status: {response.status_code}")
                logger.debug(f"Response body: {response.text}")

                if response.ok:
                    return response.content
                error = ProtocolError(
                    f"Unexpected HTTP status code {response.status_code}",
                    status_code=response.status_code
                )
                if response.status_code < 500:
                    raise error

            except requests.RequestException as e:
                error = TransportError(f"Request to calendar server failed: {e}")

            if attempt < self.max_retries - 1:
                # Calculate exponential backoff delay
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{self.max_retries}): {error}. "
                    f"Retrying in {delay} seconds..."
                )
                time.sleep(delay)
            else:
                logger.error(
                    f"All {self.max_retries} attempts failed. Last error: {error}"
                )
                raise error

    @staticmethod
    def _parse_document(content: bytes) -> Tag:
        """
        Parse a multistatus body.

        Raises:
            ProtocolError: If the body is not a well-formed XML document
        """
        # BeautifulSoup repairs broken markup, so well-formedness is checked first
        strict_parser = etree.XMLParser(recover=False, resolve_entities=False, no_network=True)
        try:
            etree.fromstring(content, parser=strict_parser)
        except etree.XMLSyntaxError as e:
            raise ProtocolError(f"Calendar server returned malformed XML: {e}") from e

        soup = BeautifulSoup(content, 'xml')
        root = soup.find(True, recursive=False)
        if root is None:
            raise ProtocolError("Calendar server returned a response without an XML document")
        return soup
