"""Weekly digest scheduling."""
import asyncio
import logging
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Awaitable, Callable, Optional, Tuple

from messaging.matrix_client import MatrixClient

logger = logging.getLogger(__name__)

WEEK = timedelta(days=7)

WEEKDAYS = {
    'monday': 0,
    'tuesday': 1,
    'wednesday': 2,
    'thursday': 3,
    'friday': 4,
    'saturday': 5,
    'sunday': 6
}

DigestProvider = Callable[[], Awaitable[Tuple[str, str]]]


def next_occurrence(now: datetime, weekday: int, at: time) -> datetime:
    """
    Find the next time a weekly slot comes around.

    Args:
        now: Current time; the result uses its timezone
        weekday: Day of the week, Monday is 0 and Sunday is 6
        at: Time of day of the slot

    Returns:
        First slot strictly after now
    """
    days_ahead = (weekday - now.weekday()) % 7
    candidate = datetime.combine(now.date() + timedelta(days=days_ahead), at, tzinfo=now.tzinfo)
    if candidate <= now:
        candidate += WEEK
    return candidate


class WeeklyScheduler:
    """Posts the calendar digest into one room on a fixed weekly slot."""

    def __init__(
        self,
        room_id: str,
        client: MatrixClient,
        digest_provider: DigestProvider,
        weekday: int = WEEKDAYS['sunday'],
        at: time = time(9, 0),
        tz: tzinfo = timezone.utc,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.room_id = room_id
        self.client = client
        self.digest_provider = digest_provider
        self.weekday = weekday
        self.at = at
        self.tz = tz
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.sleep = sleep

    async def run_forever(self) -> None:
        """Sleep until each weekly slot and post the digest, forever."""
        target = next_occurrence(self.clock(), self.weekday, self.at)
        logger.info(f"Next weekly message for {self.room_id} at {target.isoformat()}")

        while True:
            delay = (target - self.clock()).total_seconds()
            await self.sleep(max(delay, 0))
            await self.fire()
            target += WEEK

    async def fire(self) -> bool:
        """
        Fetch, format and send one digest.

        Returns:
            True if the message was sent
        """
        try:
            body, html_body = await self.digest_provider()
            await asyncio.to_thread(self.client.send_message, self.room_id, body, html_body)
        except Exception:
            # A failed firing must not stop the following weeks
            logger.error(f"Error sending weekly message to {self.room_id}", exc_info=True)
            return False

        logger.info(f"Weekly message sent to {self.room_id}")
        return True
