"""Entry point of the CalDAV to Matrix calendar digest bot."""
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from errors import AuthError, PersistenceError, ProtocolError, TransportError
from messaging.session_manager import SessionManager
from processor.formatter import MessageFormatter
from processor.models import CalDavCredentials
from scheduler.weekly import WEEKDAYS, WeeklyScheduler
from scraper.caldav_client import CalDavClient
from storage.session_store import DynamoDBSessionStore, FileSessionStore, SessionStore

logger = logging.getLogger(__name__)


# Attributes every LogRecord carries; anything else came in through extra={...}
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord('', 0, '', 0, '', None, None))
) | {'message', 'asctime'}

# Libraries whose DEBUG output would drown the bot's own logs
QUIET_LOGGERS = ('urllib3', 'botocore', 'boto3')


class JsonFormatter(logging.Formatter):
    """
    One JSON object per log record.

    Context passed with ``extra={...}``, such as the room or the error type,
    is emitted next to the standard fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRIBUTES and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure JSON logging on the root logger and quiet chatty libraries.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _required(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ValueError(f"{name} environment variable is required")
    return value


def _default_data_dir() -> Path:
    base = os.environ.get('XDG_DATA_HOME') or Path.home() / '.local' / 'share'
    return Path(base) / 'persist_session'


@dataclass
class BotConfig:
    """Configuration of the calendar bot."""

    caldav_url: str
    caldav_username: str
    caldav_password: str

    homeserver: str
    matrix_username: str
    matrix_password: str
    room_ids: List[str] = field(default_factory=list)

    data_dir: Path = field(default_factory=_default_data_dir)
    session_table_name: Optional[str] = None

    days_ahead: int = 7
    timeout_seconds: int = 30
    sync_retry_delay: float = 5.0
    weekly_weekday: int = WEEKDAYS['sunday']
    weekly_time: time = time(9, 0)
    log_level: str = 'INFO'

    @property
    def session_file(self) -> Path:
        return self.data_dir / 'session'

    @property
    def caldav_credentials(self) -> CalDavCredentials:
        return CalDavCredentials(
            url=self.caldav_url,
            username=self.caldav_username,
            password=self.caldav_password
        )

    @classmethod
    def from_env(cls) -> 'BotConfig':
        """
        Load configuration from environment variables.

        Raises:
            ValueError: If a required variable is missing or a value is invalid
        """
        room_ids = [
            room_id.strip()
            for room_id in _required('MATRIX_ROOM_IDS').split(',')
            if room_id.strip()
        ]

        data_dir_str = os.environ.get('DATA_DIR')
        data_dir = Path(data_dir_str) if data_dir_str else _default_data_dir()

        weekday_name = os.environ.get('WEEKLY_DIGEST_DAY', 'sunday').lower()
        if weekday_name not in WEEKDAYS:
            raise ValueError(f"WEEKLY_DIGEST_DAY must be a weekday name, got {weekday_name}")

        weekly_time = time.fromisoformat(os.environ.get('WEEKLY_DIGEST_TIME', '09:00'))

        return cls(
            caldav_url=_required('CALDAV_SERVER_URL'),
            caldav_username=_required('CALDAV_USERNAME'),
            caldav_password=_required('CALDAV_PASSWORD'),
            homeserver=_required('MATRIX_SERVER_URL'),
            matrix_username=_required('MATRIX_BOT_USERNAME'),
            matrix_password=_required('MATRIX_BOT_PASSWORD'),
            room_ids=room_ids,
            data_dir=data_dir,
            session_table_name=os.environ.get('SESSION_TABLE_NAME') or None,
            days_ahead=int(os.environ.get('DAYS_AHEAD', '7')),
            timeout_seconds=int(os.environ.get('TIMEOUT_SECONDS', '30')),
            sync_retry_delay=float(os.environ.get('SYNC_RETRY_DELAY_SECONDS', '5')),
            weekly_weekday=WEEKDAYS[weekday_name],
            weekly_time=weekly_time,
            log_level=os.environ.get('LOG_LEVEL', 'INFO')
        )


class CalendarDigest:
    """Fetches upcoming events and renders them as a chat digest."""

    def __init__(
        self,
        credentials: CalDavCredentials,
        days_ahead: int = 7,
        caldav_client: Optional[CalDavClient] = None,
        formatter: Optional[MessageFormatter] = None
    ):
        self.credentials = credentials
        self.window = timedelta(days=days_ahead)
        self.caldav_client = caldav_client or CalDavClient()
        self.formatter = formatter or MessageFormatter()

    def build(self) -> Tuple[str, str]:
        """
        Fetch events of the coming window and format them.

        Returns:
            Tuple of (plain text body, HTML body); the failure digest when
            the calendar could not be fetched
        """
        start = datetime.now(timezone.utc)
        end = start + self.window

        try:
            events = self.caldav_client.query_events(self.credentials, start, end)
        except (TransportError, ProtocolError) as e:
            logger.error(f"Failed to get calendar events: {e}")
            return self.formatter.format_failure()

        return self.formatter.format_events(events)

    async def __call__(self) -> Tuple[str, str]:
        return await asyncio.to_thread(self.build)


def build_session_store(config: BotConfig) -> SessionStore:
    if config.session_table_name:
        return DynamoDBSessionStore(config.session_table_name)
    return FileSessionStore(config.session_file)


async def run(config: BotConfig) -> None:
    """
    Run the bot: listener plus one weekly task per room.

    Raises:
        AuthError: If the Matrix login fails
        PersistenceError: If the session record cannot be read or written
        TransportError: On an unrecoverable Matrix sync failure
    """
    digest = CalendarDigest(
        config.caldav_credentials,
        days_ahead=config.days_ahead,
        caldav_client=CalDavClient(timeout=config.timeout_seconds)
    )

    # Dry run to make sure the calendar settings are usable
    body, _ = await digest()
    logger.info(
        "Calendar dry run completed",
        extra={'digest_length': len(body)}
    )

    manager = SessionManager(
        store=build_session_store(config),
        homeserver=config.homeserver,
        username=config.matrix_username,
        password=config.matrix_password,
        data_dir=config.data_dir,
        watched_rooms=config.room_ids,
        digest_provider=digest,
        retry_delay=config.sync_retry_delay
    )
    client = await manager.start()

    schedulers = [
        WeeklyScheduler(
            room_id,
            client,
            digest,
            weekday=config.weekly_weekday,
            at=config.weekly_time
        )
        for room_id in config.room_ids
    ]

    await asyncio.gather(
        manager.run(),
        *(scheduler.run_forever() for scheduler in schedulers)
    )


def main() -> int:
    """Load configuration, set up logging and run until a fatal error."""
    load_dotenv()

    try:
        config = BotConfig.from_env()
    except ValueError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        return 2

    setup_logging(config.log_level)
    logger.info(
        "Calendar bot starting",
        extra={
            'rooms': config.room_ids,
            'days_ahead': config.days_ahead,
            'session_backend': 'dynamodb' if config.session_table_name else 'file'
        }
    )

    try:
        asyncio.run(run(config))
    except (AuthError, PersistenceError, TransportError) as e:
        logger.error(
            f"Calendar bot stopped: {e}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return 1
    except KeyboardInterrupt:
        logger.info("Calendar bot interrupted")
    return 0


if __name__ == '__main__':
    sys.exit(main())
