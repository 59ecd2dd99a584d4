"""Matrix session lifecycle: restore-or-login, syncing and command dispatch.

The manager owns the persisted session record. It restores the previous
session when one is stored and logs in otherwise, ignores everything that
happened before start-up with an initial sync, then listens for new batches.
The sync cursor is persisted after every batch, before the next sync is
requested, so a restarted bot never sees a processed batch again.
"""
import asyncio
import enum
import logging
import secrets
import string
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Tuple

from errors import AuthError, PersistenceError, TransportError
from messaging.matrix_client import MatrixClient, RoomInvite, RoomMessage, SyncBatch
from storage.session_store import SessionRecord, SessionStore, UserSession

logger = logging.getLogger(__name__)

TRIGGERS = ('!calendar', '!cal')

DigestProvider = Callable[[], Awaitable[Tuple[str, str]]]
ClientFactory = Callable[[str, Optional[str]], MatrixClient]


class SessionState(enum.Enum):
    NO_SESSION = 'no_session'
    AUTHENTICATING = 'authenticating'
    ACTIVE = 'active'
    SYNCING = 'syncing'
    FAILED = 'failed'


def _random_alphanumeric(length: int) -> str:
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


def is_trigger(body: str) -> bool:
    """Whether a message body asks for the calendar digest."""
    return any(trigger in body for trigger in TRIGGERS)


class SessionManager:
    """Keeps one Matrix session connected and reacts to its events."""

    DEVICE_NAME = 'calendar-bot client'

    def __init__(
        self,
        store: SessionStore,
        homeserver: str,
        username: str,
        password: str,
        data_dir: Path,
        watched_rooms: Iterable[str],
        digest_provider: DigestProvider,
        retry_delay: float = 5.0,
        sync_timeout_ms: int = 30000,
        client_factory: ClientFactory = MatrixClient
    ):
        """
        Initialize the session manager.

        Args:
            store: Backend holding the session record
            homeserver: Homeserver URL used for a fresh login
            username: Bot account name used for a fresh login
            password: Bot account password used for a fresh login
            data_dir: Directory under which the client store is created
            watched_rooms: Room ids whose messages may trigger a digest
            digest_provider: Coroutine function returning (body, html_body)
            retry_delay: Minimum delay in seconds between failed syncs
            sync_timeout_ms: Long-poll timeout of each sync request
            client_factory: Builds a client from homeserver and store location
        """
        self.store = store
        self.homeserver = homeserver
        self.username = username
        self.password = password
        self.data_dir = Path(data_dir)
        self.watched_rooms = set(watched_rooms)
        self.digest_provider = digest_provider
        self.retry_delay = retry_delay
        self.sync_timeout_ms = sync_timeout_ms
        self.client_factory = client_factory

        self.state = SessionState.NO_SESSION
        self.client: Optional[MatrixClient] = None
        self.sync_cursor: Optional[str] = None

    async def start(self) -> MatrixClient:
        """
        Restore the persisted session, or log in and persist a new one.

        Returns:
            A logged-in client

        Raises:
            AuthError: If the login is refused
            PersistenceError: If the session record cannot be read or written
        """
        record = await asyncio.to_thread(self.store.load)
        if record is not None:
            self.client = self._restore(record)
        else:
            self.client = await self._login()
        self.state = SessionState.ACTIVE
        return self.client

    def _restore(self, record: SessionRecord) -> MatrixClient:
        logger.info("Previous session found, restoring it")
        client = self.client_factory(record.homeserver, record.store_location)
        client.restore_login(
            record.user_session.user_id,
            record.user_session.access_token,
            record.user_session.device_id
        )
        self.sync_cursor = record.sync_cursor
        logger.info(f"Restored session for {record.user_session.user_id}")
        return client

    async def _login(self) -> MatrixClient:
        logger.info("No previous session found, logging in")
        self.state = SessionState.AUTHENTICATING

        # Separate store per login, so several clients can share one data dir
        store_location = self.data_dir / _random_alphanumeric(7)
        passphrase = _random_alphanumeric(32)
        client = self.client_factory(self.homeserver, str(store_location))

        try:
            result = await asyncio.to_thread(
                client.login, self.username, self.password, self.DEVICE_NAME
            )
        except (AuthError, TransportError) as e:
            self.state = SessionState.FAILED
            logger.error(f"Error logging in: {e}")
            raise AuthError(f"Login as {self.username} failed: {e}") from e

        logger.info(f"Logged in as {result.user_id}")

        record = SessionRecord(
            homeserver=self.homeserver,
            store_location=str(store_location),
            store_passphrase=passphrase,
            user_session=UserSession(
                user_id=result.user_id,
                access_token=result.access_token,
                device_id=result.device_id
            ),
            sync_cursor=None
        )
        try:
            await asyncio.to_thread(store_location.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to create client store {store_location}: {e}") from e
        await asyncio.to_thread(self.store.save, record)
        self.sync_cursor = None
        logger.info("Session persisted")
        return client

    async def run(self) -> None:
        """Start the session and listen until an unrecoverable error occurs."""
        if self.client is None:
            await self.start()
        await self.initial_sync()
        await self.listen_forever()

    async def initial_sync(self) -> None:
        """
        Skip past messages with a first sync, retrying until it succeeds.

        Messages of this batch are not dispatched.
        """
        logger.info("Launching a first sync to ignore past messages")
        while True:
            try:
                batch = await self._sync()
                break
            except TransportError as e:
                logger.error(f"An error occurred during initial sync: {e}")
                logger.info(f"Trying again in {self.retry_delay} seconds")
                await asyncio.sleep(self.retry_delay)

        await self.persist_cursor(batch.next_batch)
        logger.info("The client is ready! Listening to new messages")

    async def listen_forever(self) -> None:
        """
        Process sync batches until an unrecoverable error occurs.

        Raises:
            TransportError: On a non-transient sync failure
            PersistenceError: If the cursor cannot be persisted
        """
        self.state = SessionState.SYNCING
        while True:
            try:
                batch = await self._sync()
            except TransportError as e:
                if not e.transient:
                    self.state = SessionState.FAILED
                    logger.error(f"Sync failed, giving up: {e}")
                    raise
                logger.warning(f"Sync failed, retrying in {self.retry_delay} seconds: {e}")
                await asyncio.sleep(self.retry_delay)
                continue

            await self.handle_batch(batch)

    async def handle_batch(self, batch: SyncBatch) -> None:
        """Dispatch the events of a batch, then persist its cursor."""
        for invite in batch.invites:
            await self.on_room_invite(invite)
        joined = set(batch.joined_rooms)
        for message in batch.messages:
            if message.room_id in joined:
                await self.on_room_message(message)

        # Written even for empty batches, and before the next sync is issued
        await self.persist_cursor(batch.next_batch)

    async def persist_cursor(self, sync_cursor: str) -> None:
        """
        Persist the latest sync cursor.

        Raises:
            PersistenceError: If the session record cannot be updated
        """
        await asyncio.to_thread(self.store.save_cursor, sync_cursor)
        self.sync_cursor = sync_cursor
        logger.debug(f"Persisted sync cursor {sync_cursor}")

    async def on_room_message(self, message: RoomMessage) -> None:
        """Answer a trigger command in a watched room with the digest."""
        if message.room_id not in self.watched_rooms:
            return
        if message.sender == self.client.user_id:
            return

        logger.info(f"[{message.room_id}] {message.sender}: {message.body}")
        if not is_trigger(message.body):
            return

        body, html_body = await self.digest_provider()
        logger.info("sending")
        try:
            await asyncio.to_thread(self.client.send_message, message.room_id, body, html_body)
            logger.info("message sent")
        except TransportError as e:
            logger.error(f"Error sending message: {e}")

    async def on_room_invite(self, invite: RoomInvite) -> None:
        """Accept invites addressed to the bot itself."""
        if invite.invitee != self.client.user_id:
            return

        logger.info(f"Accepting invite for room: {invite.room_id}")
        try:
            await asyncio.to_thread(self.client.join_room, invite.room_id)
            logger.info(f"Joined room: {invite.room_id}")
        except TransportError as e:
            logger.error(f"Error joining room: {e}")

    async def _sync(self) -> SyncBatch:
        return await asyncio.to_thread(
            self.client.sync, self.sync_cursor, self.sync_timeout_ms
        )
