"""Persistence for the Matrix session record."""
import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserSession:
    """Authenticated Matrix user session."""
    user_id: str
    access_token: str
    device_id: str


@dataclass(frozen=True)
class SessionRecord:
    """Everything needed to rebuild a logged-in client after a restart."""
    homeserver: str
    store_location: str
    store_passphrase: str
    user_session: UserSession
    sync_cursor: Optional[str] = None

    def with_cursor(self, sync_cursor: str) -> 'SessionRecord':
        return replace(self, sync_cursor=sync_cursor)

    def to_dict(self) -> dict:
        data = asdict(self)
        if data['sync_cursor'] is None:
            del data['sync_cursor']
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'SessionRecord':
        return cls(
            homeserver=data['homeserver'],
            store_location=data['store_location'],
            store_passphrase=data['store_passphrase'],
            user_session=UserSession(**data['user_session']),
            sync_cursor=data.get('sync_cursor')
        )


class SessionStore:
    """Interface of session record backends."""

    def load(self) -> Optional[SessionRecord]:
        raise NotImplementedError

    def save(self, record: SessionRecord) -> None:
        raise NotImplementedError

    def save_cursor(self, sync_cursor: str) -> SessionRecord:
        """
        Persist a new sync cursor into the stored record.

        Args:
            sync_cursor: Latest resynchronization token

        Returns:
            The updated record

        Raises:
            PersistenceError: If no record exists or it cannot be written
        """
        record = self.load()
        if record is None:
            raise PersistenceError("Cannot persist sync cursor: no session record stored")
        updated = record.with_cursor(sync_cursor)
        self.save(updated)
        return updated


class FileSessionStore(SessionStore):
    """Session record kept as a JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[SessionRecord]:
        """
        Read the session record.

        Returns:
            The stored record, or None if no session file exists

        Raises:
            PersistenceError: If the file exists but cannot be read
        """
        if not self.path.exists():
            return None

        try:
            with self.path.open('r') as f:
                data = json.load(f)
            return SessionRecord.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Failed to read session file {self.path}: {e}") from e

    def save(self, record: SessionRecord) -> None:
        """
        Write the session record atomically.

        The data is flushed to disk before the temporary file replaces the
        previous record, and the directory is synced after the replace.

        Raises:
            PersistenceError: If the file cannot be written
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix('.tmp')
            with tmp_path.open('w') as f:
                json.dump(record.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            tmp_path.replace(self.path)
            self._fsync_directory(self.path.parent)
        except OSError as e:
            raise PersistenceError(f"Failed to write session file {self.path}: {e}") from e

        logger.debug(f"Session persisted in {self.path}")

    @staticmethod
    def _fsync_directory(directory: Path) -> None:
        # The rename only survives a crash once the directory entry is on disk
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


class DynamoDBSessionStore(SessionStore):
    """Session record kept as a single DynamoDB item."""

    def __init__(self, table_name: str, session_id: str = 'default'):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table (hash key: session_id)
            session_id: Key of the item holding this bot's session
        """
        self.table_name = table_name
        self.session_id = session_id
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBSessionStore for table: {table_name}")

    def load(self) -> Optional[SessionRecord]:
        item = self._get_item()
        if item is None:
            return None
        try:
            return self._item_to_record(item)
        except (KeyError, TypeError) as e:
            raise PersistenceError(f"Invalid session item in {self.table_name}: {e}") from e

    def save(self, record: SessionRecord) -> None:
        try:
            self.table.put_item(Item=self._record_to_item(record))
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Error writing session to DynamoDB: {e}") from e

    def save_cursor(self, sync_cursor: str) -> SessionRecord:
        """Update only the cursor attribute of the stored session."""
        try:
            response = self.table.update_item(
                Key={'session_id': self.session_id},
                UpdateExpression='SET sync_cursor = :cursor',
                ConditionExpression='attribute_exists(session_id)',
                ExpressionAttributeValues={':cursor': sync_cursor},
                ReturnValues='ALL_NEW'
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Error writing sync cursor to DynamoDB: {e}") from e
        return self._item_to_record(response['Attributes'])

    def _get_item(self) -> Optional[dict]:
        try:
            response = self.table.get_item(Key={'session_id': self.session_id})
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Error reading session from DynamoDB: {e}") from e
        return response.get('Item')

    def _record_to_item(self, record: SessionRecord) -> dict:
        item = {
            'session_id': self.session_id,
            'homeserver': record.homeserver,
            'store_location': record.store_location,
            'store_passphrase': record.store_passphrase,
            'user_id': record.user_session.user_id,
            'access_token': record.user_session.access_token,
            'device_id': record.user_session.device_id
        }

        # Add optional fields if present
        if record.sync_cursor:
            item['sync_cursor'] = record.sync_cursor

        return item

    @staticmethod
    def _item_to_record(item: dict) -> SessionRecord:
        return SessionRecord(
            homeserver=item['homeserver'],
            store_location=item['store_location'],
            store_passphrase=item['store_passphrase'],
            user_session=UserSession(
                user_id=item['user_id'],
                access_token=item['access_token'],
                device_id=item['device_id']
            ),
            sync_cursor=item.get('sync_cursor')
        )
