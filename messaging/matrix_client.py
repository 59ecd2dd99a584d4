"""Minimal Matrix client-server API client used by the bot."""
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from errors import AuthError, TransportError

logger = logging.getLogger(__name__)

CLIENT_API_PREFIX = '/_matrix/client/v3'

# Lazy-load room members, which keeps the first sync small for bots in many rooms
LAZY_LOADING_FILTER = json.dumps({
    'room': {'state': {'lazy_load_members': True}}
})


@dataclass(frozen=True)
class LoginResult:
    """Credentials returned by a successful password login."""
    user_id: str
    access_token: str
    device_id: str


@dataclass(frozen=True)
class RoomMessage:
    """Text message received in a joined room."""
    room_id: str
    event_id: str
    sender: str
    body: str


@dataclass(frozen=True)
class RoomInvite:
    """Invitation of a user into a room."""
    room_id: str
    sender: str
    invitee: str


@dataclass
class SyncBatch:
    """One /sync response reduced to what the bot reacts to."""
    next_batch: str
    messages: List[RoomMessage] = field(default_factory=list)
    invites: List[RoomInvite] = field(default_factory=list)
    joined_rooms: List[str] = field(default_factory=list)


def parse_sync_response(data: Dict[str, Any]) -> SyncBatch:
    """
    Reduce a raw /sync response body to a SyncBatch.

    Args:
        data: Decoded JSON body of a /sync response

    Returns:
        SyncBatch with text messages of joined rooms and pending invites

    Raises:
        TransportError: If the body carries no next_batch cursor
    """
    next_batch = data.get('next_batch') if isinstance(data, dict) else None
    if not isinstance(next_batch, str) or not next_batch:
        raise TransportError("Sync response is missing the next_batch cursor")

    rooms = data.get('rooms', {})
    batch = SyncBatch(next_batch=next_batch)

    for room_id, room in rooms.get('join', {}).items():
        batch.joined_rooms.append(room_id)
        for event in room.get('timeline', {}).get('events', []):
            if event.get('type') != 'm.room.message':
                continue
            content = event.get('content', {})
            if content.get('msgtype') != 'm.text' or not isinstance(content.get('body'), str):
                continue
            batch.messages.append(RoomMessage(
                room_id=room_id,
                event_id=event.get('event_id', ''),
                sender=event.get('sender', ''),
                body=content['body']
            ))

    for room_id, room in rooms.get('invite', {}).items():
        for event in room.get('invite_state', {}).get('events', []):
            if event.get('type') != 'm.room.member':
                continue
            if event.get('content', {}).get('membership') != 'invite':
                continue
            batch.invites.append(RoomInvite(
                room_id=room_id,
                sender=event.get('sender', ''),
                invitee=event.get('state_key', '')
            ))

    return batch


class MatrixClient:
    """Blocking Matrix client; each call is one HTTP round trip."""

    def __init__(self, homeserver: str, store_location: Optional[str] = None, timeout: int = 30):
        """
        Initialize the client.

        Args:
            homeserver: Base URL of the homeserver, e.g. https://matrix.org
            store_location: Directory reserved for the client's local store
            timeout: HTTP timeout in seconds, added on top of sync long-polls
        """
        self.homeserver = homeserver.rstrip('/')
        self.store_location = store_location
        self.timeout = timeout
        self.user_id: Optional[str] = None
        self.device_id: Optional[str] = None
        self._access_token: Optional[str] = None
        self._session = requests.Session()

    @property
    def logged_in(self) -> bool:
        return self._access_token is not None

    def restore_login(self, user_id: str, access_token: str, device_id: str) -> None:
        """Reuse a previously obtained access token without contacting the server."""
        self.user_id = user_id
        self.device_id = device_id
        self._access_token = access_token

    def login(self, username: str, password: str, device_name: str) -> LoginResult:
        """
        Log in with a username and password.

        Raises:
            AuthError: If the homeserver rejects the credentials
            TransportError: If the homeserver cannot be reached
        """
        payload = {
            'type': 'm.login.password',
            'identifier': {'type': 'm.id.user', 'user': username},
            'password': password,
            'initial_device_display_name': device_name
        }
        try:
            data = self._call('POST', '/login', json_body=payload, authenticated=False)
        except TransportError as e:
            if e.status_code in (400, 401, 403):
                raise AuthError(f"Login rejected for {username}: {e}") from e
            raise

        result = LoginResult(
            user_id=data['user_id'],
            access_token=data['access_token'],
            device_id=data['device_id']
        )
        self.restore_login(result.user_id, result.access_token, result.device_id)
        return result

    def sync(self, since: Optional[str] = None, timeout_ms: int = 30000) -> SyncBatch:
        """
        Fetch the next batch of events.

        Args:
            since: Cursor from the previous batch; None for an initial sync
            timeout_ms: How long the server may hold the request open

        Returns:
            SyncBatch holding the new cursor
        """
        params = {'timeout': str(timeout_ms), 'filter': LAZY_LOADING_FILTER}
        if since:
            params['since'] = since
        data = self._call(
            'GET', '/sync', params=params,
            timeout=self.timeout + timeout_ms / 1000
        )
        return parse_sync_response(data)

    def send_message(self, room_id: str, body: str, html_body: Optional[str] = None) -> str:
        """
        Send a text message, with an optional HTML alternative.

        Returns:
            Event id of the sent message
        """
        content = {'msgtype': 'm.text', 'body': body}
        if html_body is not None:
            content['format'] = 'org.matrix.custom.html'
            content['formatted_body'] = html_body

        txn_id = uuid.uuid4().hex
        path = f"/rooms/{quote(room_id, safe='')}/send/m.room.message/{txn_id}"
        data = self._call('PUT', path, json_body=content)
        return data.get('event_id', '')

    def join_room(self, room_id: str) -> None:
        self._call('POST', f"/join/{quote(room_id, safe='')}", json_body={})

    def _call(
        self,
        method: str,
        path: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
        authenticated: bool = True,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        headers = {}
        if authenticated:
            if self._access_token is None:
                raise AuthError("Client is not logged in")
            headers['Authorization'] = f"Bearer {self._access_token}"

        url = f"{self.homeserver}{CLIENT_API_PREFIX}{path}"
        try:
            response = self._session.request(
                method,
                url,
                json=json_body,
                params=params,
                headers=headers,
                timeout=timeout or self.timeout
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        logger.debug(f"{method} {path} returned {response.status_code}")
        if not response.ok:
            status = response.status_code
            transient = status == 429 or status >= 500
            raise TransportError(
                f"{method} {path} returned {status}: {response.text}",
                status_code=status,
                transient=transient
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{method} {path} returned invalid JSON: {e}") from e
