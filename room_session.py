"""Per-room coordination of presence, typing state, history and message fanout.

Each room gets one ``RoomSession`` for the lifetime of the process. Every
operation on a room runs under that room's lock, so joins, leaves, posts and
typing changes are applied in one total order and the broadcasts they produce
reach clients in that same order. Rooms never wait on each other.
"""
import asyncio
from enum import Enum
from typing import Dict, List, Optional

from backend import RedisBackend, validate_message_content
from broadcast import BroadcastRouter
from constants import HISTORY_LIMIT, TYPING_EXPIRY_MS
from errors import NotMember
from logging_config import get_logger
from presence import PresenceEntry, PresenceRegistry
from schemas.events import ServerEvent

logger = get_logger(__name__)


class RoomState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class RoomSession:
    def __init__(
        self,
        room_id: str,
        registry: PresenceRegistry,
        router: BroadcastRouter,
        backend: RedisBackend,
        typing_expiry: float = TYPING_EXPIRY_MS / 1000,
    ):
        self.room_id = room_id
        self.registry = registry
        self.router = router
        self.backend = backend
        self.typing_expiry = typing_expiry
        self.state = RoomState.IDLE
        self.lock = asyncio.Lock()
        # Format: {username: expiry task}
        self._typing: Dict[str, asyncio.Task] = {}

    @property
    def typing_users(self) -> set:
        return set(self._typing)

    def _room_users_payload(self) -> dict:
        return {"roomId": self.room_id, "members": self.registry.member_list(self.room_id)}

    def _require_presence(self, connection_id: str):
        if not self.registry.is_present(self.room_id, connection_id):
            raise NotMember("Join the room first.")

    async def join(self, connection_id: str, username: str, user_id: Optional[str] = None):
        async with self.lock:
            if self.registry.is_present(self.room_id, connection_id):
                await self.router.send_to(connection_id, ServerEvent.ROOM_USERS, self._room_users_payload())
                return

            first_connection_for_user = not self.registry.username_present(self.room_id, username)
            self.registry.join(self.room_id, connection_id, username, user_id)
            if self.state is RoomState.IDLE:
                self.state = RoomState.ACTIVE
                logger.info(f"Room {self.room_id} is active")
            logger.info(f"{username} joined room {self.room_id} on connection {connection_id}")

            await self.router.broadcast(self.room_id, ServerEvent.ROOM_USERS, self._room_users_payload())
            if first_connection_for_user:
                await self.router.broadcast(
                    self.room_id, ServerEvent.USER_JOINED, {"roomId": self.room_id, "username": username}, exclude=connection_id
                )

    async def leave(self, connection_id: str) -> Optional[PresenceEntry]:
        async with self.lock:
            entry = self.registry.leave(self.room_id, connection_id)
            if entry is None:
                return None
            logger.info(f"{entry.username} left room {self.room_id} on connection {connection_id}")

            last_connection_for_user = not self.registry.username_present(self.room_id, entry.username)
            if last_connection_for_user and entry.username in self._typing:
                self._cancel_typing(entry.username)
                await self.router.broadcast(
                    self.room_id, ServerEvent.USER_STOP_TYPING, {"roomId": self.room_id, "username": entry.username}
                )

            if self.registry.is_empty(self.room_id):
                self._go_idle()
                return entry

            await self.router.broadcast(self.room_id, ServerEvent.ROOM_USERS, self._room_users_payload())
            if last_connection_for_user:
                await self.router.broadcast(
                    self.room_id, ServerEvent.USER_LEFT, {"roomId": self.room_id, "username": entry.username}
                )
            return entry

    async def request_history(self, connection_id: str) -> List[dict]:
        async with self.lock:
            messages = self.backend.list_messages(self.room_id, limit=HISTORY_LIMIT, order="asc")
            await self.router.send_to(connection_id, ServerEvent.MESSAGE_HISTORY, {"roomId": self.room_id, "messages": messages})
        logger.debug(f"Sent {len(messages)} history messages for room {self.room_id} to {connection_id}")
        return messages

    async def post_message(self, connection_id: str, sender_id: str, username: str, content) -> dict:
        # Rejected content never reaches storage or the room
        content = validate_message_content(content)
        async with self.lock:
            self._require_presence(connection_id)
            message = self.backend.append_message(self.room_id, sender_id, content, username=username)
            await self.router.broadcast(self.room_id, ServerEvent.NEW_MESSAGE, message)
        logger.debug(f"Message {message['_id']} from {username} fanned out in room {self.room_id}")
        return message

    async def _broadcast_to_others(self, event: ServerEvent, username: str):
        # Every tab of the typist is skipped, not only the one that sent the event
        await self.router.broadcast(
            self.room_id,
            event,
            {"roomId": self.room_id, "username": username},
            exclude=self.registry.connections_for(self.room_id, username),
        )

    async def set_typing(self, connection_id: str) -> str:
        """Mark the user behind this connection as typing, under the name it joined with."""
        async with self.lock:
            entry = self.registry.get_entry(self.room_id, connection_id)
            if entry is None:
                raise NotMember("Join the room first.")
            self._cancel_typing(entry.username)
            self._typing[entry.username] = asyncio.create_task(self._expire_typing(entry.username))
            await self._broadcast_to_others(ServerEvent.USER_TYPING, entry.username)
            return entry.username

    async def clear_typing(self, connection_id: str) -> bool:
        async with self.lock:
            entry = self.registry.get_entry(self.room_id, connection_id)
            if entry is None or entry.username not in self._typing:
                return False
            self._cancel_typing(entry.username)
            await self._broadcast_to_others(ServerEvent.USER_STOP_TYPING, entry.username)
            return True

    async def _expire_typing(self, username: str):
        await asyncio.sleep(self.typing_expiry)
        async with self.lock:
            # A refresh or stop may have replaced this task while it waited for the lock
            if self._typing.get(username) is not asyncio.current_task():
                return
            del self._typing[username]
            logger.debug(f"Typing indicator for {username} expired in room {self.room_id}")
            await self._broadcast_to_others(ServerEvent.USER_STOP_TYPING, username)

    def _cancel_typing(self, username: str):
        task = self._typing.pop(username, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _go_idle(self):
        for username in list(self._typing):
            self._cancel_typing(username)
        self.state = RoomState.IDLE
        logger.info(f"Room {self.room_id} is idle")

    def close(self):
        for username in list(self._typing):
            self._cancel_typing(username)


class SessionManager:
    """Owns the presence registry, the broadcast router and every room session."""

    def __init__(
        self,
        backend: RedisBackend,
        registry: Optional[PresenceRegistry] = None,
        router: Optional[BroadcastRouter] = None,
        typing_expiry: float = TYPING_EXPIRY_MS / 1000,
    ):
        self.backend = backend
        self.registry = registry if registry is not None else PresenceRegistry()
        self.router = router if router is not None else BroadcastRouter(self.registry)
        self.typing_expiry = typing_expiry
        # Format: {room_id: RoomSession}
        self._sessions: Dict[str, RoomSession] = {}

    def get(self, room_id: str) -> RoomSession:
        session = self._sessions.get(room_id)
        if session is None:
            session = RoomSession(room_id, self.registry, self.router, self.backend, self.typing_expiry)
            self._sessions[room_id] = session
            logger.debug(f"Created session for room {room_id}")
        return session

    def find(self, room_id: str) -> Optional[RoomSession]:
        """The room's session if one was ever started; never creates one."""
        return self._sessions.get(room_id)

    def active_rooms(self) -> List[str]:
        return [room_id for room_id, session in self._sessions.items() if session.state is RoomState.ACTIVE]

    async def disconnect(self, connection_id: str) -> List[str]:
        """Release a closed connection from every room, notifying the peers in each."""
        left = []
        for room_id in sorted(self.registry.rooms_of(connection_id)):
            try:
                if await self.get(room_id).leave(connection_id) is not None:
                    left.append(room_id)
            except Exception as e:
                logger.error(f"Error releasing connection {connection_id} from room {room_id}: {e}", exc_info=True)
        # Anything a failed leave left behind
        for entry in self.registry.leave_all(connection_id):
            logger.warning(f"Swept stale presence of {connection_id} in room {entry.room_id}")
        self.router.unregister(connection_id)
        logger.info(f"Connection {connection_id} released from {len(left)} rooms")
        return left

    def shutdown(self):
        for session in self._sessions.values():
            session.close()
