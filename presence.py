from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PresenceEntry:
    room_id: str
    connection_id: str
    username: str
    user_id: Optional[str] = None


class PresenceRegistry:
    """Which connections are in which room right now.

    This is not membership: a user can be a member of a room without being
    connected, and a connection can be present without being a member. The
    registry tracks connections, so one user with two tabs has two entries.
    Callers serialize mutations per room; the registry itself does no locking.
    """

    def __init__(self):
        # Format: {room_id: {connection_id: PresenceEntry}}, insertion ordered
        self._rooms: Dict[str, Dict[str, PresenceEntry]] = {}
        # Format: {connection_id: {room_id, ...}}
        self._connections: Dict[str, Set[str]] = {}

    def join(self, room_id: str, connection_id: str, username: str, user_id: Optional[str] = None) -> PresenceEntry:
        entries = self._rooms.setdefault(room_id, {})
        existing = entries.get(connection_id)
        if existing is not None:
            logger.debug(f"Connection {connection_id} already present in room {room_id}")
            return existing
        entry = PresenceEntry(room_id=room_id, connection_id=connection_id, username=username, user_id=user_id)
        entries[connection_id] = entry
        self._connections.setdefault(connection_id, set()).add(room_id)
        logger.debug(f"Connection {connection_id} ({username}) present in room {room_id} ({len(entries)} connections)")
        return entry

    def leave(self, room_id: str, connection_id: str) -> Optional[PresenceEntry]:
        entries = self._rooms.get(room_id)
        if not entries or connection_id not in entries:
            return None
        entry = entries.pop(connection_id)
        if not entries:
            del self._rooms[room_id]
        rooms = self._connections.get(connection_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._connections[connection_id]
        logger.debug(f"Connection {connection_id} ({entry.username}) removed from room {room_id}")
        return entry

    def leave_all(self, connection_id: str) -> List[PresenceEntry]:
        removed = []
        for room_id in list(self._connections.get(connection_id, ())):
            entry = self.leave(room_id, connection_id)
            if entry is not None:
                removed.append(entry)
        return removed

    def members_of(self, room_id: str) -> Set[str]:
        return {entry.username for entry in self._rooms.get(room_id, {}).values()}

    def member_list(self, room_id: str) -> List[dict]:
        """Present users as [{_id, username}], one per username, in arrival order."""
        members = []
        seen = set()
        for entry in self._rooms.get(room_id, {}).values():
            if entry.username in seen:
                continue
            seen.add(entry.username)
            members.append({"_id": entry.user_id or entry.username, "username": entry.username})
        return members

    def connections_in(self, room_id: str) -> List[str]:
        return list(self._rooms.get(room_id, {}).keys())

    def rooms_of(self, connection_id: str) -> Set[str]:
        return set(self._connections.get(connection_id, ()))

    def get_entry(self, room_id: str, connection_id: str) -> Optional[PresenceEntry]:
        return self._rooms.get(room_id, {}).get(connection_id)

    def connections_for(self, room_id: str, username: str) -> Set[str]:
        return {conn_id for conn_id, entry in self._rooms.get(room_id, {}).items() if entry.username == username}

    def is_present(self, room_id: str, connection_id: str) -> bool:
        return connection_id in self._rooms.get(room_id, {})

    def username_present(self, room_id: str, username: str) -> bool:
        return any(entry.username == username for entry in self._rooms.get(room_id, {}).values())

    def is_empty(self, room_id: str) -> bool:
        return not self._rooms.get(room_id)
