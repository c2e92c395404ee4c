import functools
import json
import uuid
from datetime import datetime, timezone

import redis

from constants import (
    REDIS_HOST,
    REDIS_PORT,
    REDIS_PASSWORD,
    REDIS_DB,
    ROOM_NAME_MIN_LENGTH,
    ROOM_NAME_MAX_LENGTH,
    ROOM_DESCRIPTION_MAX_LENGTH,
    MAX_MESSAGE_LENGTH,
    HISTORY_LIMIT,
)
from errors import ValidationError, NotFound, DuplicateName, AlreadyMember, NotMember, PersistenceFailure
from redis_keys import (
    REDIS_ROOM_META_KEY,
    REDIS_ROOM_MEMBERS_KEY,
    REDIS_ROOM_MESSAGES_KEY,
    REDIS_ROOM_NAME_KEY,
    REDIS_ROOMS_INDEX_KEY,
    REDIS_USER_KEY,
    REDIS_SEQUENCE_KEY,
)
from logging_config import get_logger

logger = get_logger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def create_redis_client():
    # Connection is opened lazily on first command; the app pings it on startup
    return redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, db=REDIS_DB, decode_responses=True)


def validate_message_content(content) -> str:
    """Trim message content and enforce the 1..MAX_MESSAGE_LENGTH bounds."""
    if not isinstance(content, str):
        raise ValidationError("Message content is required.")
    content = content.strip()
    if not content:
        raise ValidationError("Message content cannot be empty.")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message content cannot exceed {MAX_MESSAGE_LENGTH} characters.")
    return content


def _storage_call(func):
    """Surface any redis failure as PersistenceFailure."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except redis.RedisError as e:
            logger.error(f"Redis error in {func.__name__}: {e}", exc_info=True)
            raise PersistenceFailure("Storage is unavailable, please retry.") from e
    return wrapper


class RedisBackend:
    """Durable store for rooms, memberships, users and the per-room message log."""

    def __init__(self, redis_client=None):
        self.redis_client = redis_client if redis_client is not None else create_redis_client()
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")

    @_storage_call
    def ping(self) -> bool:
        return bool(self.redis_client.ping())

    # Users

    @_storage_call
    def remember_user(self, user_id: str, username: str):
        if not user_id or not username:
            return
        self.redis_client.hset(REDIS_USER_KEY.format(user_id=user_id), mapping={"username": username})
        logger.debug(f"Stored username {username} for user {user_id}")

    @_storage_call
    def get_username(self, user_id: str):
        return self.redis_client.hget(REDIS_USER_KEY.format(user_id=user_id), "username")

    def _resolve_users(self, user_ids):
        if not user_ids:
            return []
        pipe = self.redis_client.pipeline()
        for user_id in user_ids:
            pipe.hget(REDIS_USER_KEY.format(user_id=user_id), "username")
        usernames = pipe.execute()
        return [{"_id": user_id, "username": username} for user_id, username in zip(user_ids, usernames)]

    # Rooms

    def _load_room(self, room_id: str):
        meta = self.redis_client.hgetall(REDIS_ROOM_META_KEY.format(room_id=room_id))
        if not meta:
            raise NotFound("Room not found.")
        member_ids = self.redis_client.zrange(REDIS_ROOM_MEMBERS_KEY.format(room_id=room_id), 0, -1)
        creator_id = meta.get("created_by")
        creator = self._resolve_users([creator_id])[0] if creator_id else None
        return {
            "_id": meta["_id"],
            "name": meta["name"],
            "description": meta.get("description", ""),
            "createdBy": creator,
            "members": self._resolve_users(member_ids),
            "createdAt": meta.get("created_at"),
            "updatedAt": meta.get("updated_at"),
        }

    @_storage_call
    def create_room(self, name, description, creator_id: str):
        name = name.strip() if isinstance(name, str) else ""
        description = description.strip() if isinstance(description, str) else ""
        if not name:
            raise ValidationError("Room name is required.")
        if len(name) < ROOM_NAME_MIN_LENGTH:
            raise ValidationError(f"Room name must be at least {ROOM_NAME_MIN_LENGTH} characters.")
        if len(name) > ROOM_NAME_MAX_LENGTH:
            raise ValidationError(f"Room name cannot exceed {ROOM_NAME_MAX_LENGTH} characters.")
        if len(description) > ROOM_DESCRIPTION_MAX_LENGTH:
            raise ValidationError(f"Description cannot exceed {ROOM_DESCRIPTION_MAX_LENGTH} characters.")

        room_id = uuid.uuid4().hex
        # Claiming the name first makes uniqueness atomic across concurrent creators
        claimed = self.redis_client.set(REDIS_ROOM_NAME_KEY.format(name=name), room_id, nx=True)
        if not claimed:
            logger.warning(f"Room creation rejected: name '{name}' already exists")
            raise DuplicateName("A room with that name already exists.")

        now = utc_now_iso()
        try:
            created_seq = self.redis_client.incr(REDIS_SEQUENCE_KEY)
            joined_seq = self.redis_client.incr(REDIS_SEQUENCE_KEY)
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.hset(REDIS_ROOM_META_KEY.format(room_id=room_id), mapping={
                "_id": room_id,
                "name": name,
                "description": description,
                "created_by": creator_id,
                "created_at": now,
                "updated_at": now,
            })
            pipe.zadd(REDIS_ROOM_MEMBERS_KEY.format(room_id=room_id), {creator_id: joined_seq})
            pipe.zadd(REDIS_ROOMS_INDEX_KEY, {room_id: created_seq})
            pipe.execute()
        except redis.RedisError:
            # Give the name back so a retry is not refused as a duplicate
            self.redis_client.delete(REDIS_ROOM_NAME_KEY.format(name=name))
            logger.error(f"Room creation for '{name}' failed, released the name claim")
            raise
        logger.info(f"Room {room_id} created: name={name}, creator={creator_id}")
        return self._load_room(room_id)

    @_storage_call
    def get_room(self, room_id: str):
        logger.debug(f"Fetching room {room_id}")
        return self._load_room(room_id)

    @_storage_call
    def room_exists(self, room_id: str) -> bool:
        return bool(self.redis_client.exists(REDIS_ROOM_META_KEY.format(room_id=room_id)))

    @_storage_call
    def list_rooms(self):
        room_ids = self.redis_client.zrevrange(REDIS_ROOMS_INDEX_KEY, 0, -1)
        rooms = []
        for room_id in room_ids:
            try:
                rooms.append(self._load_room(room_id))
            except NotFound:
                logger.warning(f"Room {room_id} is indexed but has no metadata, skipping")
        return rooms

    @_storage_call
    def add_member(self, room_id: str, user_id: str):
        if not self.redis_client.exists(REDIS_ROOM_META_KEY.format(room_id=room_id)):
            raise NotFound("Room not found.")
        seq = self.redis_client.incr(REDIS_SEQUENCE_KEY)
        added = self.redis_client.zadd(REDIS_ROOM_MEMBERS_KEY.format(room_id=room_id), {user_id: seq}, nx=True)
        if not added:
            raise AlreadyMember("You are already in this room.")
        self.redis_client.hset(REDIS_ROOM_META_KEY.format(room_id=room_id), "updated_at", utc_now_iso())
        logger.info(f"User {user_id} became a member of room {room_id}")
        return self._load_room(room_id)

    @_storage_call
    def remove_member(self, room_id: str, user_id: str):
        if not self.redis_client.exists(REDIS_ROOM_META_KEY.format(room_id=room_id)):
            raise NotFound("Room not found.")
        removed = self.redis_client.zrem(REDIS_ROOM_MEMBERS_KEY.format(room_id=room_id), user_id)
        if not removed:
            raise NotMember("You are not in this room.")
        self.redis_client.hset(REDIS_ROOM_META_KEY.format(room_id=room_id), "updated_at", utc_now_iso())
        logger.info(f"User {user_id} is no longer a member of room {room_id}")
        return self._load_room(room_id)

    # Messages

    @_storage_call
    def append_message(self, room_id: str, sender_id: str, content, username: str = None):
        content = validate_message_content(content)
        if not sender_id:
            raise ValidationError("Sender id is required.")
        if not self.redis_client.exists(REDIS_ROOM_META_KEY.format(room_id=room_id)):
            raise NotFound("Room not found.")

        # A claimed username labels this message only; the user store is left to verified identities
        if not username:
            username = self.get_username(sender_id)

        message = {
            "_id": uuid.uuid4().hex,
            "room": room_id,
            "sender": {"_id": sender_id, "username": username},
            "content": content,
            "createdAt": utc_now_iso(),
        }
        self.redis_client.rpush(REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id), json.dumps(message))
        logger.debug(f"Appended message {message['_id']} to room {room_id}")
        return message

    @_storage_call
    def list_messages(self, room_id: str, limit: int = HISTORY_LIMIT, order: str = "asc"):
        if order not in ("asc", "desc"):
            raise ValidationError("order must be 'asc' or 'desc'.")
        limit = max(1, min(int(limit or HISTORY_LIMIT), HISTORY_LIMIT))
        raw = self.redis_client.lrange(REDIS_ROOM_MESSAGES_KEY.format(room_id=room_id), -limit, -1)
        messages = []
        for item in raw:
            try:
                messages.append(json.loads(item))
            except json.JSONDecodeError as e:
                logger.error(f"Skipping unreadable message in room {room_id}: {e}")
        if order == "desc":
            messages.reverse()
        logger.debug(f"Loaded {len(messages)} messages for room {room_id}")
        return messages


redis_backend = RedisBackend()
