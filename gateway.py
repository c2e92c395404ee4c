import json
import uuid
from dataclasses import dataclass
from typing import Optional

import pydantic
from fastapi import WebSocket, WebSocketDisconnect

from backend import RedisBackend
from constants import REQUIRE_AUTH
from errors import ChatError, NotFound, NotMember, Unauthorized, ValidationError
from identity import Identity, decode_token, extract_token
from logging_config import get_logger
from room_session import SessionManager
from schemas.events import (
    COMMAND_MODELS,
    ClientEvent,
    GetMessagesCommand,
    JoinRoomCommand,
    LeaveRoomCommand,
    SendMessageCommand,
    ServerEvent,
    TypingCommand,
)

logger = get_logger(__name__)


@dataclass
class Connection:
    connection_id: str
    websocket: WebSocket
    identity: Optional[Identity] = None


class ConnectionGateway:
    """Runs one websocket connection: identity, command dispatch and cleanup on close.

    Frames in both directions are JSON objects ``{"event": name, "data": {...}}``.
    Anything a command gets wrong is answered with an ``error`` frame to the
    same connection only; nothing is broadcast for rejected commands.
    """

    def __init__(self, sessions: SessionManager, backend: RedisBackend, require_auth: bool = REQUIRE_AUTH):
        self.sessions = sessions
        self.backend = backend
        self.require_auth = require_auth
        self._handlers = {
            ClientEvent.JOIN_ROOM: self.on_join_room,
            ClientEvent.LEAVE_ROOM: self.on_leave_room,
            ClientEvent.GET_MESSAGES: self.on_get_messages,
            ClientEvent.SEND_MESSAGE: self.on_send_message,
            ClientEvent.TYPING: self.on_typing,
            ClientEvent.STOP_TYPING: self.on_stop_typing,
        }

    @property
    def router(self):
        return self.sessions.router

    async def handle(self, websocket: WebSocket):
        identity = None
        token = extract_token(websocket.headers, websocket.cookies, websocket.query_params)
        if token:
            try:
                identity = decode_token(token)
            except Unauthorized as e:
                logger.warning(f"WebSocket connection rejected: {e.message}")
                await websocket.close(code=1008, reason=e.message)
                return
        elif self.require_auth:
            logger.warning("WebSocket connection rejected: no token provided")
            await websocket.close(code=1008, reason="Authentication required")
            return

        await websocket.accept()
        connection = Connection(connection_id=str(uuid.uuid4()), websocket=websocket, identity=identity)
        self.router.register(connection.connection_id, websocket.send_json)
        who = identity.username if identity else "anonymous"
        logger.info(f"WebSocket connection {connection.connection_id} accepted ({who})")

        try:
            if identity:
                self.backend.remember_user(identity.user_id, identity.username)
            message_count = 0
            while True:
                try:
                    data = await websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info(f"WebSocket disconnected for connection {connection.connection_id}")
                    break
                message_count += 1
                logger.debug(f"Received frame #{message_count} from connection {connection.connection_id}")
                await self.dispatch(connection, data)
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.connection_id}: {e}", exc_info=True)
        finally:
            # Peers hear about the departure whether the close was clean or not
            await self.sessions.disconnect(connection.connection_id)

    async def dispatch(self, connection: Connection, raw: str):
        event_name = None
        try:
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                raise ValidationError("Frames must be JSON objects.")
            if not isinstance(frame, dict):
                raise ValidationError("Frames must be JSON objects.")

            event_name = frame.get("event")
            try:
                event = ClientEvent(event_name)
            except ValueError:
                raise ValidationError(f"Unknown event '{event_name}'.")

            data = frame.get("data")
            if data is None:
                data = {k: v for k, v in frame.items() if k != "event"}
            try:
                command = COMMAND_MODELS[event].model_validate(data)
            except pydantic.ValidationError as e:
                first = e.errors()[0]
                field = ".".join(str(part) for part in first.get("loc", ())) or "data"
                raise ValidationError(f"Invalid {field}: {first.get('msg')}")

            await self._handlers[event](connection, command)
        except ChatError as e:
            logger.warning(f"Rejected {event_name} from connection {connection.connection_id}: {e.code}: {e.message}")
            await self.router.send_to(connection.connection_id, ServerEvent.ERROR, {**e.to_dict(), "event": event_name})
        except Exception as e:
            logger.error(f"Error handling {event_name} from connection {connection.connection_id}: {e}", exc_info=True)
            await self.router.send_to(
                connection.connection_id,
                ServerEvent.ERROR,
                {"code": "internal_error", "message": "Something went wrong.", "event": event_name},
            )

    def _resolve_user(self, connection: Connection, command, require_user_id: bool = False):
        # A verified identity always wins over what the payload claims
        if connection.identity is not None:
            return connection.identity.user_id, connection.identity.username
        username = (command.username or "").strip()
        if not username:
            raise ValidationError("username is required.")
        user_id = getattr(command, "userId", None)
        if require_user_id and not user_id:
            raise ValidationError("userId is required.")
        return user_id, username

    def _require_room(self, room_id: str):
        if not self.backend.room_exists(room_id):
            raise NotFound("Room not found.")

    async def on_join_room(self, connection: Connection, command: JoinRoomCommand):
        self._require_room(command.roomId)
        # Only verified identities reach the user store, and they were stored on connect
        user_id, username = self._resolve_user(connection, command)
        await self.sessions.get(command.roomId).join(connection.connection_id, username, user_id)

    def _joined_session(self, room_id: str):
        # Sessions only exist for rooms someone joined, so unknown ids never allocate one
        session = self.sessions.find(room_id)
        if session is None:
            raise NotMember("Join the room first.")
        return session

    async def on_leave_room(self, connection: Connection, command: LeaveRoomCommand):
        session = self.sessions.find(command.roomId)
        if session is not None:
            await session.leave(connection.connection_id)

    async def on_get_messages(self, connection: Connection, command: GetMessagesCommand):
        self._require_room(command.roomId)
        await self.sessions.get(command.roomId).request_history(connection.connection_id)

    async def on_send_message(self, connection: Connection, command: SendMessageCommand):
        user_id, username = self._resolve_user(connection, command, require_user_id=True)
        session = self._joined_session(command.roomId)
        await session.post_message(connection.connection_id, user_id, username, command.content)

    async def on_typing(self, connection: Connection, command: TypingCommand):
        # The name comes from the presence entry, whatever the payload says
        await self._joined_session(command.roomId).set_typing(connection.connection_id)

    async def on_stop_typing(self, connection: Connection, command: TypingCommand):
        session = self.sessions.find(command.roomId)
        if session is not None:
            await session.clear_typing(connection.connection_id)
