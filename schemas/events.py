from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ClientEvent(str, Enum):
    JOIN_ROOM = "joinRoom"
    LEAVE_ROOM = "leaveRoom"
    GET_MESSAGES = "getMessages"
    SEND_MESSAGE = "sendMessage"
    TYPING = "typing"
    STOP_TYPING = "stopTyping"


class ServerEvent(str, Enum):
    ROOM_USERS = "roomUsers"
    USER_JOINED = "userJoined"
    USER_LEFT = "userLeft"
    MESSAGE_HISTORY = "messageHistory"
    NEW_MESSAGE = "newMessage"
    USER_TYPING = "userTyping"
    USER_STOP_TYPING = "userStopTyping"
    ERROR = "error"


class RoomCommand(BaseModel):
    roomId: str = Field(..., min_length=1)

class JoinRoomCommand(RoomCommand):
    username: Optional[str] = None
    userId: Optional[str] = None

class LeaveRoomCommand(RoomCommand):
    username: Optional[str] = None

class GetMessagesCommand(RoomCommand):
    pass

class SendMessageCommand(RoomCommand):
    userId: Optional[str] = None
    username: Optional[str] = None
    # Length rules live in backend.validate_message_content
    content: str

class TypingCommand(RoomCommand):
    username: Optional[str] = None


COMMAND_MODELS = {
    ClientEvent.JOIN_ROOM: JoinRoomCommand,
    ClientEvent.LEAVE_ROOM: LeaveRoomCommand,
    ClientEvent.GET_MESSAGES: GetMessagesCommand,
    ClientEvent.SEND_MESSAGE: SendMessageCommand,
    ClientEvent.TYPING: TypingCommand,
    ClientEvent.STOP_TYPING: TypingCommand,
}
