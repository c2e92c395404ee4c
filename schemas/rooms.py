from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class CreateRoomRequest(BaseModel):
    # Bounds are enforced by the backend so the error matches the realtime side
    name: Optional[str] = None
    description: Optional[str] = ""

class UserRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    username: Optional[str] = None

class RoomOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    name: str
    description: str = ""
    createdBy: Optional[UserRef] = None
    members: list[UserRef] = []
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

class RoomResponse(BaseModel):
    message: Optional[str] = None
    room: RoomOut

class RoomListResponse(BaseModel):
    rooms: list[RoomOut]

class MessageOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    room: str
    sender: UserRef
    content: str
    createdAt: str

class MessageHistoryResponse(BaseModel):
    roomId: str
    messages: list[MessageOut]
