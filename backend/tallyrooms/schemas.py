from pydantic import BaseModel
from datetime import datetime

class SessionIn(BaseModel):
    display_name: str

class UserOut(BaseModel):
    id: int
    name: str
    class Config:
        from_attributes = True

class SessionOut(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserOut

class RoomCreate(BaseModel):
    name: str

class RoomOut(BaseModel):
    id: int
    room_code: str
    name: str
    creator_id: int
    created_at: datetime
    is_active: bool
    class Config:
        from_attributes = True

class ParticipantOut(BaseModel):
    id: int
    name: str

class MessageOut(BaseModel):
    id: int
    room_id: int
    user_id: int
    user_name: str
    body: str
    created_at: datetime

class RoomSnapshot(BaseModel):
    room: RoomOut
    history: list[MessageOut]
    participants: list[ParticipantOut]
