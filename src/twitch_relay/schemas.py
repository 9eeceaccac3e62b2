"""Pydantic schemas for the HTTP API and the WebSocket frames."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    error_code: int
    description: str


class VersionResponse(BaseModel):
    version: str


class ClientEntry(BaseModel):
    key: str
    channel: str
    connected: bool


class ClientsResponse(BaseModel):
    clients: List[ClientEntry]


class HealthResponse(BaseModel):
    status: str
    version: str
    config_path: str


# Chat events keep the field names WebSocket clients already consume.


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatUser(_WireModel):
    id: str = Field(default="", alias="ID")
    name: str = Field(default="", alias="Name")
    display_name: str = Field(default="", alias="DisplayName")
    color: str = Field(default="", alias="Color")
    badges: Dict[str, int] = Field(default_factory=dict, alias="Badges")


class EmotePosition(_WireModel):
    start: int = Field(alias="Start")
    end: int = Field(alias="End")


class Emote(_WireModel):
    name: str = Field(alias="Name")
    id: str = Field(alias="ID")
    count: int = Field(alias="Count")
    positions: List[EmotePosition] = Field(default_factory=list, alias="Positions")


class ChatEvent(_WireModel):
    user: ChatUser = Field(default_factory=ChatUser, alias="User")
    raw: str = Field(default="", alias="Raw")
    type: int = Field(alias="Type")
    raw_type: str = Field(alias="RawType")
    tags: Dict[str, str] = Field(default_factory=dict, alias="Tags")
    message: str = Field(default="", alias="Message")
    channel: str = Field(alias="Channel")
    room_id: str = Field(default="", alias="RoomID")
    id: str = Field(default="", alias="ID")
    time: Optional[datetime] = Field(default=None, alias="Time")
    emotes: List[Emote] = Field(default_factory=list, alias="Emotes")

    def payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class PrivateMessageEvent(ChatEvent):
    type: int = Field(default=1, alias="Type")
    raw_type: str = Field(default="PRIVMSG", alias="RawType")
    bits: int = Field(default=0, alias="Bits")
    action: bool = Field(default=False, alias="Action")
    first_message: bool = Field(default=False, alias="FirstMessage")


class UserNoticeEvent(ChatEvent):
    type: int = Field(default=4, alias="Type")
    raw_type: str = Field(default="USERNOTICE", alias="RawType")
    msg_id: str = Field(default="", alias="MsgID")
    msg_params: Dict[str, str] = Field(default_factory=dict, alias="MsgParams")
    system_msg: str = Field(default="", alias="SystemMsg")
