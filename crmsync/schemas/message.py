from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive timestamps; every stored timestamp is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    main_id: int
    author_type: str
    author_name: Optional[str] = None
    content: Optional[str] = None
    message_type: str = "text"
    message_id_tg: Optional[int] = None
    reply_to_mess_id_tg: Optional[int] = None
    attachment_url: Optional[str] = None
    client_ref: Optional[str] = None
    reactions: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("reactions", mode="before")
    @classmethod
    def _reactions_list(cls, value):
        return value or []


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contact_id: int
    main_id: int
    status: str
    source: str
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timestamps_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class MessagesListResponse(BaseModel):
    messages: list[MessageOut]
    total: int
    main_id: int


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    reply_to_message_id: Optional[int] = None  # Telegram message id being answered
    client_ref: Optional[str] = Field(default=None, max_length=128)
    thread_key: Optional[int] = None


class ReactionRequest(BaseModel):
    emoji: str = Field(min_length=1, max_length=16)
    author: str = Field(min_length=1, max_length=128)


class StatusUpdateRequest(BaseModel):
    status: str
