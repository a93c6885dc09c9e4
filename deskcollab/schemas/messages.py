from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def coerce_identifier(value: Any) -> Any:
    """Render numeric identifiers as strings so ids compare consistently."""

    if value is None or isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class SenderType(str, Enum):
    AGENT = "agent"
    ADMIN = "admin"
    CUSTOMER = "customer"


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"


class Attachment(BaseModel):
    id: Optional[str] = None
    url: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    size: Optional[int] = Field(default=None, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def _normalise_id(cls, value: Any) -> Any:
        return coerce_identifier(value)


class ReplyReference(BaseModel):
    """The message a reply points at, either bare or embedded by the server."""

    id: str
    content: Optional[str] = None
    sender_type: Optional[SenderType] = Field(default=None, alias="senderType")
    sender_name: Optional[str] = Field(default=None, alias="senderName")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def _normalise_id(cls, value: Any) -> Any:
        return coerce_identifier(value)


class Message(BaseModel):
    id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., alias="conversationId")
    content: str = ""
    sender_type: SenderType = Field(..., alias="senderType")
    sender_id: Optional[str] = Field(default=None, alias="senderId")
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )
    metadata: Optional[dict[str, Any]] = None
    reply_to: Optional[ReplyReference] = Field(default=None, alias="replyTo")
    attachments: tuple[Attachment, ...] = ()
    status: MessageStatus = MessageStatus.SENT
    # Only present on channel broadcasts; identifies the originating connection.
    connection_id: Optional[str] = Field(default=None, alias="connectionId", exclude=True)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("id", "conversation_id", "sender_id", mode="before")
    @classmethod
    def _normalise_identifiers(cls, value: Any) -> Any:
        return coerce_identifier(value)

    @field_validator("reply_to", mode="before")
    @classmethod
    def _expand_reply_reference(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return {"id": value}
        return value

    @field_validator("attachments", mode="before")
    @classmethod
    def _default_attachments(cls, value: Any) -> Any:
        return () if value is None else value

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_pending(self) -> bool:
        return self.status is MessageStatus.SENDING
