"""Envelope exchanged over the ticket collaboration websocket."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Outbound (client → server)
SEND_MESSAGE = "send_message"
JOIN_CONVERSATION = "join:conversation"
TICKET_VIEW = "ticket:view"
TICKET_LEAVE = "ticket:leave"

# Inbound (server → client)
CONNECTED = "connected"
ACK = "ack"
MESSAGE_SENT = "message_sent"
MESSAGE_ERROR = "message_error"
RECEIVE_MESSAGE = "receive_message"
VIEWER_JOINED = "ticket:viewer:joined"
VIEWER_LEFT = "ticket:viewer:left"
TICKET_UPDATED = "ticket:updated"
TICKET_STATUS_CHANGED = "ticket:status:changed"


class ChannelEnvelope(BaseModel):
    type: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    ack_id: Optional[str] = Field(default=None, alias="ackId")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("data", mode="before")
    @classmethod
    def _default_data(cls, value: Any) -> Any:
        return {} if value is None else value

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
