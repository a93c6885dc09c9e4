from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deskcollab.schemas.messages import Message, coerce_identifier


class TicketStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (TicketStatus.RESOLVED, TicketStatus.CLOSED)


class TicketSummary(BaseModel):
    """The slice of a ticket the collaboration core reacts to."""

    id: str
    ticket_number: str = Field(..., alias="ticketNumber")
    status: TicketStatus = TicketStatus.OPEN
    assignee_id: Optional[str] = Field(default=None, alias="assigneeId")
    subject: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @field_validator("id", "ticket_number", "assignee_id", mode="before")
    @classmethod
    def _normalise_identifiers(cls, value: Any) -> Any:
        return coerce_identifier(value)

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def is_assigned_to(self, user_id: str | None) -> bool:
        return bool(user_id) and self.assignee_id == user_id


class TicketDetail(BaseModel):
    ticket: TicketSummary
    messages: list[Message] = Field(default_factory=list)
