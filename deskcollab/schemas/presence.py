from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deskcollab.schemas.messages import SenderType, coerce_identifier


class Viewer(BaseModel):
    user_id: str = Field(..., min_length=1, alias="userId")
    user_name: str = Field(default="", alias="userName")
    user_avatar: Optional[str] = Field(default=None, alias="userAvatar")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("user_id", mode="before")
    @classmethod
    def _normalise_user_id(cls, value: Any) -> Any:
        return coerce_identifier(value)


class AgentIdentity(Viewer):
    """The signed-in agent driving a ticket session."""

    sender_type: SenderType = Field(default=SenderType.AGENT, alias="senderType")

    def as_viewer(self) -> Viewer:
        return Viewer(user_id=self.user_id, user_name=self.user_name, user_avatar=self.user_avatar)
