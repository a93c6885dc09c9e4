from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from deskcollab.schemas.messages import coerce_identifier


class StopReasonType(str, Enum):
    BREAK = "BREAK"
    WORK = "WORK"
    OTHER = "OTHER"


class StopReason(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    type: StopReasonType = StopReasonType.OTHER
    is_active: bool = Field(default=True, alias="isActive")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def _normalise_id(cls, value: Any) -> Any:
        return coerce_identifier(value)


class WorklogSession(BaseModel):
    id: str
    started_at: datetime = Field(..., alias="startedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")
    duration_seconds: int = Field(default=0, ge=0, alias="durationSeconds")
    stop_reason: Optional[str] = Field(default=None, alias="stopReason")
    agent_id: Optional[str] = Field(default=None, alias="agentId")
    agent_name: Optional[str] = Field(default=None, alias="agentName")
    is_system_auto: bool = Field(default=False, alias="isSystemAuto")

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @field_validator("id", "agent_id", mode="before")
    @classmethod
    def _normalise_identifiers(cls, value: Any) -> Any:
        return coerce_identifier(value)

    @field_validator("duration_seconds", mode="before")
    @classmethod
    def _default_duration(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("started_at", "ended_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def elapsed_seconds(self, now: datetime | None = None) -> int:
        if not self.is_active:
            return self.duration_seconds
        current = now or datetime.now(timezone.utc)
        return max(int((current - self.started_at).total_seconds()), 0)


class TimerState(BaseModel):
    """Server view of the time tracked on one ticket."""

    active_session: Optional[WorklogSession] = Field(default=None, alias="activeLog")
    total_seconds: int = Field(default=0, ge=0, alias="totalSeconds")
    history_sessions: tuple[WorklogSession, ...] = Field(default=(), alias="historyLogs")

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _derive_total(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("totalSeconds") is not None or data.get("total_seconds") is not None:
            return data
        payload = dict(data)
        payload["totalSeconds"] = derive_total_seconds(
            payload.get("activeLog", payload.get("active_session")),
            payload.get("historyLogs", payload.get("history_sessions")) or (),
        )
        return payload

    @property
    def is_running(self) -> bool:
        return self.active_session is not None


def derive_total_seconds(
    active: WorklogSession | dict[str, Any] | None,
    history: Any,
    *,
    now: datetime | None = None,
) -> int:
    """Sum completed durations plus the live elapsed time of the active session."""

    total = 0
    for entry in history or ():
        session = entry if isinstance(entry, WorklogSession) else WorklogSession.model_validate(entry)
        total += session.duration_seconds
    if active:
        session = active if isinstance(active, WorklogSession) else WorklogSession.model_validate(active)
        total += session.elapsed_seconds(now)
    return total
