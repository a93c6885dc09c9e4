from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RiskStatus(str, Enum):
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    CRITICAL = "critical"
    BREACHED = "breached"
    PAUSED = "paused"


def coerce_risk_status(value: Any) -> RiskStatus:
    """Map a server status onto ``RiskStatus``; unrecognised values count as on track."""

    if isinstance(value, RiskStatus):
        return value
    try:
        return RiskStatus(str(value).strip().lower())
    except ValueError:
        return RiskStatus.ON_TRACK


class SLATimer(BaseModel):
    display_status: RiskStatus = Field(..., alias="displayStatus")
    percentage_elapsed: float = Field(default=0.0, ge=0, alias="percentageElapsed")
    policy_name: Optional[str] = Field(default=None, alias="policyName")
    timer_type: Optional[str] = Field(default=None, alias="timerType")

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @field_validator("display_status", mode="before")
    @classmethod
    def _normalise_status(cls, value: Any) -> Any:
        if value is None:
            return value
        return coerce_risk_status(value)
