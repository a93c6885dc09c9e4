from __future__ import annotations

from datetime import timezone, tzinfo
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables.

    Client-side values (REST base URL, channel URL, retry and polling
    intervals) and the hub's own settings share one class so that the agent
    console and the server read the same ``.env`` file.
    """

    app_name: str = "DeskCollab"
    environment: str = "development"
    api_base_url: str = Field(
        default="http://localhost:3000/api/agent",
        validation_alias=AliasChoices("DESK_API_URL", "API_BASE_URL"),
    )
    channel_url: str = Field(
        default="ws://localhost:8000/ws/tickets",
        validation_alias=AliasChoices("DESK_CHANNEL_URL", "CHANNEL_URL"),
    )
    api_token: str | None = Field(default=None, validation_alias="DESK_API_TOKEN")
    request_timeout: float = Field(default=15.0, validation_alias="REQUEST_TIMEOUT")
    reconnect_delay: float = Field(
        default=1.0, gt=0, validation_alias="CHANNEL_RECONNECT_DELAY"
    )
    reconnect_attempts: int = Field(
        default=5, ge=0, validation_alias="CHANNEL_RECONNECT_ATTEMPTS"
    )
    ack_timeout: float = Field(default=20.0, gt=0, validation_alias="CHANNEL_ACK_TIMEOUT")
    presence_wait_interval: float = Field(
        default=0.1, gt=0, validation_alias="PRESENCE_WAIT_INTERVAL"
    )
    presence_wait_attempts: int = Field(
        default=50, ge=0, validation_alias="PRESENCE_WAIT_ATTEMPTS"
    )
    send_warning_seconds: float = Field(
        default=10.0, gt=0, validation_alias="SEND_WARNING_SECONDS"
    )
    worklog_tick_interval: float = Field(
        default=1.0, gt=0, validation_alias="WORKLOG_TICK_INTERVAL"
    )
    sla_poll_interval: float = Field(default=60.0, gt=0, validation_alias="SLA_POLL_INTERVAL")
    display_timezone: str = Field(default="UTC", validation_alias="DISPLAY_TIMEZONE")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_path: Path | None = Field(default=None, validation_alias="LOG_PATH")

    @field_validator("api_token", "log_path", mode="before")
    @classmethod
    def _empty_string_to_none(cls, value):  # type: ignore[override]
        """Coerce blank environment variables to ``None`` so optional values stay optional."""

        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, value: str) -> str:
        return str(value or "INFO").strip().upper()

    @field_validator("api_base_url", "channel_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return str(value).strip().rstrip("/")

    @field_validator("display_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        name = str(value or "").strip() or "UTC"
        if name.upper() == "UTC":
            return "UTC"
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {name}") from exc
        return name

    @property
    def tzinfo(self) -> tzinfo:
        if self.display_timezone == "UTC":
            return timezone.utc
        return ZoneInfo(self.display_timezone)

    model_config = SettingsConfigDict(
        env_file=(Path(__file__).resolve().parent.parent.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
