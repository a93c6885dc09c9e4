from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class Notification:
    """A transient message shown to the agent."""

    level: NotificationLevel
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Notify = Callable[[Notification], None]


def discard_notification(notification: Notification) -> None:
    """Default sink for engines used without a session."""
