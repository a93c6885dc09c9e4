"""SLA risk summary for a ticket."""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from deskcollab.core.logging import log_error
from deskcollab.schemas.sla import RiskStatus, SLATimer, coerce_risk_status
from deskcollab.services.ticket_api import TicketAPIClient, TicketAPIError

# Highest first.
RISK_PRECEDENCE: tuple[RiskStatus, ...] = (
    RiskStatus.BREACHED,
    RiskStatus.CRITICAL,
    RiskStatus.AT_RISK,
    RiskStatus.PAUSED,
    RiskStatus.ON_TRACK,
)


def _status_of(timer: SLATimer | Mapping[str, Any]) -> RiskStatus:
    if isinstance(timer, SLATimer):
        return timer.display_status
    return coerce_risk_status(timer.get("displayStatus", timer.get("display_status")))


def evaluate(timers: Iterable[SLATimer | Mapping[str, Any]]) -> RiskStatus | None:
    """Return the worst status across ``timers``, or ``None`` when there are none.

    Timers whose status is not recognised count as on track, the same way
    ``SLATimer`` parses them from the API.
    """

    items = list(timers)
    if not items:
        return None
    present = {_status_of(timer) for timer in items}
    for status in RISK_PRECEDENCE:
        if status in present:
            return status
    return RiskStatus.ON_TRACK


class SlaMonitor:
    """Poll the SLA timers of one conversation and keep the derived risk."""

    def __init__(
        self,
        conversation_id: str,
        api: TicketAPIClient,
        *,
        on_change: Callable[[RiskStatus | None, tuple[SLATimer, ...]], None] | None = None,
    ) -> None:
        self.conversation_id = str(conversation_id)
        self._api = api
        self._on_change = on_change
        self._timers: tuple[SLATimer, ...] = ()
        self._risk: RiskStatus | None = None

    @property
    def timers(self) -> tuple[SLATimer, ...]:
        return self._timers

    @property
    def risk(self) -> RiskStatus | None:
        return self._risk

    async def poll(self) -> RiskStatus | None:
        try:
            timers = await self._api.get_sla_timers(self.conversation_id)
        except TicketAPIError as exc:
            log_error("Unable to load SLA timers", conversation_id=self.conversation_id, error=str(exc))
            return self._risk
        self._timers = tuple(timers)
        risk = evaluate(self._timers)
        changed = risk != self._risk
        self._risk = risk
        if self._on_change is not None and changed:
            self._on_change(risk, self._timers)
        return risk
