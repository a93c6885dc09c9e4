"""Work-time tracking for one (agent, ticket) pair."""
from __future__ import annotations

from collections.abc import Callable
from enum import Enum

from deskcollab.core.logging import log_error, log_info, log_warning
from deskcollab.schemas.tickets import TicketStatus, TicketSummary
from deskcollab.schemas.worklogs import StopReason, TimerState
from deskcollab.services.notifications import (
    Notification,
    NotificationLevel,
    Notify,
    discard_notification,
)
from deskcollab.services.ticket_api import TicketAPIClient, TicketAPIError

AUTO_STOP_REASONS: dict[TicketStatus, str] = {
    TicketStatus.RESOLVED: "Ticket Resolved",
    TicketStatus.CLOSED: "Ticket Closed",
}


class TimerPhase(str, Enum):
    RUNNING = "running"
    # Stopped by the system or never started: auto-start may resume it.
    STOPPED_AUTO = "stopped_auto"
    # Stopped by the agent: only a manual start leaves this phase.
    STOPPED_MANUAL = "stopped_manual"


class WorklogTimer:
    """State machine driving the worklog start/stop endpoints.

    Server state is authoritative: after every start, stop or lifecycle
    change the timer reloads ``GET /worklogs`` and discards its local
    per-second ticks. A REST failure leaves the phase untouched, raises an
    error notification and is never retried by the timer itself.
    """

    def __init__(
        self,
        ticket_number: str,
        agent_id: str,
        api: TicketAPIClient,
        *,
        notify: Notify = discard_notification,
        on_change: Callable[["WorklogTimer"], None] | None = None,
    ) -> None:
        self.ticket_number = str(ticket_number)
        self.agent_id = str(agent_id)
        self._api = api
        self._notify = notify
        self._on_change = on_change
        self._phase = TimerPhase.STOPPED_AUTO
        self._state = TimerState()
        self._display_seconds = 0
        self._ticket: TicketSummary | None = None
        self._busy = False
        # False until the latest GET /worklogs succeeded; auto-start waits for it.
        self._state_loaded = False

    @property
    def phase(self) -> TimerPhase:
        return self._phase

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._phase is TimerPhase.RUNNING

    @property
    def manual_stop(self) -> bool:
        return self._phase is TimerPhase.STOPPED_MANUAL

    @property
    def display_seconds(self) -> int:
        return self._display_seconds

    async def refresh(self) -> TimerState | None:
        try:
            state = await self._api.get_worklogs(self.ticket_number)
        except TicketAPIError as exc:
            log_error("Unable to load worklogs", ticket_number=self.ticket_number, error=str(exc))
            self._state_loaded = False
            return None
        self._apply(state)
        return state

    async def sync_ticket(self, ticket: TicketSummary) -> None:
        """React to a freshly fetched ticket representation."""

        self._ticket = ticket
        if ticket.status.is_terminal:
            if self.is_running:
                await self._auto_stop(ticket.status)
            return
        if self._should_auto_start():
            await self._auto_start()

    async def start(self) -> bool:
        """Manual start; the only way out of ``STOPPED_MANUAL``."""

        if self.is_running or self._busy:
            return False
        if self._ticket is not None and self._ticket.status.is_terminal:
            self._notify(
                Notification(
                    NotificationLevel.WARNING,
                    f"Cannot start timer on a {self._ticket.status.value} ticket",
                )
            )
            return False
        started = await self._call_start()
        if started:
            self._notify(Notification(NotificationLevel.SUCCESS, "Timer started"))
        return started

    async def stop(self, reason: StopReason | str) -> bool:
        """Manual stop with a reason picked by the agent."""

        if isinstance(reason, StopReason):
            reason_id, reason_name = reason.id, reason.name
        else:
            reason_id, reason_name = None, str(reason or "").strip()
        if not reason_name:
            raise ValueError("A stop reason is required to stop the timer")
        if not self.is_running or self._busy:
            return False
        stopped = await self._call_stop(
            reason_id=reason_id,
            stop_reason=reason_name,
            next_phase=TimerPhase.STOPPED_MANUAL,
        )
        if stopped:
            self._notify(Notification(NotificationLevel.SUCCESS, "Timer stopped"))
        return stopped

    def tick(self) -> None:
        """Advance the displayed elapsed time by one second."""

        if not self.is_running or self._state.active_session is None:
            return
        self._display_seconds += 1
        self._changed()

    def _should_auto_start(self) -> bool:
        ticket = self._ticket
        return (
            ticket is not None
            and not ticket.status.is_terminal
            and ticket.is_assigned_to(self.agent_id)
            and self._phase is TimerPhase.STOPPED_AUTO
            and self._state_loaded
        )

    async def _auto_start(self) -> None:
        if self._busy:
            return
        log_info("Auto-starting worklog", ticket_number=self.ticket_number, agent_id=self.agent_id)
        await self._call_start()

    async def _auto_stop(self, status: TicketStatus) -> None:
        if self._busy:
            return
        reason = AUTO_STOP_REASONS[status]
        log_info("Auto-stopping worklog", ticket_number=self.ticket_number, reason=reason)
        await self._call_stop(reason_id=None, stop_reason=reason, next_phase=TimerPhase.STOPPED_AUTO)

    async def _call_start(self) -> bool:
        self._busy = True
        try:
            try:
                await self._api.start_worklog(self.ticket_number)
            except TicketAPIError as exc:
                log_error("Failed to start worklog", ticket_number=self.ticket_number, error=str(exc))
                self._notify(Notification(NotificationLevel.ERROR, f"Failed to start timer: {exc}"))
                return False
            self._phase = TimerPhase.RUNNING
            await self.refresh()
            self._changed()
        finally:
            self._busy = False
        # The ticket may have been resolved or closed while the start was in flight.
        ticket = self._ticket
        if ticket is not None and ticket.status.is_terminal and self.is_running:
            await self._auto_stop(ticket.status)
        return True

    async def _call_stop(
        self,
        *,
        reason_id: str | None,
        stop_reason: str,
        next_phase: TimerPhase,
    ) -> bool:
        self._busy = True
        try:
            try:
                await self._api.stop_worklog(
                    self.ticket_number,
                    reason_id=reason_id,
                    stop_reason=stop_reason,
                )
            except TicketAPIError as exc:
                log_error("Failed to stop worklog", ticket_number=self.ticket_number, error=str(exc))
                self._notify(Notification(NotificationLevel.ERROR, f"Failed to stop timer: {exc}"))
                return False
            self._phase = next_phase
            await self.refresh()
            self._changed()
        finally:
            self._busy = False
        # A reopen or reassignment may have arrived while the stop was in flight.
        if self._should_auto_start():
            await self._auto_start()
        return True

    def _apply(self, state: TimerState) -> None:
        self._state = state
        self._state_loaded = True
        self._display_seconds = state.total_seconds
        if state.active_session is not None:
            self._phase = TimerPhase.RUNNING
        elif self._phase is TimerPhase.RUNNING:
            log_warning(
                "Worklog session ended outside this view",
                ticket_number=self.ticket_number,
            )
            self._phase = TimerPhase.STOPPED_AUTO
        self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self)
