"""Per-ticket controller owning the collaboration engines of the agent ticket view."""
from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import date
from enum import Enum
from typing import Any

from deskcollab.core.config import Settings, get_settings
from deskcollab.core.logging import log_error, log_info, log_warning
from deskcollab.schemas import channel as events
from deskcollab.schemas.messages import Attachment, Message
from deskcollab.schemas.presence import AgentIdentity
from deskcollab.schemas.tickets import TicketSummary
from deskcollab.schemas.worklogs import StopReason
from deskcollab.services.channel import ChannelClosedError, ChannelTimeoutError, TransportChannel
from deskcollab.services.message_sync import (
    MessageSendError,
    MessageSyncEngine,
    SendFailure,
    iter_with_dividers,
)
from deskcollab.services.notifications import Notification, NotificationLevel
from deskcollab.services.presence import PresenceTracker
from deskcollab.services.sla import SlaMonitor
from deskcollab.services.ticket_api import TicketAPIClient, TicketAPIError
from deskcollab.services.worklog import WorklogTimer


class SessionTopic(str, Enum):
    MESSAGES = "messages"
    VIEWERS = "viewers"
    TIMER = "timer"
    SLA = "sla"
    NOTIFICATION = "notification"
    CHANNEL = "channel"


Listener = Callable[[SessionTopic, Any], None]


class TicketSession:
    """Own the message list, viewer set, worklog timer and SLA risk of one ticket.

    Inbound channel events reach the engines through the channel's
    dispatcher; the UI drives the session with commands and observes it
    through ``subscribe``.
    """

    def __init__(
        self,
        ticket_id: str,
        agent: AgentIdentity,
        api: TicketAPIClient,
        channel: TransportChannel,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.ticket_id = str(ticket_id)
        self.agent = agent
        self.settings = settings or get_settings()
        self._api = api
        self._channel = channel
        self._sleep = sleep
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._warned_overdue: set[str] = set()
        self._opened = False
        self.ticket: TicketSummary | None = None
        self.notifications: deque[Notification] = deque(maxlen=50)

        self.messages = MessageSyncEngine(
            self.ticket_id,
            agent,
            channel,
            on_change=lambda snapshot: self._publish(SessionTopic.MESSAGES, snapshot),
            on_failure=self._on_send_failure,
            send_warning_seconds=self.settings.send_warning_seconds,
        )
        self.presence = PresenceTracker(
            self.ticket_id,
            agent.as_viewer(),
            channel,
            on_change=lambda snapshot: self._publish(SessionTopic.VIEWERS, snapshot),
            wait_attempts=self.settings.presence_wait_attempts,
            wait_interval=self.settings.presence_wait_interval,
        )
        self.timer = WorklogTimer(
            self.ticket_id,
            agent.user_id,
            api,
            notify=self.notify,
            on_change=lambda timer: self._publish(SessionTopic.TIMER, timer.state),
        )
        self.sla = SlaMonitor(
            self.ticket_id,
            api,
            on_change=lambda risk, timers: self._publish(SessionTopic.SLA, risk),
        )
        self._routes: tuple[tuple[str, Callable[[Mapping[str, Any]], Any]], ...] = (
            (events.RECEIVE_MESSAGE, self.messages.handle_received),
            (events.MESSAGE_SENT, self.messages.handle_confirmed),
            (events.MESSAGE_ERROR, self.messages.handle_failed),
            (events.VIEWER_JOINED, self.presence.handle_joined),
            (events.VIEWER_LEFT, self.presence.handle_left),
            (events.TICKET_UPDATED, self._on_ticket_event),
            (events.TICKET_STATUS_CHANGED, self._on_ticket_event),
        )

    @property
    def is_read_only(self) -> bool:
        """Tickets assigned to another agent accept no sends or timer commands."""

        ticket = self.ticket
        return bool(ticket and ticket.assignee_id and ticket.assignee_id != self.agent.user_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)
        self._publish(SessionTopic.NOTIFICATION, notification)

    async def open(self) -> None:
        if self._opened:
            return
        self._opened = True
        for event_type, handler in self._routes:
            self._channel.dispatcher.register(event_type, handler)
        self._channel.on_reconnect(self._on_reconnect)
        self._channel.on_degraded(self._on_degraded)

        if not self._channel.is_connected:
            try:
                await self._channel.connect()
            except Exception as exc:
                log_warning("Ticket channel unavailable", ticket_id=self.ticket_id, error=str(exc))
        self._publish(SessionTopic.CHANNEL, self._channel.state)

        await self.refresh()
        await self._join_conversation()
        await self.presence.announce_view()
        await self.sla.poll()

        self._spawn(self._run_ticker())
        self._spawn(self._run_sla_poller())
        log_info("Ticket session opened", ticket_id=self.ticket_id, agent_id=self.agent.user_id)

    async def close(self) -> None:
        if not self._opened:
            return
        self._opened = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self.presence.leave()
        for event_type, handler in self._routes:
            self._channel.dispatcher.unregister(event_type, handler)
        self._channel.remove_hook(self._on_reconnect)
        self._channel.remove_hook(self._on_degraded)
        log_info("Ticket session closed", ticket_id=self.ticket_id)

    async def refresh(self) -> TicketSummary | None:
        """Reload the ticket and its messages, then re-derive the timer."""

        try:
            detail = await self._api.get_ticket(self.ticket_id)
        except TicketAPIError as exc:
            log_error("Unable to load ticket", ticket_id=self.ticket_id, error=str(exc))
            return None
        self.ticket = detail.ticket
        self.timer.ticket_number = detail.ticket.ticket_number
        self.messages.replace_all(detail.messages)
        await self.timer.refresh()
        await self.timer.sync_ticket(detail.ticket)
        return detail.ticket

    async def send_message(
        self,
        content: str,
        attachments: Iterable[Attachment | Mapping[str, Any]] | None = None,
        reply_to_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Message | None:
        if self.is_read_only:
            self.notify(Notification(NotificationLevel.WARNING, "Ticket is assigned to another agent"))
            return None
        try:
            return await self.messages.send_message(content, attachments, reply_to_id, metadata)
        except MessageSendError as exc:
            self.notify(Notification(NotificationLevel.ERROR, str(exc)))
            return None

    async def start_timer(self) -> bool:
        if self.is_read_only:
            self.notify(Notification(NotificationLevel.WARNING, "Ticket is assigned to another agent"))
            return False
        return await self.timer.start()

    async def stop_timer(self, reason: StopReason | str) -> bool:
        return await self.timer.stop(reason)

    async def stop_reasons(self) -> list[StopReason]:
        try:
            return await self._api.get_stop_reasons(active_only=True)
        except TicketAPIError as exc:
            log_error("Unable to load stop reasons", error=str(exc))
            self.notify(Notification(NotificationLevel.ERROR, "Failed to load stop reasons"))
            return []

    def check_overdue_sends(self) -> None:
        for message in self.messages.overdue():
            if message.id in self._warned_overdue:
                continue
            self._warned_overdue.add(message.id)
            self.notify(
                Notification(NotificationLevel.WARNING, "Message is taking longer than usual to send")
            )
        self._warned_overdue.intersection_update(self.messages.pending_ids)

    def timeline(self) -> list[tuple[date | None, Message]]:
        """Messages paired with the day divider shown before them, in the display timezone."""

        return list(iter_with_dividers(self.messages.messages, self.settings.tzinfo))

    async def _join_conversation(self) -> None:
        if not self._channel.is_connected:
            return
        try:
            await self._channel.request(events.JOIN_CONVERSATION, {"conversationId": self.ticket_id})
        except (ChannelClosedError, ChannelTimeoutError) as exc:
            log_warning("Unable to join conversation", ticket_id=self.ticket_id, error=str(exc))

    async def _on_reconnect(self) -> None:
        self._publish(SessionTopic.CHANNEL, self._channel.state)
        await self._join_conversation()
        await self.presence.announce_view()
        await self.refresh()

    async def _on_degraded(self) -> None:
        self.presence.fall_back_to_local()
        self._publish(SessionTopic.CHANNEL, self._channel.state)

    def _on_ticket_event(self, data: Mapping[str, Any]) -> None:
        ticket_ref = str(data.get("ticketId") or data.get("conversationId") or "")
        if ticket_ref and ticket_ref != self.ticket_id:
            return
        self._spawn(self.refresh())

    def _on_send_failure(self, failure: SendFailure) -> None:
        self.notify(Notification(NotificationLevel.ERROR, failure.error))

    async def _run_ticker(self) -> None:
        while True:
            await self._sleep(self.settings.worklog_tick_interval)
            self.timer.tick()
            self.check_overdue_sends()

    async def _run_sla_poller(self) -> None:
        while True:
            await self._sleep(self.settings.sla_poll_interval)
            await self.sla.poll()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _publish(self, topic: SessionTopic, payload: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(topic, payload)
            except Exception as exc:
                log_error("Session listener failed", topic=topic.value, error=str(exc))


def create_ticket_session(
    ticket_id: str,
    agent: AgentIdentity,
    *,
    settings: Settings | None = None,
    channel: TransportChannel | None = None,
) -> TicketSession:
    """Wire a session to the configured support API and channel.

    Pass a shared ``channel`` to reuse one connection across ticket views.
    """

    resolved = settings or get_settings()
    return TicketSession(
        ticket_id,
        agent,
        TicketAPIClient(settings=resolved),
        channel or TransportChannel.from_settings(resolved),
        settings=resolved,
    )
