"""Track which agents are looking at a ticket."""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from deskcollab.core.logging import log_debug, log_info, log_warning
from deskcollab.schemas import channel as events
from deskcollab.schemas.presence import Viewer
from deskcollab.services.channel import ChannelClosedError, ChannelTimeoutError, TransportChannel


class PresenceTracker:
    """Viewer set of one ticket, keyed by ``user_id``.

    The local agent is always the first entry; neither a stale server list
    nor a ``viewer:left`` event can evict them.
    """

    def __init__(
        self,
        ticket_id: str,
        local_viewer: Viewer,
        channel: TransportChannel,
        *,
        on_change: Callable[[tuple[Viewer, ...]], None] | None = None,
        wait_attempts: int = 50,
        wait_interval: float = 0.1,
    ) -> None:
        self.ticket_id = str(ticket_id)
        self.local_viewer = local_viewer
        self._channel = channel
        self._on_change = on_change
        self._wait_attempts = wait_attempts
        self._wait_interval = wait_interval
        self._viewers: tuple[Viewer, ...] = (local_viewer,)

    @property
    def viewers(self) -> tuple[Viewer, ...]:
        return self._viewers

    @property
    def viewer_ids(self) -> frozenset[str]:
        return frozenset(viewer.user_id for viewer in self._viewers)

    async def announce_view(self) -> tuple[Viewer, ...]:
        """Register this agent as a viewer and adopt the server's viewer list."""

        connected = await self._channel.wait_until_connected(
            attempts=self._wait_attempts, interval=self._wait_interval
        )
        if not connected:
            log_info("Channel unavailable, showing local presence only", ticket_id=self.ticket_id)
            self.fall_back_to_local()
            return self._viewers

        payload = {
            "ticketId": self.ticket_id,
            "userId": self.local_viewer.user_id,
            "userName": self.local_viewer.user_name,
            "userAvatar": self.local_viewer.user_avatar,
        }
        try:
            ack = await self._channel.request(events.TICKET_VIEW, payload)
        except (ChannelClosedError, ChannelTimeoutError) as exc:
            log_warning("Ticket view announcement failed", ticket_id=self.ticket_id, error=str(exc))
            return self._viewers

        raw_viewers = ack.get("viewers") if ack.get("success") else None
        if not isinstance(raw_viewers, list):
            self.fall_back_to_local()
            return self._viewers
        self._replace(self._merge(raw_viewers))
        return self._viewers

    def handle_joined(self, data: Mapping[str, Any]) -> None:
        if not self._is_for_this_ticket(data):
            return
        try:
            viewer = Viewer.model_validate(data.get("viewer") or {})
        except ValidationError as exc:
            log_warning("Discarding malformed viewer event", error=str(exc))
            return
        if viewer.user_id in self.viewer_ids:
            return
        self._replace(self._viewers + (viewer,))

    def handle_left(self, data: Mapping[str, Any]) -> None:
        if not self._is_for_this_ticket(data):
            return
        user_id = str(data.get("userId") or "")
        if not user_id or user_id == self.local_viewer.user_id:
            return
        if user_id not in self.viewer_ids:
            return
        self._replace(tuple(viewer for viewer in self._viewers if viewer.user_id != user_id))

    def fall_back_to_local(self) -> None:
        if self._viewers != (self.local_viewer,):
            self._replace((self.local_viewer,))

    async def leave(self) -> None:
        if not self._channel.is_connected:
            return
        try:
            await self._channel.emit(events.TICKET_LEAVE, {"ticketId": self.ticket_id})
        except ChannelClosedError as exc:
            log_debug("Ticket leave not delivered", ticket_id=self.ticket_id, error=str(exc))

    def _merge(self, raw_viewers: Iterable[Any]) -> tuple[Viewer, ...]:
        merged: list[Viewer] = [self.local_viewer]
        seen = {self.local_viewer.user_id}
        for item in raw_viewers:
            try:
                viewer = item if isinstance(item, Viewer) else Viewer.model_validate(item)
            except ValidationError:
                continue
            if viewer.user_id in seen:
                continue
            seen.add(viewer.user_id)
            merged.append(viewer)
        return tuple(merged)

    def _is_for_this_ticket(self, data: Mapping[str, Any]) -> bool:
        return str(data.get("ticketId") or "") == self.ticket_id

    def _replace(self, viewers: tuple[Viewer, ...]) -> None:
        self._viewers = viewers
        if self._on_change is not None:
            self._on_change(viewers)
