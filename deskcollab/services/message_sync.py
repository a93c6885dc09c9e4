"""Reconcile optimistic messages with the server event stream for one conversation."""
from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from time import monotonic
from typing import Any

from pydantic import TypeAdapter, ValidationError

from deskcollab.core.logging import log_debug, log_info, log_warning
from deskcollab.schemas import channel as events
from deskcollab.schemas.messages import Attachment, Message, MessageStatus
from deskcollab.schemas.presence import AgentIdentity
from deskcollab.services.channel import ChannelClosedError, TransportChannel

TEMP_ID_PREFIX = "temp-"
EMPTY_CONTENT_PLACEHOLDER = "(No message text)"

_TIMESTAMP = TypeAdapter(datetime)


class MessageSendError(RuntimeError):
    """Raised when a message could not be handed to the channel."""

    def __init__(self, message: str, draft: "Draft") -> None:
        super().__init__(message)
        self.draft = draft


@dataclass(slots=True, frozen=True)
class Draft:
    """Composer input restored after a failed send so the agent can retry."""

    content: str
    attachments: tuple[Attachment, ...] = ()
    reply_to_id: str | None = None


@dataclass(slots=True, frozen=True)
class SendFailure:
    temp_id: str
    error: str
    draft: Draft


@dataclass(slots=True)
class _PendingSend:
    temp_id: str
    draft: Draft
    queued_at: float


def _new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


class MessageSyncEngine:
    """Own the ordered message list of one ticket conversation.

    The list is kept as an immutable tuple that is replaced on every change,
    so snapshots handed to subscribers never mutate underneath them. Display
    order is processing order; nothing is re-sorted by timestamp.
    """

    def __init__(
        self,
        conversation_id: str,
        sender: AgentIdentity,
        channel: TransportChannel,
        *,
        on_change: Callable[[tuple[Message, ...]], None] | None = None,
        on_failure: Callable[[SendFailure], None] | None = None,
        send_warning_seconds: float = 10.0,
        clock: Callable[[], float] = monotonic,
        id_factory: Callable[[], str] = _new_temp_id,
    ) -> None:
        self.conversation_id = str(conversation_id)
        self.sender = sender
        self._channel = channel
        self._on_change = on_change
        self._on_failure = on_failure
        self._send_warning_seconds = send_warning_seconds
        self._clock = clock
        self._id_factory = id_factory
        self._messages: tuple[Message, ...] = ()
        self._pending: dict[str, _PendingSend] = {}
        self._confirmed_ids: set[str] = set()
        self._own_connection_ids: set[str] = set()
        self.draft: Draft | None = None

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._messages

    @property
    def pending_ids(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def get(self, message_id: str) -> Message | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    async def send_message(
        self,
        content: str,
        attachments: Iterable[Attachment | Mapping[str, Any]] | None = None,
        reply_to_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Message:
        text = (content or "").strip()
        files = tuple(
            item if isinstance(item, Attachment) else Attachment.model_validate(item)
            for item in (attachments or ())
        )
        if not text and not files:
            raise ValueError("Message content or an attachment is required")

        temp_id = self._id_factory()
        draft = Draft(content=content, attachments=files, reply_to_id=reply_to_id)
        optimistic = Message(
            id=temp_id,
            conversation_id=self.conversation_id,
            content=text or EMPTY_CONTENT_PLACEHOLDER,
            sender_type=self.sender.sender_type,
            sender_id=self.sender.user_id,
            sender_name=self.sender.user_name,
            created_at=datetime.now(timezone.utc),
            metadata=dict(metadata) if metadata else None,
            reply_to=reply_to_id,
            attachments=files,
            status=MessageStatus.SENDING,
        )
        self._pending[temp_id] = _PendingSend(temp_id=temp_id, draft=draft, queued_at=self._clock())
        self.draft = None
        self._replace(self._messages + (optimistic,))

        connection_id = self._channel.connection_id
        payload: dict[str, Any] = {
            "conversationId": self.conversation_id,
            "content": optimistic.content,
            "senderId": self.sender.user_id,
            "senderType": self.sender.sender_type.value,
            "senderName": self.sender.user_name,
            "connectionId": connection_id,
            "clientMessageId": temp_id,
        }
        if files:
            payload["attachments"] = [
                item.model_dump(by_alias=True, exclude_none=True) for item in files
            ]
        if metadata:
            payload["metadata"] = dict(metadata)
        if reply_to_id:
            payload["replyToId"] = reply_to_id

        try:
            await self._channel.emit(events.SEND_MESSAGE, payload)
        except ChannelClosedError as exc:
            self._discard_pending(temp_id)
            log_warning("Message send failed", conversation_id=self.conversation_id, error=str(exc))
            raise MessageSendError("Failed to send message", draft) from exc
        if connection_id:
            self._own_connection_ids.add(connection_id)
        return optimistic

    def handle_confirmed(self, data: Mapping[str, Any]) -> None:
        """Apply a ``message_sent`` acknowledgement."""

        if data.get("success") is False:
            self.handle_failed(data)
            return
        server_id = str(data.get("id") or "").strip()
        if not server_id:
            log_warning("Ignoring confirmation without message id", conversation_id=self.conversation_id)
            return

        pending = None if server_id in self._confirmed_ids else self._match_pending(data)
        if pending is None:
            log_debug("Ignoring duplicate message confirmation", message_id=server_id)
            return
        del self._pending[pending.temp_id]
        self._confirmed_ids.add(server_id)

        if self.get(server_id) is not None:
            # The broadcast copy won the race; drop the optimistic twin.
            self._replace(tuple(m for m in self._messages if m.id != pending.temp_id))
            return

        update: dict[str, Any] = {"id": server_id, "status": MessageStatus.SENT}
        created_at = data.get("createdAt")
        if created_at:
            try:
                timestamp = _TIMESTAMP.validate_python(created_at)
                if timestamp.tzinfo is None:
                    timestamp = timestamp.replace(tzinfo=timezone.utc)
                update["created_at"] = timestamp
            except ValidationError:
                pass
        self._replace(
            tuple(
                message.model_copy(update=update) if message.id == pending.temp_id else message
                for message in self._messages
            )
        )
        log_info("Message confirmed", conversation_id=self.conversation_id, message_id=server_id)

    def handle_failed(self, data: Mapping[str, Any]) -> None:
        """Apply a ``message_error`` event."""

        pending = self._match_pending(data)
        if pending is None:
            log_debug("Ignoring message error without a pending send", conversation_id=self.conversation_id)
            return
        error = str(data.get("message") or "Failed to send message")
        self._discard_pending(pending.temp_id)
        log_warning("Message rejected by server", conversation_id=self.conversation_id, error=error)
        if self._on_failure is not None:
            self._on_failure(SendFailure(temp_id=pending.temp_id, error=error, draft=pending.draft))

    def handle_received(self, data: Mapping[str, Any]) -> bool:
        """Merge a ``receive_message`` broadcast; return whether it was appended."""

        try:
            message = Message.model_validate(data)
        except ValidationError as exc:
            log_warning("Discarding malformed message event", error=str(exc))
            return False
        if message.conversation_id != self.conversation_id:
            return False
        if message.connection_id and message.connection_id in self._own_echo_ids():
            log_debug("Dropping echo of own message", message_id=message.id)
            return False
        if self.get(message.id) is not None:
            log_debug("Dropping duplicate message", message_id=message.id)
            return False
        if message.status is not MessageStatus.SENT:
            message = message.model_copy(update={"status": MessageStatus.SENT})
        self._replace(self._messages + (message,))
        return True

    def replace_all(self, messages: Iterable[Message]) -> None:
        """Adopt a full server snapshot, keeping unconfirmed sends at the tail."""

        merged: list[Message] = []
        seen: set[str] = set()
        for message in messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            merged.append(message)
        for message in self._messages:
            if message.id in self._pending:
                merged.append(message)
        self._replace(tuple(merged))

    def overdue(self, now: float | None = None) -> tuple[Message, ...]:
        """Pending sends waiting longer than the soft confirmation timeout."""

        current = self._clock() if now is None else now
        late = {
            temp_id
            for temp_id, pending in self._pending.items()
            if current - pending.queued_at >= self._send_warning_seconds
        }
        return tuple(message for message in self._messages if message.id in late)

    def _own_echo_ids(self) -> set[str]:
        ids = set(self._own_connection_ids)
        if self._channel.connection_id:
            ids.add(self._channel.connection_id)
        return ids

    def _match_pending(self, data: Mapping[str, Any]) -> _PendingSend | None:
        client_id = str(data.get("clientMessageId") or "").strip()
        if client_id:
            return self._pending.get(client_id)
        if not self._pending:
            return None
        return next(iter(self._pending.values()))

    def _discard_pending(self, temp_id: str) -> None:
        pending = self._pending.pop(temp_id, None)
        if pending is not None:
            self.draft = pending.draft
        self._replace(tuple(m for m in self._messages if m.id != temp_id))

    def _replace(self, messages: tuple[Message, ...]) -> None:
        self._messages = messages
        if self._on_change is not None:
            self._on_change(messages)


def message_day(message: Message, tz: tzinfo = timezone.utc) -> date:
    return message.created_at.astimezone(tz).date()


def needs_date_divider(previous: Message | None, current: Message, tz: tzinfo = timezone.utc) -> bool:
    if previous is None:
        return True
    return message_day(previous, tz) != message_day(current, tz)


def iter_with_dividers(
    messages: Iterable[Message], tz: tzinfo = timezone.utc
) -> Iterator[tuple[date | None, Message]]:
    """Yield ``(divider, message)`` pairs; ``divider`` is set when the day changes."""

    previous: Message | None = None
    for message in messages:
        divider = message_day(message, tz) if needs_date_divider(previous, message, tz) else None
        yield divider, message
        previous = message
