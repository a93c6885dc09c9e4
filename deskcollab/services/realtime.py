"""Websocket hub relaying ticket conversation and presence events between agents."""
from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket
from pydantic import ValidationError

from deskcollab.core.logging import log_error, log_info, log_warning
from deskcollab.schemas import channel as events
from deskcollab.schemas.channel import ChannelEnvelope


@dataclass(slots=True)
class BroadcastResult:
    """Summary of a broadcast operation."""

    attempted: int
    delivered: int
    dropped: int


@dataclass(slots=True)
class _Connection:
    id: str
    websocket: WebSocket
    rooms: set[str] = field(default_factory=set)
    # ticket id -> viewer payload registered through this connection
    viewing: dict[str, dict[str, Any]] = field(default_factory=dict)


MessageStore = Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]


class InMemoryMessageStore:
    """Assign ids to relayed messages and keep them per conversation."""

    def __init__(self) -> None:
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def __call__(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        conversation_id = str(payload["conversationId"])
        record: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "conversationId": conversation_id,
            "content": str(payload.get("content") or ""),
            "senderType": payload.get("senderType") or "agent",
            "senderId": payload.get("senderId"),
            "senderName": payload.get("senderName"),
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        for key in ("metadata", "attachments"):
            if payload.get(key):
                record[key] = payload[key]
        if payload.get("replyToId"):
            record["replyTo"] = await self._reply_reference(conversation_id, str(payload["replyToId"]))
        async with self._lock:
            self._messages.setdefault(conversation_id, []).append(record)
        return record

    async def _reply_reference(self, conversation_id: str, message_id: str) -> dict[str, Any]:
        async with self._lock:
            for record in self._messages.get(conversation_id, ()):
                if record["id"] == message_id:
                    return {
                        "id": record["id"],
                        "content": record["content"],
                        "senderType": record["senderType"],
                        "senderName": record.get("senderName"),
                    }
        return {"id": message_id}

    def list_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        return list(self._messages.get(str(conversation_id), ()))


def _room(conversation_id: str) -> str:
    return f"ticket_{conversation_id}"


class CollaborationHub:
    """Track websocket connections, conversation rooms and ticket viewers."""

    def __init__(self, store: MessageStore | None = None) -> None:
        self._connections: dict[str, _Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()
        self._store: MessageStore = store or InMemoryMessageStore()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a websocket, track it and announce its connection id."""

        await websocket.accept()
        connection_id = uuid.uuid4().hex
        async with self._lock:
            self._connections[connection_id] = _Connection(id=connection_id, websocket=websocket)
        await websocket.send_json(
            {"type": events.CONNECTED, "data": {"connectionId": connection_id}}
        )
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Stop tracking a connection and announce the viewers it carried."""

        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return
            for room in connection.rooms:
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(connection_id)
                if not members:
                    self._rooms.pop(room, None)
            viewing = dict(connection.viewing)

        for ticket_id, viewer in viewing.items():
            await self._announce_left(ticket_id, str(viewer["userId"]))

    def viewers(self, ticket_id: str) -> list[dict[str, Any]]:
        members = self._rooms.get(_room(ticket_id), set())
        seen: set[str] = set()
        result: list[dict[str, Any]] = []
        for connection_id in members:
            connection = self._connections.get(connection_id)
            viewer = connection.viewing.get(ticket_id) if connection else None
            if viewer is None or viewer["userId"] in seen:
                continue
            seen.add(viewer["userId"])
            result.append(dict(viewer))
        return result

    async def handle(self, connection_id: str, frame: Any) -> None:
        """Process one inbound frame from ``connection_id``."""

        try:
            envelope = ChannelEnvelope.model_validate(frame)
        except ValidationError as exc:
            log_warning("Discarding malformed frame", connection_id=connection_id, error=str(exc))
            return

        if envelope.type == events.SEND_MESSAGE:
            await self._relay_message(connection_id, envelope.data)
            response: dict[str, Any] | None = None
        elif envelope.type == events.JOIN_CONVERSATION:
            response = await self._join(connection_id, envelope.data)
        elif envelope.type == events.TICKET_VIEW:
            response = await self._view(connection_id, envelope.data)
        elif envelope.type == events.TICKET_LEAVE:
            response = await self._leave(connection_id, envelope.data)
        else:
            log_warning("Unknown channel event", connection_id=connection_id, event=envelope.type)
            response = {"success": False, "message": f"Unknown event {envelope.type}"}

        if envelope.ack_id and response is not None:
            await self._send(
                connection_id,
                {"type": events.ACK, "ackId": envelope.ack_id, "data": response},
            )

    async def broadcast(
        self,
        conversation_id: str,
        event_type: str,
        data: Mapping[str, Any],
        *,
        exclude: Iterable[str] = (),
    ) -> BroadcastResult:
        """Send an event to every connection in a conversation room."""

        excluded = set(exclude)
        async with self._lock:
            # Snapshot the room so the lock is not held while sending.
            targets = [
                self._connections[connection_id]
                for connection_id in self._rooms.get(_room(conversation_id), ())
                if connection_id not in excluded and connection_id in self._connections
            ]

        if not targets:
            return BroadcastResult(attempted=0, delivered=0, dropped=0)

        payload = {"type": event_type, "data": dict(data)}
        delivered = 0
        dropped = 0
        for connection in targets:
            try:
                await connection.websocket.send_json(payload)
                delivered += 1
            except Exception:
                dropped += 1
                await self.disconnect(connection.id)

        return BroadcastResult(attempted=len(targets), delivered=delivered, dropped=dropped)

    async def _relay_message(self, connection_id: str, data: Mapping[str, Any]) -> None:
        client_message_id = data.get("clientMessageId")
        conversation_id = str(data.get("conversationId") or "").strip()
        content = str(data.get("content") or "").strip()
        if not conversation_id or (not content and not data.get("attachments")):
            await self._send(
                connection_id,
                {
                    "type": events.MESSAGE_ERROR,
                    "data": {
                        "message": "conversationId and content are required",
                        "clientMessageId": client_message_id,
                    },
                },
            )
            return

        await self._add_to_room(connection_id, conversation_id)
        try:
            record = await self._store(data)
        except Exception as exc:
            log_error("Failed to store message", conversation_id=conversation_id, error=str(exc))
            await self._send(
                connection_id,
                {
                    "type": events.MESSAGE_ERROR,
                    "data": {"message": "Failed to send message", "clientMessageId": client_message_id},
                },
            )
            return

        await self.broadcast(
            conversation_id,
            events.RECEIVE_MESSAGE,
            {**record, "connectionId": connection_id},
            exclude=(connection_id,),
        )
        await self._send(
            connection_id,
            {
                "type": events.MESSAGE_SENT,
                "data": {
                    "success": True,
                    "id": record["id"],
                    "conversationId": conversation_id,
                    "clientMessageId": client_message_id,
                    "createdAt": record.get("createdAt"),
                },
            },
        )
        log_info("Message relayed", conversation_id=conversation_id, message_id=record["id"])

    async def _join(self, connection_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        conversation_id = str(data.get("conversationId") or "").strip()
        if not conversation_id:
            return {"success": False, "message": "conversationId is required"}
        await self._add_to_room(connection_id, conversation_id)
        return {"success": True, "conversationId": conversation_id}

    async def _view(self, connection_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        ticket_id = str(data.get("ticketId") or "").strip()
        user_id = str(data.get("userId") or "").strip()
        if not ticket_id or not user_id:
            return {"success": False, "message": "ticketId and userId are required"}

        viewer = {
            "userId": user_id,
            "userName": data.get("userName") or "",
            "userAvatar": data.get("userAvatar"),
        }
        already_viewing = any(existing["userId"] == user_id for existing in self.viewers(ticket_id))
        await self._add_to_room(connection_id, ticket_id)
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.viewing[ticket_id] = viewer
        if not already_viewing:
            await self.broadcast(
                ticket_id,
                events.VIEWER_JOINED,
                {"ticketId": ticket_id, "viewer": viewer},
                exclude=(connection_id,),
            )
        return {"success": True, "viewers": self.viewers(ticket_id)}

    async def _leave(self, connection_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        ticket_id = str(data.get("ticketId") or "").strip()
        async with self._lock:
            connection = self._connections.get(connection_id)
            viewer = connection.viewing.pop(ticket_id, None) if connection else None
        if viewer is not None:
            await self._announce_left(ticket_id, str(viewer["userId"]))
        return {"success": True}

    async def _announce_left(self, ticket_id: str, user_id: str) -> None:
        # Another tab of the same agent keeps them listed.
        if any(viewer["userId"] == user_id for viewer in self.viewers(ticket_id)):
            return
        await self.broadcast(
            ticket_id,
            events.VIEWER_LEFT,
            {"ticketId": ticket_id, "userId": user_id},
        )

    async def _add_to_room(self, connection_id: str, conversation_id: str) -> None:
        room = _room(conversation_id)
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return
            connection.rooms.add(room)
            self._rooms.setdefault(room, set()).add(connection_id)

    async def _send(self, connection_id: str, payload: dict[str, Any]) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        try:
            await connection.websocket.send_json(payload)
        except Exception:
            await self.disconnect(connection_id)


collaboration_hub = CollaborationHub()
