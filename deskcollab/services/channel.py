"""Client side of the ticket collaboration websocket."""
from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any, Protocol

from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from deskcollab.core.config import Settings, get_settings
from deskcollab.core.logging import log_debug, log_error, log_info, log_warning
from deskcollab.schemas import channel as events
from deskcollab.schemas.channel import ChannelEnvelope
from deskcollab.services.dispatcher import EventDispatcher


class ChannelClosedError(RuntimeError):
    """Raised when the channel has no usable connection."""


class ChannelTimeoutError(RuntimeError):
    """Raised when the server does not acknowledge a request in time."""


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DEGRADED = "degraded"
    CLOSED = "closed"


class ChannelSocket(Protocol):
    async def send_json(self, payload: dict[str, Any]) -> None: ...

    async def receive_json(self) -> dict[str, Any]: ...

    async def close(self) -> None: ...


Connector = Callable[[], Awaitable[ChannelSocket]]
ChannelHook = Callable[[], Awaitable[None]]


class WebsocketsSocket:
    """Expose a ``websockets`` client connection through the JSON socket API."""

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    async def send_json(self, payload: dict[str, Any]) -> None:
        try:
            await self._connection.send(json.dumps(payload, default=str))
        except ConnectionClosed as exc:
            raise ChannelClosedError(str(exc)) from exc

    async def receive_json(self) -> dict[str, Any]:
        try:
            raw = await self._connection.recv()
        except ConnectionClosed as exc:
            raise ChannelClosedError(str(exc)) from exc
        return json.loads(raw)

    async def close(self) -> None:
        await self._connection.close()


def websocket_connector(
    url: str,
    *,
    token: str | None = None,
    open_timeout: float = 10.0,
) -> Connector:
    """Build a connector that dials ``url`` with the ``websockets`` client."""

    headers = {"Authorization": f"Bearer {token}"} if token else None

    async def _connect() -> ChannelSocket:
        connection = await connect(url, additional_headers=headers, open_timeout=open_timeout)
        return WebsocketsSocket(connection)

    return _connect


class TransportChannel:
    """Persistent event connection with bounded reconnection.

    The server announces a connection identifier in its first frame; the
    identifier changes on every reconnect. After a dropped connection the
    channel retries ``reconnect_attempts`` times, ``reconnect_delay`` seconds
    apart, runs the reconnect hooks on success and the degraded hooks when
    every attempt failed.
    """

    def __init__(
        self,
        connector: Connector,
        dispatcher: EventDispatcher | None = None,
        *,
        reconnect_delay: float = 1.0,
        reconnect_attempts: int = 5,
        ack_timeout: float = 20.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._connector = connector
        self.dispatcher = dispatcher or EventDispatcher()
        self._reconnect_delay = reconnect_delay
        self._reconnect_attempts = reconnect_attempts
        self._ack_timeout = ack_timeout
        self._sleep = sleep
        self._socket: ChannelSocket | None = None
        self._connection_id: str | None = None
        self._reader: asyncio.Task[None] | None = None
        self._pending_acks: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._reconnect_hooks: list[ChannelHook] = []
        self._degraded_hooks: list[ChannelHook] = []
        self._state = ChannelState.DISCONNECTED
        self._closing = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TransportChannel":
        resolved = settings or get_settings()
        return cls(
            websocket_connector(resolved.channel_url, token=resolved.api_token),
            reconnect_delay=resolved.reconnect_delay,
            reconnect_attempts=resolved.reconnect_attempts,
            ack_timeout=resolved.ack_timeout,
        )

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def connection_id(self) -> str | None:
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        return self._state is ChannelState.CONNECTED and self._socket is not None

    def on_reconnect(self, hook: ChannelHook) -> None:
        self._reconnect_hooks.append(hook)

    def on_degraded(self, hook: ChannelHook) -> None:
        self._degraded_hooks.append(hook)

    def remove_hook(self, hook: ChannelHook) -> None:
        for hooks in (self._reconnect_hooks, self._degraded_hooks):
            while hook in hooks:
                hooks.remove(hook)

    async def connect(self) -> None:
        if self.is_connected:
            return
        self._closing = False
        self._state = ChannelState.CONNECTING
        try:
            await self._open()
        except Exception:
            self._state = ChannelState.DISCONNECTED
            raise

    async def close(self) -> None:
        self._closing = True
        self._state = ChannelState.CLOSED
        reader = self._reader
        self._reader = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        socket = self._socket
        self._socket = None
        self._connection_id = None
        self._fail_pending(ChannelClosedError("Channel closed"))
        if socket is not None:
            try:
                await socket.close()
            except Exception as exc:  # pragma: no cover - network interaction
                log_debug("Ignoring error while closing channel socket", error=str(exc))

    async def emit(self, event_type: str, data: Mapping[str, Any] | None = None) -> None:
        envelope = ChannelEnvelope(type=event_type, data=dict(data or {}))
        await self._send(envelope)

    async def request(
        self,
        event_type: str,
        data: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Emit an event and wait for the matching ``ack`` frame."""

        ack_id = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending_acks[ack_id] = future
        envelope = ChannelEnvelope(type=event_type, data=dict(data or {}), ack_id=ack_id)
        try:
            await self._send(envelope)
            return await asyncio.wait_for(future, timeout or self._ack_timeout)
        except asyncio.TimeoutError as exc:
            raise ChannelTimeoutError(f"No acknowledgement for {event_type}") from exc
        finally:
            self._pending_acks.pop(ack_id, None)

    async def wait_until_connected(self, *, attempts: int, interval: float) -> bool:
        """Poll the connection state a bounded number of times."""

        for _ in range(attempts + 1):
            if self.is_connected:
                return True
            if self._state in (ChannelState.CLOSED, ChannelState.DEGRADED):
                return False
            await self._sleep(interval)
        return self.is_connected

    async def _send(self, envelope: ChannelEnvelope) -> None:
        socket = self._socket
        if socket is None or self._state is not ChannelState.CONNECTED:
            raise ChannelClosedError(f"Channel is {self._state.value}")
        try:
            await socket.send_json(envelope.to_wire())
        except ChannelClosedError:
            raise
        except Exception as exc:
            raise ChannelClosedError(str(exc)) from exc

    async def _open(self) -> None:
        socket = await self._connector()
        try:
            hello = ChannelEnvelope.model_validate(await socket.receive_json())
        except (ValidationError, ValueError) as exc:
            await socket.close()
            raise ChannelClosedError("Invalid handshake frame") from exc
        connection_id = str(hello.data.get("connectionId") or "").strip()
        if hello.type != events.CONNECTED or not connection_id:
            await socket.close()
            raise ChannelClosedError("Server did not announce a connection id")
        self._socket = socket
        self._connection_id = connection_id
        self._state = ChannelState.CONNECTED
        self._reader = asyncio.create_task(self._read_loop(socket))
        log_info("Ticket channel connected", connection_id=connection_id)

    async def _read_loop(self, socket: ChannelSocket) -> None:
        try:
            while True:
                frame = await socket.receive_json()
                await self._handle_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_warning(
                "Ticket channel connection lost",
                connection_id=self._connection_id,
                error=str(exc) or exc.__class__.__name__,
            )
        if self._closing or socket is not self._socket:
            return
        await self._reconnect()

    async def _handle_frame(self, frame: Any) -> None:
        try:
            envelope = ChannelEnvelope.model_validate(frame)
        except ValidationError as exc:
            log_warning("Discarding malformed channel frame", error=str(exc))
            return
        if envelope.type == events.ACK:
            future = self._pending_acks.get(envelope.ack_id or "")
            if future is not None and not future.done():
                future.set_result(envelope.data)
            return
        await self.dispatcher.dispatch(envelope.type, envelope.data)

    async def _reconnect(self) -> None:
        self._socket = None
        self._connection_id = None
        self._fail_pending(ChannelClosedError("Connection lost"))
        self._state = ChannelState.RECONNECTING

        for attempt in range(1, self._reconnect_attempts + 1):
            await self._sleep(self._reconnect_delay)
            if self._closing:
                return
            try:
                await self._open()
            except Exception as exc:
                log_warning(
                    "Ticket channel reconnect attempt failed",
                    attempt=attempt,
                    error=str(exc) or exc.__class__.__name__,
                )
                continue
            log_info("Ticket channel reconnected", attempt=attempt)
            await self._run_hooks(self._reconnect_hooks)
            return

        self._state = ChannelState.DEGRADED
        log_warning("Ticket channel degraded", attempts=self._reconnect_attempts)
        await self._run_hooks(self._degraded_hooks)

    async def _run_hooks(self, hooks: list[ChannelHook]) -> None:
        for hook in list(hooks):
            try:
                await hook()
            except Exception as exc:
                log_error(
                    "Channel hook failed",
                    hook=getattr(hook, "__qualname__", repr(hook)),
                    error=str(exc),
                )

    def _fail_pending(self, error: Exception) -> None:
        pending = list(self._pending_acks.values())
        self._pending_acks.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
