from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from deskcollab.core.logging import log_warning
from deskcollab.services.realtime import collaboration_hub

router = APIRouter(tags=["Realtime"])


@router.websocket("/ws/tickets")
async def ticket_collaboration(websocket: WebSocket) -> None:
    """Maintain a websocket connection for ticket conversations and presence."""

    connection_id = await collaboration_hub.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                log_warning("Ignoring non-JSON frame", connection_id=connection_id)
                continue
            await collaboration_hub.handle(connection_id, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await collaboration_hub.disconnect(connection_id)


@router.get(
    "/api/realtime/status",
    summary="Realtime hub status",
    response_description="Counts of open websocket connections and active conversation rooms.",
)
async def realtime_status() -> dict[str, int]:
    return {
        "connections": collaboration_hub.connection_count,
        "rooms": collaboration_hub.room_count,
    }
