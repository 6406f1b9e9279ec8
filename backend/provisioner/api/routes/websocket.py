"""
═══════════════════════════════════════════════════════════════════════════
ENVIRONMENT WEBSOCKET - push channel for snapshots and install progress
═══════════════════════════════════════════════════════════════════════════

Message shapes (JSON text frames, backend -> frontend):
    {"type": "snapshot", "data": EnvironmentSnapshot}
    {"type": "progress", "data": ProgressEvent}

The current snapshot is sent right after connecting. Client frames are
only read to notice disconnects; "ping" is answered with {"type": "pong"}.
"""

import asyncio
import logging
import uuid
from typing import Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from provisioner.api.dependencies import get_provisioning_service
from provisioner.models.provisioning import EnvironmentSnapshot
from provisioner.services.provisioning_service import ProvisioningService

logger = logging.getLogger(__name__)
router = APIRouter()

# Bounded so a stalled client cannot grow memory without limit
QUEUE_SIZE = 256

active_connections: Dict[str, WebSocket] = {}


def to_message(notification) -> dict:
    kind = "snapshot" if isinstance(notification, EnvironmentSnapshot) else "progress"
    return {"type": kind, "data": notification.model_dump(mode="json")}


def offer(queue: asyncio.Queue, message: dict, ws_id: str) -> bool:
    """Queue a frame for the sender task; a full queue drops it instead of closing the socket."""
    try:
        queue.put_nowait(message)
        return True
    except asyncio.QueueFull:
        logger.warning(f"[WS {ws_id}] Client too slow, dropping {message['type']} frame")
        return False


@router.websocket("/ws/environment")
async def environment_websocket(
    websocket: WebSocket,
    service: ProvisioningService = Depends(get_provisioning_service)
):
    ws_id = str(uuid.uuid4())[:8]
    await websocket.accept()
    active_connections[ws_id] = websocket
    logger.info(f"[WS {ws_id}] Connected ({len(active_connections)} active)")

    queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)

    def enqueue(notification) -> None:
        offer(queue, to_message(notification), ws_id)

    # All frames go through the queue so only the sender task writes to the socket
    enqueue(service.current_snapshot())
    off = service.add_listener(enqueue)
    sender = asyncio.create_task(_send_loop(websocket, queue))

    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                offer(queue, {"type": "pong"}, ws_id)
    except WebSocketDisconnect:
        logger.info(f"[WS {ws_id}] Disconnected")
    finally:
        off()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        active_connections.pop(ws_id, None)


async def _send_loop(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)
