"""Per-wallet intent status stream."""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ws"])


@router.websocket("/ws/{key}")
async def intent_stream(websocket: WebSocket, key: str) -> None:
    """Stream status events for the intents of a wallet address or session id."""
    connections = websocket.app.state.connections
    await websocket.accept()
    queue = connections.connect(key)

    async def forward() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event)

    sender = asyncio.create_task(forward())
    try:
        # Inbound frames are only keep-alives; this returns on disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("WebSocket for %s closed", key)
    finally:
        sender.cancel()
        connections.disconnect(key, queue)
