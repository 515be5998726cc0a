"""
WebSocket Server

Read-only event stream for viewers of one channel.

URL: /ws/channels/{name}

Allowed client messages:
- "PING" or {"type": "PING"}

Server messages:
- channel events as published (see realtime.events)
- {"type": "PONG", "timestamp": "..."}
- {"type": "ERROR", "message": "..."}
"""
import asyncio
import json
import logging
from datetime import datetime

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from prediction_system.realtime.broadcast_adapter import BroadcastAdapter
from prediction_system.realtime.events import get_notifier, topic_for
from prediction_system.services.channel_registry import ChannelNameError, normalize_channel_name

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

ALLOWED_CLIENT_MESSAGES = {"PING"}


def _message_type(data: str) -> str:
    if data.strip().upper() == "PING":
        return "PING"
    try:
        message = json.loads(data)
    except json.JSONDecodeError:
        return ""
    if not isinstance(message, dict):
        return ""
    return str(message.get("type", "")).upper()


async def _forward_events(websocket: WebSocket, adapter: BroadcastAdapter, topic: str) -> None:
    async for event in adapter.subscribe(topic):
        await websocket.send_text(json.dumps(event, sort_keys=True))


@router.websocket("/ws/channels/{name}")
async def channel_events(websocket: WebSocket, name: str):
    try:
        channel = normalize_channel_name(name)
    except ChannelNameError:
        await websocket.close(code=1008, reason="Invalid channel name")
        return

    await websocket.accept()
    topic = topic_for(channel)
    forwarder = asyncio.create_task(_forward_events(websocket, get_notifier().adapter, topic))
    logger.info(f"Viewer subscribed to {topic}")

    try:
        while True:
            data = await websocket.receive_text()
            msg_type = _message_type(data)

            if msg_type not in ALLOWED_CLIENT_MESSAGES:
                await websocket.send_text(json.dumps({
                    "type": "ERROR",
                    "message": f"Invalid message type. Allowed: {sorted(ALLOWED_CLIENT_MESSAGES)}"
                }, sort_keys=True))
                continue

            await websocket.send_text(json.dumps({
                "type": "PONG",
                "timestamp": datetime.utcnow().isoformat()
            }, sort_keys=True))

    except WebSocketDisconnect:
        logger.info(f"Viewer left {topic}")
    finally:
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
