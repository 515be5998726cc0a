"""
Prediction Events

Structured events handed to the broadcast adapter after a transition has
committed. Delivery is best-effort: a failed publish is logged and never
undoes or fails the transition that caused it.
"""
import hashlib
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from prediction_system.realtime.broadcast_adapter import BroadcastAdapter
from prediction_system.realtime.in_memory_adapter import InMemoryAdapter

logger = logging.getLogger(__name__)


class PredictionEventType(str, Enum):
    OPENED = "prediction-opened"
    CANCELLED = "prediction-cancelled"
    ADDED = "prediction-added"
    EDITED = "prediction-edited"
    CLOSED = "prediction-closed"
    RESOLVED = "prediction-resolved"


def topic_for(channel_name: str) -> str:
    return f"channel:{channel_name}"


def build_event(
    event_type: PredictionEventType,
    channel_name: str,
    session_id: Optional[int],
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Assemble an event. The hash covers everything except the emission time,
    so the same transition always hashes the same.
    """
    event = {
        "type": event_type.value,
        "channel": channel_name,
        "session_id": session_id,
        "payload": payload,
    }
    serialized = json.dumps(event, sort_keys=True, separators=(',', ':'), default=str)
    event["event_hash"] = hashlib.sha256(serialized.encode()).hexdigest()
    event["emitted_at"] = datetime.utcnow().isoformat()
    return event


class EventNotifier:
    """Publishes channel events through a BroadcastAdapter."""

    def __init__(self, adapter: Optional[BroadcastAdapter] = None):
        self.adapter = adapter or InMemoryAdapter()

    async def notify(self, event: Dict[str, Any]) -> bool:
        try:
            await self.adapter.publish(topic_for(event["channel"]), event)
        except Exception as e:
            logger.error(
                f"Failed to publish {event.get('type')} for channel {event.get('channel')}: {e}"
            )
            return False
        logger.debug(f"Published {event['type']} to {topic_for(event['channel'])}")
        return True

    async def notify_all(self, events: List[Dict[str, Any]]) -> int:
        """Publish in order; returns how many were delivered."""
        delivered = 0
        for event in events:
            if await self.notify(event):
                delivered += 1
        return delivered


_notifier: Optional[EventNotifier] = None


def get_notifier() -> EventNotifier:
    global _notifier
    if _notifier is None:
        _notifier = EventNotifier()
    return _notifier


def set_notifier(notifier: Optional[EventNotifier]) -> None:
    global _notifier
    _notifier = notifier
