"""
Broadcast Adapter Interface

Abstract base class for event fan-out implementations. The database is the
source of truth; adapters only deliver.
"""
import abc
import json
import hashlib
from typing import Dict, Any


class BroadcastAdapter(abc.ABC):
    """
    Abstract base class for broadcast adapters.

    Guarantees:
    - Deterministic message serialization (sort_keys=True)
    - Every message names its type, channel and session
    """

    REQUIRED_FIELDS = ("type", "channel", "session_id", "payload")

    @abc.abstractmethod
    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        """
        Publish message to a topic.

        Args:
            topic: Topic name (e.g., "channel:shroud")
            message: Event dict carrying REQUIRED_FIELDS
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(self, topic: str):
        """
        Subscribe to a topic and yield parsed messages until closed.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        """Close adapter connections."""
        raise NotImplementedError

    def _serialize_message(self, message: Dict[str, Any]) -> str:
        return json.dumps(message, sort_keys=True, separators=(',', ':'))

    def _compute_message_hash(self, message: Dict[str, Any]) -> str:
        """SHA256 of the deterministic serialization."""
        serialized = self._serialize_message(message)
        return hashlib.sha256(serialized.encode()).hexdigest()

    def validate_message(self, message: Dict[str, Any]) -> bool:
        """
        Raises:
            ValueError: If required fields are missing
        """
        missing = [f for f in self.REQUIRED_FIELDS if f not in message]
        if missing:
            raise ValueError(f"Message missing required fields: {missing}")
        return True
