"""
In-Memory Broadcast Adapter

Single-worker fan-out using asyncio.Queue per subscriber.
"""
import asyncio
import json
import logging
from typing import Dict, Any, Set

from .broadcast_adapter import BroadcastAdapter

logger = logging.getLogger(__name__)

_CLOSED = None


class InMemoryAdapter(BroadcastAdapter):
    """
    In-memory broadcast adapter.

    Slow subscribers lose their oldest queued message rather than block
    the publisher.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._topics: Dict[str, Set[asyncio.Queue]] = {}

    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        self.validate_message(message)
        serialized = self._serialize_message(message)

        # Copy to avoid modification during iteration
        for queue in list(self._topics.get(topic, ())):
            try:
                queue.put_nowait(serialized)
            except asyncio.QueueFull:
                queue.get_nowait()
                queue.put_nowait(serialized)
                logger.warning(f"Subscriber queue full on {topic}, dropped oldest message")

    def register(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._topics.setdefault(topic, set()).add(queue)
        return queue

    def unregister(self, topic: str, queue: asyncio.Queue) -> None:
        subscribers = self._topics.get(topic)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._topics[topic]

    async def subscribe(self, topic: str):
        """Yield parsed messages for a topic until the adapter closes."""
        queue = self.register(topic)
        try:
            async for message in self.drain(queue):
                yield message
        finally:
            self.unregister(topic, queue)

    async def drain(self, queue: asyncio.Queue):
        while True:
            serialized = await queue.get()
            if serialized is _CLOSED:
                return
            try:
                yield json.loads(serialized)
            except json.JSONDecodeError:
                continue

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    async def close(self) -> None:
        for subscribers in self._topics.values():
            for queue in subscribers:
                try:
                    queue.put_nowait(_CLOSED)
                except asyncio.QueueFull:
                    queue.get_nowait()
                    queue.put_nowait(_CLOSED)
        self._topics.clear()
