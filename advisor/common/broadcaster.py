"""
Broadcaster

In-process publish/subscribe channel used to tell UI layers about actions
the agent took on its own. Each subscriber owns an asyncio.Queue.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List

logger = logging.getLogger("advisor.common.broadcaster")


def agent_topic(user_id: str) -> str:
    """Topic carrying proactive notifications for one user"""
    return f"agent:{user_id}"


class Broadcaster:
    """Topic-based fan-out to per-subscriber queues."""

    def __init__(self, maxsize: int = 100):
        self._maxsize = maxsize
        self._topics: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, topic: str) -> asyncio.Queue:
        """Subscribe to a topic and return the queue messages arrive on."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._topics[topic].append(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        subscribers = self._topics.get(topic, [])
        if queue in subscribers:
            subscribers.remove(queue)
        if not subscribers:
            self._topics.pop(topic, None)

    def publish(self, topic: str, message: Dict[str, Any]) -> int:
        """Publish a message. Returns the number of subscribers reached."""
        delivered = 0
        for queue in list(self._topics.get(topic, [])):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                # Drop subscribers that stopped reading
                logger.warning("Dropping slow subscriber on %s", topic)
                self._topics[topic].remove(queue)
        return delivered

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, []))
