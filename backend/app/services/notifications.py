"""
In-process notification channel for enhancement status changes.

Subscribers get an asyncio.Queue keyed by enhancement id; the job service
publishes every terminal transition. Publishing is safe from worker threads
(sync FastAPI endpoints run in a threadpool), delivery happens on the
subscriber's event loop.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class EnhancementEvent:
    enhancement_id: int
    status: str
    anchor_id: Optional[int] = None


class EnhancementEventBus:
    """Publish/subscribe keyed by enhancement id"""

    def __init__(self):
        self._subscribers: Dict[int, List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = defaultdict(list)

    def subscribe(self, enhancement_id: int) -> asyncio.Queue:
        """Must be called from a running event loop"""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[enhancement_id].append((loop, queue))
        return queue

    def unsubscribe(self, enhancement_id: int, queue: asyncio.Queue) -> None:
        entries = self._subscribers.get(enhancement_id)
        if not entries:
            return
        entries[:] = [(loop, q) for loop, q in entries if q is not queue]
        if not entries:
            del self._subscribers[enhancement_id]

    def publish(self, event: EnhancementEvent) -> int:
        """Deliver to every subscriber of the enhancement. Returns the subscriber count."""
        entries = list(self._subscribers.get(event.enhancement_id, []))
        for loop, queue in entries:
            if loop.is_closed():
                continue
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                queue.put_nowait(event)
            else:
                loop.call_soon_threadsafe(queue.put_nowait, event)
        if entries:
            logger.debug(f"[ENHANCEMENT] Published {event.status} for enhancement {event.enhancement_id} to {len(entries)} subscribers")
        return len(entries)

    def subscriber_count(self, enhancement_id: int) -> int:
        return len(self._subscribers.get(enhancement_id, []))


# Global bus shared by the API and background runs
event_bus = EnhancementEventBus()
