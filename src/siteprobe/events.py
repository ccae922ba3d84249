"""
Best-effort status-change notifications for an external push layer.

Delivery never blocks the publisher: each subscriber owns a bounded queue and
updates that do not fit are dropped.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, List

from .models import StatusUpdate

logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
STATUS_DELETED = "deleted"


class EventBroadcaster:
    def __init__(self, subscriber_queue_size: int = 256):
        self.subscriber_queue_size = subscriber_queue_size
        self._subscribers: List[asyncio.Queue] = []
        self.dropped = 0

    def subscribe(self) -> "asyncio.Queue[StatusUpdate]":
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.subscriber_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, url_id: int, status: str, data: Any = None) -> None:
        update = StatusUpdate(url_id=url_id, status=status, data=data)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(update)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning("Subscriber queue full, dropping status update",
                               extra={"fields": {"url_id": url_id, "status": status}})
