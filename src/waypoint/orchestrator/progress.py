"""In-process live-status channel for orchestration sessions."""

import asyncio
from collections import defaultdict

import structlog

from waypoint.core.models import ProgressEvent

logger = structlog.get_logger(__name__)

DEFAULT_QUEUE_SIZE = 100


class ProgressChannel:
    """Fans progress events out to per-session subscriber queues.

    Publishing never blocks: events for sessions without subscribers are
    discarded and a full subscriber queue drops the event. There is no
    redelivery.
    """

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE):
        """Initialize the channel.

        Args:
            max_queue_size: Capacity of each subscriber queue
        """
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers[session_id].append(queue)
        logger.debug("progress_subscribed", session_id=session_id)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(session_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[session_id]

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

    def publish(self, session_id: str, event: ProgressEvent) -> int:
        """Stamp the event with the session id and offer it to every subscriber.

        Returns:
            Number of subscribers that received the event
        """
        queues = self._subscribers.get(session_id)
        if not queues:
            return 0

        event = event.model_copy(update={"session_id": session_id})
        delivered = 0
        for queue in list(queues):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.debug("progress_event_dropped", session_id=session_id, stage=event.stage.value)
        return delivered

    def publisher(self, session_id: str):
        """Callback bound to one session, suitable for an engine's ``on_progress``."""

        def _publish(event: ProgressEvent) -> None:
            self.publish(session_id, event)

        return _publish
