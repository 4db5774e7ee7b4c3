"""
Per-project fan-out of progress snapshots.

Each subscriber owns a bounded queue. Publishing never blocks: when a
subscriber's queue is full the oldest snapshot is dropped, so a slow
client only ever misses intermediate states, never the latest one.
"""

import asyncio
import uuid
from collections import defaultdict
from typing import Callable, Optional

import structlog

from estimateai.config import settings
from estimateai.observability.metrics import stream_snapshots_dropped_total, stream_subscribers
from estimateai.schemas.projects import ProjectSnapshot

logger = structlog.get_logger(__name__)


class Subscription:
    """One client's view of a project channel."""

    def __init__(self, project_id: uuid.UUID, maxsize: int, on_close: Callable[["Subscription"], None]):
        self.project_id = project_id
        self.queue: asyncio.Queue[ProjectSnapshot] = asyncio.Queue(maxsize=max(1, maxsize))
        self.dropped = 0
        self.closed = False
        self._on_close = on_close

    def offer(self, snapshot: ProjectSnapshot) -> None:
        if self.closed:
            return
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            stream_snapshots_dropped_total.inc()
        self.queue.put_nowait(snapshot)

    async def next(self, timeout: Optional[float] = None) -> Optional[ProjectSnapshot]:
        """Wait for the next snapshot; None on timeout."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._on_close(self)


class ProgressPublisher:
    def __init__(self, backlog: Optional[int] = None):
        self.backlog = backlog or settings.STREAM_BACKLOG
        self._channels: dict[uuid.UUID, set[Subscription]] = defaultdict(set)

    def subscribe(self, project_id: uuid.UUID) -> Subscription:
        sub = Subscription(project_id, self.backlog, self._remove)
        self._channels[project_id].add(sub)
        stream_subscribers.inc()
        logger.info("stream_subscribed", project_id=str(project_id), subscribers=len(self._channels[project_id]))
        return sub

    def _remove(self, sub: Subscription) -> None:
        channel = self._channels.get(sub.project_id)
        if channel is None or sub not in channel:
            return
        channel.discard(sub)
        if not channel:
            del self._channels[sub.project_id]
        stream_subscribers.dec()
        logger.info("stream_unsubscribed", project_id=str(sub.project_id), dropped=sub.dropped)

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()

    def subscriber_count(self, project_id: uuid.UUID) -> int:
        return len(self._channels.get(project_id, ()))

    def publish(self, project_id: uuid.UUID, snapshot: ProjectSnapshot) -> int:
        """Offer a snapshot to every subscriber of the project. Returns the fan-out size."""
        subscribers = list(self._channels.get(project_id, ()))
        for sub in subscribers:
            sub.offer(snapshot)
        return len(subscribers)


_publisher: Optional[ProgressPublisher] = None


def get_publisher() -> ProgressPublisher:
    """Process-wide publisher singleton."""
    global _publisher
    if _publisher is None:
        _publisher = ProgressPublisher()
    return _publisher
