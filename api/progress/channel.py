"""
Session-scoped progress channel.

A ``ProgressHub`` holds one ``SessionChannel`` per session that has either an
active pipeline run or at least one subscriber. Channels are opened
explicitly when a run starts (or when the first observer subscribes) and torn
down when the run reaches a terminal state, so the registry never grows with
finished sessions.

Delivery is best-effort and never blocks the pipeline: events go to bounded
per-subscriber queues with ``put_nowait``; with no subscribers they are
dropped, and a subscriber whose queue is full misses that event.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Dict, Optional, Set

import structlog

from api.schemas.pipeline_state import CancellationToken
from api.schemas.progress import ProgressEvent

logger = structlog.get_logger(__name__)

# Queue item that tells a subscriber the channel is closed
CLOSED = None


class SessionChannel:
    """Fan-out point for one session's progress events."""

    def __init__(self, session_id: str, queue_size: int = 100):
        self.session_id = session_id
        self.queue_size = queue_size
        self.subscribers: Set[asyncio.Queue] = set()
        self.token: Optional[CancellationToken] = None
        self.last_percent = 0
        self.last_event: Optional[ProgressEvent] = None
        self.dropped = 0

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self.subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self.subscribers.discard(queue)

    def _normalize(self, event: ProgressEvent) -> ProgressEvent:
        """Keep percent non-decreasing; error and cancel force it to zero."""
        if event.status.resets_percent:
            percent = 0
        else:
            percent = max(event.percent, self.last_percent)
        self.last_percent = percent
        if percent != event.percent:
            event = event.model_copy(update={"percent": percent})
        return event

    def publish(self, event: ProgressEvent) -> int:
        """Deliver to every subscriber. Returns how many received it."""
        event = self._normalize(event)
        self.last_event = event

        delivered = 0
        for queue in list(self.subscribers):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning("Progress subscriber queue full, event dropped", session_id=self.session_id, stage=event.stage)
        return delivered

    def close(self) -> None:
        for queue in list(self.subscribers):
            try:
                queue.put_nowait(CLOSED)
            except asyncio.QueueFull:
                # Make room so the subscriber still learns the channel closed
                queue.get_nowait()
                queue.put_nowait(CLOSED)
        self.subscribers.clear()


class ProgressHub:
    """Registry of session channels."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._channels: Dict[str, SessionChannel] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    def channel(self, session_id: str) -> Optional[SessionChannel]:
        return self._channels.get(session_id)

    def _get_or_create(self, session_id: str) -> SessionChannel:
        channel = self._channels.get(session_id)
        if channel is None:
            channel = SessionChannel(session_id, queue_size=self.queue_size)
            self._channels[session_id] = channel
        return channel

    def open(self, session_id: str, token: CancellationToken) -> SessionChannel:
        """Bind a run's cancellation token to the session's channel."""
        channel = self._get_or_create(session_id)
        channel.token = token
        channel.last_percent = 0
        logger.debug("Progress channel opened", session_id=session_id)
        return channel

    def subscribe(self, session_id: str) -> asyncio.Queue:
        return self._get_or_create(session_id).subscribe()

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        channel = self._channels.get(session_id)
        if channel is None:
            return
        channel.unsubscribe(queue)
        if not channel.subscribers and channel.token is None:
            self._channels.pop(session_id, None)

    def publish(self, event: ProgressEvent) -> int:
        channel = self._channels.get(event.session_id)
        if channel is None:
            return 0
        return channel.publish(event)

    def request_cancel(self, session_id: str) -> bool:
        """Set the cancellation flag of the session's active run.

        Returns False when the session has no active run.
        """
        channel = self._channels.get(session_id)
        if channel is None or channel.token is None:
            return False
        channel.token.cancel()
        logger.info("Cancellation requested", session_id=session_id)
        return True

    def teardown(self, session_id: str) -> None:
        """Close every subscriber and forget the session."""
        channel = self._channels.pop(session_id, None)
        if channel is None:
            return
        channel.close()
        logger.debug("Progress channel torn down", session_id=session_id, dropped_events=channel.dropped)


async def iter_events(queue: asyncio.Queue) -> AsyncIterator[ProgressEvent]:
    """Yield events from a subscription until the channel closes."""
    while True:
        event = await queue.get()
        if event is CLOSED:
            return
        yield event
