"""Fan-out of canonical events to every live subscriber of a run.

Delivery is best-effort and never blocks the publisher: frames are handed to
each subscriber's sink synchronously, and a sink that raises is dropped. There
is no replay, so a subscriber only sees events broadcast after it attached.
"""

import asyncio
import uuid
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol

from pydantic import BaseModel

from tether.schemas.events import HEARTBEAT_FRAME, ClosedEvent, ConnectedEvent, encode_sse
from tether.utils.telemetry import (
    get_logger,
    record_dead_subscriber,
    record_event_broadcast,
    update_active_subscribers,
)

DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_MAX_PENDING_FRAMES = 1000


class SinkClosedError(Exception):
    """Raised when writing to a sink that has been closed."""


class SinkOverflowError(Exception):
    """Raised when a sink's reader has fallen too far behind."""


class StreamSink(Protocol):
    """Output end of one subscriber connection."""

    def send(self, frame: bytes) -> None:
        """Queue one already-framed chunk; raise if the sink is dead."""
        ...

    def close(self) -> None:
        """Signal that no more frames will follow."""
        ...


class QueueSink:
    """Sink buffering frames for an async reader such as an HTTP response.

    Frames are consumed by iterating ``frames()``, which ends once the sink is
    closed and drained.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING_FRAMES) -> None:
        self.max_pending = max_pending
        self._frames: deque[bytes] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._frames)

    def send(self, frame: bytes) -> None:
        if self._closed:
            raise SinkClosedError("sink is closed")
        if len(self._frames) >= self.max_pending:
            raise SinkOverflowError(
                f"subscriber has {len(self._frames)} undelivered frames"
            )
        self._frames.append(frame)
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    async def frames(self) -> AsyncIterator[bytes]:
        while True:
            while self._frames:
                yield self._frames.popleft()
            if self._closed:
                return
            self._ready.clear()
            await self._ready.wait()


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``attach``; pass it back to ``detach``."""

    streaming_id: str
    sink: StreamSink
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class EventBroadcaster:
    """Per-run subscriber sets plus a shared keepalive heartbeat."""

    def __init__(
        self,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        max_pending_frames: int = DEFAULT_MAX_PENDING_FRAMES,
    ) -> None:
        """Initialize broadcaster.

        Args:
            heartbeat_interval: Seconds between keepalive comments
            max_pending_frames: Buffer limit for sinks created by ``attach``
        """
        self.heartbeat_interval = heartbeat_interval
        self.max_pending_frames = max_pending_frames
        self._subscribers: dict[str, dict[str, Subscription]] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None
        self.logger = get_logger("tether.broadcaster")

    def attach(self, streaming_id: str, sink: StreamSink | None = None) -> Subscription:
        """Register a subscriber and acknowledge the connection.

        Args:
            streaming_id: Run to subscribe to
            sink: Output sink; a ``QueueSink`` is created when omitted

        Returns:
            Subscription handle
        """
        if sink is None:
            sink = QueueSink(self.max_pending_frames)
        subscription = Subscription(streaming_id=streaming_id, sink=sink)
        self._subscribers.setdefault(streaming_id, {})[subscription.id] = subscription

        self.logger.debug(
            "Subscriber attached",
            streaming_id=streaming_id,
            subscription_id=subscription.id,
            client_count=self.get_client_count(streaming_id),
        )
        update_active_subscribers(self.total_client_count)

        self._deliver(subscription, encode_sse(ConnectedEvent(streaming_id=streaming_id)))
        self._start_heartbeat()
        return subscription

    def detach(self, subscription: Subscription) -> None:
        """Remove one subscriber; a no-op if it is already gone."""
        subscriptions = self._subscribers.get(subscription.streaming_id)
        if subscriptions is None or subscriptions.pop(subscription.id, None) is None:
            return
        if not subscriptions:
            del self._subscribers[subscription.streaming_id]

        self.logger.debug(
            "Subscriber detached",
            streaming_id=subscription.streaming_id,
            subscription_id=subscription.id,
        )
        update_active_subscribers(self.total_client_count)
        if self.total_client_count == 0:
            self._stop_heartbeat()

    def broadcast(self, streaming_id: str, event: BaseModel) -> None:
        """Deliver an event to every current subscriber of a run.

        Subscribers whose sink raises are removed. Broadcasting to a run with
        no subscribers does nothing.
        """
        event_type = getattr(event, "type", type(event).__name__)
        record_event_broadcast(event_type)

        subscriptions = self._subscribers.get(streaming_id)
        if not subscriptions:
            self.logger.debug(
                "No subscribers for event", streaming_id=streaming_id, event_type=event_type
            )
            return

        frame = encode_sse(event)
        self.logger.debug(
            "Broadcasting event",
            streaming_id=streaming_id,
            event_type=event_type,
            client_count=len(subscriptions),
        )
        for subscription in list(subscriptions.values()):
            self._deliver(subscription, frame)

    def close_session(self, streaming_id: str) -> None:
        """Send ``closed`` to every subscriber of a run, then close their sinks."""
        subscriptions = self._subscribers.pop(streaming_id, None)
        if subscriptions is None:
            return

        frame = encode_sse(ClosedEvent(streaming_id=streaming_id))
        for subscription in subscriptions.values():
            try:
                subscription.sink.send(frame)
            except Exception as e:
                self.logger.debug(
                    "Subscriber already gone at close",
                    streaming_id=streaming_id,
                    subscription_id=subscription.id,
                    error=str(e),
                )
            self._close_sink(subscription)

        self.logger.info(
            "Closed stream session",
            streaming_id=streaming_id,
            client_count=len(subscriptions),
        )
        update_active_subscribers(self.total_client_count)
        if self.total_client_count == 0:
            self._stop_heartbeat()

    def disconnect_all(self) -> None:
        """Close every run's subscribers and stop the heartbeat."""
        for streaming_id in list(self._subscribers):
            self.close_session(streaming_id)
        self._stop_heartbeat()

    async def shutdown(self) -> None:
        self.disconnect_all()
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_client_count(self, streaming_id: str) -> int:
        return len(self._subscribers.get(streaming_id, {}))

    @property
    def total_client_count(self) -> int:
        return sum(len(subs) for subs in self._subscribers.values())

    def get_active_sessions(self) -> list[str]:
        return list(self._subscribers)

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    def _deliver(self, subscription: Subscription, frame: bytes) -> bool:
        try:
            subscription.sink.send(frame)
            return True
        except Exception as e:
            self.logger.warning(
                "Removing dead subscriber",
                streaming_id=subscription.streaming_id,
                subscription_id=subscription.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            record_dead_subscriber()
            self._close_sink(subscription)
            self.detach(subscription)
            return False

    def _close_sink(self, subscription: Subscription) -> None:
        try:
            subscription.sink.close()
        except Exception as e:
            self.logger.debug(
                "Sink close failed",
                streaming_id=subscription.streaming_id,
                subscription_id=subscription.id,
                error=str(e),
            )

    def _start_heartbeat(self) -> None:
        if self.heartbeat_running or self.total_client_count == 0:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            subscriptions = [
                subscription
                for subs in self._subscribers.values()
                for subscription in subs.values()
            ]
            self.logger.debug("Sending heartbeat", client_count=len(subscriptions))
            for subscription in subscriptions:
                self._deliver(subscription, HEARTBEAT_FRAME)
            # Stopped from inside this iteration when the last sink died
            if self._heartbeat_task is not asyncio.current_task():
                return
