"""
Consumer session: a durable pull subscription on a station.

Messages are delivered to ``"message"`` listeners registered with
``Consumer.on`` or read as an async stream from ``Consumer.messages()``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Optional

from memphis_client import control_plane
from memphis_client.exceptions import MemphisError, SubscriptionError
from memphis_client.models import ConsumerState
from memphis_client.timers import IntervalTimer
from memphis_client.transport import station_subject

if TYPE_CHECKING:
    from memphis_client.connection import Memphis

logger = logging.getLogger(__name__)

EVENTS = ("message", "error")
SUBSCRIPTION_ACK_WAIT_SEC = 4.0

_STOP = object()


class Message:
    """A delivered message. Acknowledge it once it has been processed."""

    def __init__(self, message: Any):
        self._message = message

    @property
    def data(self) -> bytes:
        return self._message.data

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return self._message.headers

    @property
    def subject(self) -> str:
        return self._message.subject

    async def ack(self) -> None:
        """Acknowledge the message to the broker."""
        await self._message.ack()

    def __repr__(self) -> str:
        return f"Message(subject={self.subject!r}, size={len(self.data)})"


class Consumer:
    """
    Pulls batches from a station and emits them in delivery order.

    The subscription is opened in the background as soon as the consumer
    starts; failures are reported to ``"error"`` listeners rather than
    raised. Pulls repeat every ``pull_interval_ms``. A tick is skipped while
    the previous pull is still outstanding.

    Example:
        consumer = await memphis.consumer("orders", "billing")

        async def handle(message):
            print(message.data)
            await message.ack()

        consumer.on("message", handle)
    """

    def __init__(
        self,
        connection: "Memphis",
        station_name: str,
        consumer_name: str,
        consumer_group: str = "",
        pull_interval_ms: int = 1000,
        batch_size: int = 10,
        batch_max_time_to_wait_ms: int = 5000,
    ):
        self.connection = connection
        self.station_name = station_name.lower()
        self.consumer_name = consumer_name.lower()
        self.consumer_group = consumer_group.lower()
        self.pull_interval_ms = pull_interval_ms
        self.batch_size = batch_size
        self.batch_max_time_to_wait_ms = batch_max_time_to_wait_ms
        self.subject = station_subject(self.station_name)
        self.state = ConsumerState.CREATED

        self._listeners: Dict[str, List[Callable[[Any], Any]]] = {event: [] for event in EVENTS}
        self._streams: List[asyncio.Queue] = []
        self._subscription: Optional[Any] = None
        self._setup_task: Optional[asyncio.Task] = None
        self._pull_task: Optional[asyncio.Task] = None
        self._pull_timer: Optional[IntervalTimer] = None

    @property
    def durable_name(self) -> str:
        return self.consumer_group or self.consumer_name

    def on(self, event: str, callback: Callable[[Any], Any]) -> "Consumer":
        """
        Register a listener for ``"message"`` or ``"error"`` events.

        Callbacks may be plain functions or coroutine functions; coroutine
        callbacks are awaited before the next event is emitted.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown consumer event {event!r}, expected one of {EVENTS}")
        self._listeners[event].append(callback)
        return self

    def start(self) -> None:
        """Open the pull subscription in the background."""
        if self.state is ConsumerState.CREATED and self._setup_task is None:
            self._setup_task = asyncio.ensure_future(self._subscribe())

    async def _subscribe(self) -> None:
        self.state = ConsumerState.SUBSCRIBING
        try:
            subscription = await self.connection.transport.pull_subscribe(
                self.subject,
                durable=self.durable_name,
                ack_wait_sec=SUBSCRIPTION_ACK_WAIT_SEC,
            )
        except MemphisError as e:
            if self.state is ConsumerState.STOPPED:
                return
            self.state = ConsumerState.ERROR
            logger.error("Subscription failed", extra={
                "consumer": self.consumer_name,
                "subject": self.subject,
                "error": str(e),
            })
            error = SubscriptionError(f"Failed to subscribe to {self.subject}: {e}")
            error.__cause__ = e
            await self._emit("error", error)
            self._close_streams()
            return

        if self.state is ConsumerState.STOPPED:
            await self.connection.transport.unsubscribe(subscription)
            return

        self._subscription = subscription
        self.state = ConsumerState.PULLING
        logger.info("Consumer subscribed", extra={
            "consumer": self.consumer_name,
            "durable": self.durable_name,
            "subject": self.subject,
        })

        self._pull()
        self._pull_timer = IntervalTimer(self.pull_interval_ms, self._pull).start()

    def _pull(self) -> None:
        if self.state is not ConsumerState.PULLING:
            return
        if self._pull_task is not None and not self._pull_task.done():
            logger.debug("Pull still outstanding, skipping tick", extra={
                "consumer": self.consumer_name,
            })
            return
        self._pull_task = asyncio.ensure_future(self._fetch())

    async def _fetch(self) -> None:
        try:
            messages = await self.connection.transport.fetch(
                self._subscription,
                batch=self.batch_size,
                timeout_ms=self.batch_max_time_to_wait_ms,
            )
        except MemphisError as e:
            logger.warning("Pull failed", extra={
                "consumer": self.consumer_name,
                "error": str(e),
            })
            if self.state is ConsumerState.PULLING:
                await self._emit("error", e)
            return

        for message in messages:
            if self.state is not ConsumerState.PULLING:
                return
            await self._emit("message", Message(message))

    async def _emit(self, event: str, payload: Any) -> None:
        if event == "message":
            for queue in self._streams:
                queue.put_nowait(payload)

        for callback in list(self._listeners[event]):
            if self.state is ConsumerState.STOPPED:
                return
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Listener error", extra={
                    "consumer": self.consumer_name,
                    "event": event,
                    "listener": getattr(callback, "__name__", repr(callback)),
                    "error": str(e),
                })

    async def messages(self) -> AsyncIterator[Message]:
        """
        Iterate over inbound messages as they are delivered.

        The stream ends when the consumer is destroyed or its subscription
        fails. It cannot be restarted; create a new consumer instead.
        """
        if self.state in (ConsumerState.STOPPED, ConsumerState.ERROR):
            return

        queue: asyncio.Queue = asyncio.Queue()
        self._streams.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _STOP:
                    return
                yield item
        finally:
            if queue in self._streams:
                self._streams.remove(queue)

    def _close_streams(self) -> None:
        streams, self._streams = self._streams, []
        for queue in streams:
            queue.put_nowait(_STOP)

    def _halt(self) -> Optional[Any]:
        if self._pull_timer is not None:
            self._pull_timer.cancel()
            self._pull_timer = None
        current = asyncio.current_task()
        for task in (self._pull_task, self._setup_task):
            # destroy() may be awaited from a listener running inside the pull task
            if task is not None and not task.done() and task is not current:
                task.cancel()
        self._pull_task = None
        self._setup_task = None

        subscription, self._subscription = self._subscription, None
        return subscription

    def _stop(self) -> Optional[Any]:
        self.state = ConsumerState.STOPPED
        for listeners in self._listeners.values():
            listeners.clear()
        self._close_streams()
        return self._halt()

    def resubscribe(self) -> None:
        """
        Open a fresh pull subscription on a replaced streaming transport.

        The old subscription belonged to the closed broker connection and is
        dropped without unsubscribing. Listeners and message streams are kept.
        Consumers that are stopped or failed are left alone.
        """
        if self.state not in (ConsumerState.SUBSCRIBING, ConsumerState.PULLING):
            return
        self._halt()
        logger.info("Resubscribing consumer", extra={
            "consumer": self.consumer_name,
            "subject": self.subject,
        })
        self._setup_task = asyncio.ensure_future(self._subscribe())

    async def destroy(self) -> None:
        """
        Stop pulling, release the subscription and remove the consumer.

        No message events are emitted once this returns. Messages that were
        delivered but not acknowledged are redelivered by the broker.
        """
        subscription = self._stop()
        if self in self.connection.consumers:
            self.connection.consumers.remove(self)
        if subscription is not None:
            await self.connection.transport.unsubscribe(subscription)

        await self.connection.request(
            control_plane.DESTROY_CONSUMER,
            {"name": self.consumer_name, "station_name": self.station_name},
        )
        logger.info("Consumer destroyed", extra={
            "consumer": self.consumer_name,
            "station": self.station_name,
        })

    def __repr__(self) -> str:
        return (
            f"Consumer(name={self.consumer_name!r}, group={self.consumer_group!r}, "
            f"station={self.station_name!r}, state={self.state.value})"
        )
