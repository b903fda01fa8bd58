"""
Streaming transport adapter over NATS JetStream.

Wraps ``nats-py`` so the rest of the client only sees library exceptions
and a small coroutine API.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import nats
import nats.errors
from nats.js.api import AckPolicy, ConsumerConfig

from memphis_client.exceptions import ConnectionInactive, TransportError

logger = logging.getLogger(__name__)

MSG_ID_HEADER = "Nats-Msg-Id"


def station_subject(station_name: str) -> str:
    """Subject that producers publish to and consumers pull from."""
    return f"{station_name}.final"


class StreamingTransport:
    """
    JetStream connection owned by a ``Memphis`` connection.

    Reconnects of the underlying NATS connection are handled by nats-py using
    the same policy the control-plane connection uses.
    """

    def __init__(self):
        self._nc: Optional[Any] = None
        self._js: Optional[Any] = None

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    @property
    def is_closed(self) -> bool:
        """True before the first connect and once nats-py has given up reconnecting."""
        return self._nc is None or self._nc.is_closed

    async def connect(
        self,
        host: str,
        port: int,
        token: str,
        reconnect: bool = True,
        max_reconnect: int = 3,
        reconnect_interval_ms: int = 200,
        timeout_ms: int = 15000,
    ) -> None:
        """
        Open the NATS connection and its JetStream context.

        Raises:
            TransportError: If the broker cannot be reached
        """
        server = f"nats://{host}:{port}"
        try:
            self._nc = await nats.connect(
                servers=[server],
                allow_reconnect=reconnect,
                max_reconnect_attempts=max_reconnect if reconnect else 0,
                reconnect_time_wait=reconnect_interval_ms / 1000.0,
                connect_timeout=timeout_ms / 1000.0,
                token=token,
            )
        except (nats.errors.Error, OSError) as e:
            logger.error("Broker connection failed", extra={
                "server": server,
                "error": str(e),
            })
            raise TransportError(f"Failed to connect to broker {server}: {e}") from e

        self._js = self._nc.jetstream()
        logger.info("Connected to broker", extra={"server": server})

    def _jetstream(self) -> Any:
        if self._js is None:
            raise ConnectionInactive("Streaming transport is not connected")
        return self._js

    async def publish(
        self,
        subject: str,
        payload: bytes,
        msg_id: str,
        ack_wait_sec: float,
    ) -> Any:
        """
        Publish with a deduplication id and wait for the stream's ack.

        Raises:
            ConnectionInactive: If the transport was never opened or is closed
            TransportError: If the publish fails or is not acked in time
        """
        js = self._jetstream()
        try:
            return await js.publish(
                subject,
                payload,
                timeout=ack_wait_sec,
                headers={MSG_ID_HEADER: msg_id},
            )
        except nats.errors.Error as e:
            logger.error("Publish failed", extra={
                "subject": subject,
                "msg_id": msg_id,
                "error": str(e),
            })
            raise TransportError(f"Publish to {subject} failed: {e}") from e

    async def pull_subscribe(
        self,
        subject: str,
        durable: str,
        ack_wait_sec: float = 4.0,
    ) -> Any:
        """
        Open a durable pull subscription with explicit acknowledgment.

        Raises:
            ConnectionInactive: If the transport was never opened or is closed
            TransportError: If the subscription cannot be created
        """
        js = self._jetstream()
        try:
            return await js.pull_subscribe(
                subject,
                durable=durable,
                config=ConsumerConfig(
                    ack_policy=AckPolicy.EXPLICIT,
                    ack_wait=ack_wait_sec,
                ),
            )
        except nats.errors.Error as e:
            raise TransportError(f"Pull subscribe to {subject} failed: {e}") from e

    async def fetch(self, subscription: Any, batch: int, timeout_ms: int) -> List[Any]:
        """
        Pull up to ``batch`` messages, waiting at most ``timeout_ms``.

        Returns:
            The delivered messages, empty if none arrived before expiry

        Raises:
            TransportError: If the pull request fails
        """
        try:
            return await subscription.fetch(batch=batch, timeout=timeout_ms / 1000.0)
        except nats.errors.TimeoutError:
            return []
        except nats.errors.Error as e:
            raise TransportError(f"Pull failed: {e}") from e

    async def unsubscribe(self, subscription: Any) -> None:
        try:
            await subscription.unsubscribe()
        except nats.errors.Error as e:
            logger.warning("Error releasing subscription", extra={"error": str(e)})

    async def close(self) -> None:
        nc, self._nc, self._js = self._nc, None, None
        if nc is None or nc.is_closed:
            return
        try:
            await nc.close()
            logger.info("Broker connection closed")
        except nats.errors.Error as e:
            logger.warning("Error closing broker connection", extra={"error": str(e)})
