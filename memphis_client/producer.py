"""
Producer session: publishes messages into a station.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from memphis_client import control_plane
from memphis_client.transport import station_subject

if TYPE_CHECKING:
    from memphis_client.connection import Memphis

logger = logging.getLogger(__name__)


class Producer:
    """
    Publishes messages to a station's subject.

    Created through ``Memphis.producer``; names are lower-cased so the
    subject is the same regardless of the caller's casing.

    Example:
        producer = await memphis.producer("orders", "checkout")
        await producer.produce(b"hello")
    """

    def __init__(self, connection: "Memphis", producer_name: str, station_name: str):
        self.connection = connection
        self.producer_name = producer_name.lower()
        self.station_name = station_name.lower()
        self.subject = station_subject(self.station_name)

    async def produce(self, message: bytes, ack_wait_sec: float = 15) -> Any:
        """
        Publish a message with a fresh deduplication id.

        Args:
            message: Message payload as bytes
            ack_wait_sec: Max seconds to wait for the broker's acknowledgment

        Returns:
            The transport's publish acknowledgment

        Raises:
            ConnectionInactive: If the streaming transport is not open
            TransportError: If the publish fails or times out
        """
        msg_id = str(uuid.uuid4())
        ack = await self.connection.transport.publish(
            self.subject,
            message,
            msg_id=msg_id,
            ack_wait_sec=ack_wait_sec,
        )
        logger.debug("Message produced", extra={
            "producer": self.producer_name,
            "subject": self.subject,
            "msg_id": msg_id,
        })
        return ack

    async def destroy(self) -> None:
        """Remove the producer from the control plane."""
        await self.connection.request(
            control_plane.DESTROY_PRODUCER,
            {"name": self.producer_name, "station_name": self.station_name},
        )
        logger.info("Producer destroyed", extra={
            "producer": self.producer_name,
            "station": self.station_name,
        })

    def __repr__(self) -> str:
        return f"Producer(name={self.producer_name!r}, station={self.station_name!r})"
