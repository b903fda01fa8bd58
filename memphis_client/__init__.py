"""
Memphis Python Client

An asyncio client library for the Memphis message broker.
Authenticates against the control plane, keeps the connection alive with
automatic reconnection, and produces/consumes through NATS JetStream.
"""

from memphis_client.connection import Memphis
from memphis_client.consumer import Consumer, Message
from memphis_client.exceptions import (
    MemphisError,
    ConnectionTimeout,
    ConnectionFailed,
    ConnectionInactive,
    TransportError,
    ControlPlaneError,
    SubscriptionError,
)
from memphis_client.models import (
    ConnectionConfig,
    ConnectionState,
    ConsumerState,
    ReconnectPolicy,
    RetentionType,
    StorageType,
)
from memphis_client.producer import Producer
from memphis_client.resources import Factory, Station

__version__ = "0.1.0"
__all__ = [
    # Client
    "Memphis",
    # Sessions and resources
    "Producer",
    "Consumer",
    "Message",
    "Factory",
    "Station",
    # Configuration
    "ConnectionConfig",
    "ReconnectPolicy",
    "RetentionType",
    "StorageType",
    # States
    "ConnectionState",
    "ConsumerState",
    # Exceptions
    "MemphisError",
    "ConnectionTimeout",
    "ConnectionFailed",
    "ConnectionInactive",
    "TransportError",
    "ControlPlaneError",
    "SubscriptionError",
]
