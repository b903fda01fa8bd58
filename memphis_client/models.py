"""
Memphis Client Data Types

Enums and configuration dataclasses shared by the connection manager,
resources and producer/consumer sessions.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

MAX_RECONNECT_LIMIT = 9


class RetentionType(str, Enum):
    """How a station decides when to drop messages."""
    MAX_MESSAGE_AGE_SECONDS = "message_age_sec"
    MESSAGES = "messages"
    BYTES = "bytes"


class StorageType(str, Enum):
    """Persistent storage used for a station's messages."""
    FILE = "file"
    MEMORY = "memory"


class ConnectionState(Enum):
    """Lifecycle of the control-plane connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


class ConsumerState(Enum):
    """Lifecycle of a consumer's pull subscription."""
    CREATED = "created"
    SUBSCRIBING = "subscribing"
    PULLING = "pulling"
    STOPPED = "stopped"
    ERROR = "error"


def normalize_host(host: str) -> str:
    """Strip a leading http:// or https:// scheme from a host."""
    for scheme in ("http://", "https://"):
        if host.startswith(scheme):
            return host[len(scheme):]
    return host


def _env(key: str) -> Optional[str]:
    return os.getenv(f"MEMPHIS_{key}")


def _env_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


@dataclass
class ReconnectPolicy:
    """Reconnection policy and its running attempt counter."""
    enabled: bool = True
    max_attempts: int = 3  # capped at MAX_RECONNECT_LIMIT
    interval_ms: int = 200
    timeout_ms: int = 15000
    attempts: int = 0

    def __post_init__(self):
        self.max_attempts = max(0, min(self.max_attempts, MAX_RECONNECT_LIMIT))

    @property
    def exhausted(self) -> bool:
        return not self.enabled or self.attempts >= self.max_attempts

    def reset(self) -> None:
        self.attempts = 0


@dataclass
class ConnectionConfig:
    """Parameters accepted by ``Memphis.connect``."""
    host: str
    username: str
    connection_token: str
    broker_host: str
    port: int = 9000
    broker_port: int = 7766
    reconnect: bool = True
    max_reconnect: int = 3
    reconnect_interval_ms: int = 200
    timeout_ms: int = 15000

    def __post_init__(self):
        self.host = normalize_host(self.host)
        self.broker_host = normalize_host(self.broker_host)
        self.max_reconnect = max(0, min(self.max_reconnect, MAX_RECONNECT_LIMIT))

    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            enabled=self.reconnect,
            max_attempts=self.max_reconnect,
            interval_ms=self.reconnect_interval_ms,
            timeout_ms=self.timeout_ms,
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> "ConnectionConfig":
        """
        Build a config from MEMPHIS_* environment variables.

        Keyword arguments take precedence over the environment.

        Raises:
            ValueError: If host, username, connection token or broker host
                is missing from both the environment and the overrides.
        """
        values: dict = {}
        for name in ("host", "username", "connection_token", "broker_host"):
            value = _env(name.upper())
            if value is not None:
                values[name] = value
        for name in ("port", "broker_port", "max_reconnect",
                     "reconnect_interval_ms", "timeout_ms"):
            value = _env(name.upper())
            if value is not None:
                values[name] = int(value)
        reconnect = _env("RECONNECT")
        if reconnect is not None:
            values["reconnect"] = _env_bool(reconnect)

        values.update(overrides)
        missing = [
            name for name in ("host", "username", "connection_token", "broker_host")
            if not values.get(name)
        ]
        if missing:
            raise ValueError(f"Missing connection settings: {', '.join(missing)}")
        return cls(**values)

