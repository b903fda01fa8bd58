"""
Memphis Client Exceptions
"""

from typing import Any, Optional


class MemphisError(Exception):
    """Base exception for Memphis client errors."""
    pass


class ConnectionTimeout(MemphisError):
    """Raised when no active connection is established within the timeout."""
    pass


class ConnectionFailed(MemphisError):
    """Raised when the control-plane handshake cannot be completed."""
    pass


class ConnectionInactive(MemphisError):
    """Raised when an operation needs an active connection and there is none."""
    pass


class TransportError(MemphisError):
    """Raised when the streaming transport fails to connect, publish or pull."""
    pass


class ControlPlaneError(MemphisError):
    """Raised when a control-plane HTTP request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SubscriptionError(MemphisError):
    """Emitted to consumer error listeners when subscription setup fails."""
    pass
