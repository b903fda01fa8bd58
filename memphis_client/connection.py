"""
Memphis Connection Manager

Owns the control-plane socket: authenticates, keeps the access token fresh,
reconnects when the socket drops, and opens the streaming transport that
producers and consumers publish and pull through.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from memphis_client import control_plane
from memphis_client.consumer import Consumer
from memphis_client.control_plane import ControlPlaneClient
from memphis_client.exceptions import (
    ConnectionFailed,
    ConnectionInactive,
    ConnectionTimeout,
    MemphisError,
)
from memphis_client.models import (
    ConnectionConfig,
    ConnectionState,
    ReconnectPolicy,
    RetentionType,
    StorageType,
)
from memphis_client.producer import Producer
from memphis_client.resources import Factory, Station
from memphis_client.timers import Timer
from memphis_client.transport import StreamingTransport

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536
MAX_FRAME_SIZE = 1024 * 1024

StateCallback = Callable[[ConnectionState, Optional[Exception]], None]


class _FrameReader:
    """Decodes consecutive JSON objects from the undelimited socket stream."""

    def __init__(self, reader: asyncio.StreamReader):
        self._reader = reader
        self._text = codecs.getincrementaldecoder("utf-8")()
        self._json = json.JSONDecoder()
        self._buffer = ""

    async def read_frame(self) -> Optional[Any]:
        """Return the next frame, or None once the peer closes the socket."""
        while True:
            frame = self._next_frame()
            if frame is not None:
                return frame
            chunk = await self._reader.read(READ_CHUNK_SIZE)
            if not chunk:
                return None
            self._buffer += self._text.decode(chunk)
            if len(self._buffer) > MAX_FRAME_SIZE:
                raise ConnectionFailed("Control-plane frame exceeds maximum size")

    def _next_frame(self) -> Optional[Any]:
        self._buffer = self._buffer.lstrip()
        if not self._buffer:
            return None
        try:
            frame, end = self._json.raw_decode(self._buffer)
        except json.JSONDecodeError:
            # incomplete frame, wait for more bytes
            return None
        self._buffer = self._buffer[end:]
        return frame


def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is not None and not task.done() and task is not asyncio.current_task():
        task.cancel()


class Memphis:
    """
    Connection to a Memphis control plane and its streaming broker.

    Features:
    - Authentication handshake over the control-plane socket
    - Access token refresh before expiry
    - Reconnection state machine with a capped number of attempts
    - Factory, station, producer and consumer provisioning

    Example:
        async with Memphis() as memphis:
            await memphis.connect(
                host="localhost",
                username="app",
                connection_token="secret",
                broker_host="localhost",
            )
            producer = await memphis.producer("orders", "checkout")
            await producer.produce(b"hello")
    """

    def __init__(
        self,
        transport: Optional[StreamingTransport] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize an unconnected client.

        Args:
            transport: Streaming transport to use (default: NATS JetStream)
            http_transport: Optional httpx transport for control-plane calls
        """
        self.host: Optional[str] = None
        self.port = 9000
        self.broker_host: Optional[str] = None
        self.broker_port = 7766
        self.username: Optional[str] = None
        self.connection_token: Optional[str] = None
        self.connection_id: Optional[str] = None
        self.access_token: Optional[str] = None
        self.access_token_expiry: Optional[int] = None
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_policy = ReconnectPolicy()
        self.transport = transport or StreamingTransport()
        self.consumers: List[Consumer] = []

        self._http_transport = http_transport
        self._control_plane: Optional[ControlPlaneClient] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._refresh_timer: Optional[Timer] = None
        self._connect_lock: Optional[asyncio.Lock] = None
        self._state_callbacks: List[StateCallback] = []

    @property
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE

    @property
    def _lock(self) -> asyncio.Lock:
        # created on first use so it binds to the running loop
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        return self._connect_lock

    def on_connection_state_change(self, callback: StateCallback) -> None:
        """
        Register a callback for connection state transitions.

        The callback receives the new state and the error that caused it,
        if any. Reconnect exhaustion is reported here as ``FAILED``.
        """
        self._state_callbacks.append(callback)

    def _set_state(self, state: ConnectionState, error: Optional[Exception] = None) -> None:
        if state is self.state:
            return
        previous, self.state = self.state, state
        logger.debug("Connection state changed", extra={
            "from_state": previous.value,
            "to_state": state.value,
        })
        for callback in list(self._state_callbacks):
            try:
                callback(state, error)
            except Exception as e:
                logger.error("State callback failed", extra={"error": str(e)})

    async def connect(
        self,
        host: str,
        username: str,
        connection_token: str,
        broker_host: str,
        port: int = 9000,
        broker_port: int = 7766,
        reconnect: bool = True,
        max_reconnect: int = 3,
        reconnect_interval_ms: int = 200,
        timeout_ms: int = 15000,
    ) -> None:
        """
        Authenticate with the control plane and open the streaming transport.

        Args:
            host: Control-plane host; a leading http:// or https:// is stripped
            username: Application-type username
            connection_token: Broker token
            broker_host: Streaming broker host
            port: Control-plane port
            broker_port: Streaming broker port
            reconnect: Whether to reconnect when the connection is lost
            max_reconnect: Reconnect attempts, capped at 9
            reconnect_interval_ms: Delay between reconnect attempts
            timeout_ms: Overall connection timeout

        Raises:
            ConnectionTimeout: If not connected within ``timeout_ms``
            ConnectionFailed: If the handshake fails and no retry is left
            TransportError: If the streaming broker cannot be reached
        """
        await self.connect_with_config(ConnectionConfig(
            host=host,
            username=username,
            connection_token=connection_token,
            broker_host=broker_host,
            port=port,
            broker_port=broker_port,
            reconnect=reconnect,
            max_reconnect=max_reconnect,
            reconnect_interval_ms=reconnect_interval_ms,
            timeout_ms=timeout_ms,
        ))

    async def connect_with_config(self, config: ConnectionConfig) -> None:
        """Same as ``connect`` with the parameters given as a ``ConnectionConfig``."""
        async with self._lock:
            reconnecting = self._reconnect_task is not None and not self._reconnect_task.done()
            if reconnecting or self.state is ConnectionState.ACTIVE:
                raise MemphisError("Already connected, close() the connection first")

            self._apply_config(config)
            self._set_state(ConnectionState.CONNECTING)
            logger.info("Connecting to control plane", extra={
                "host": self.host,
                "port": self.port,
                "broker_host": self.broker_host,
                "broker_port": self.broker_port,
            })

            try:
                await asyncio.wait_for(self._connect_attempts(), timeout=config.timeout_ms / 1000.0)
            except asyncio.TimeoutError as e:
                await self._cleanup()
                error = ConnectionTimeout(f"Connection timeout of {config.timeout_ms}ms has reached")
                self._set_state(ConnectionState.FAILED, error)
                raise error from e
            except MemphisError as e:
                await self._cleanup()
                self._set_state(ConnectionState.FAILED, e)
                raise

            logger.info("Connected to Memphis", extra={
                "connection_id": self.connection_id,
                "username": self.username,
            })

    def _apply_config(self, config: ConnectionConfig) -> None:
        self.host = config.host
        self.port = config.port
        self.broker_host = config.broker_host
        self.broker_port = config.broker_port
        self.username = config.username
        self.connection_token = config.connection_token
        self.reconnect_policy = config.reconnect_policy()
        self._control_plane = ControlPlaneClient(
            self.host,
            self.port,
            transport=self._http_transport,
            timeout_ms=config.timeout_ms,
        )

    async def _connect_attempts(self) -> None:
        while True:
            try:
                await self._establish()
                return
            except MemphisError as e:
                await self._drop_socket()
                self.access_token = None
                self._set_state(ConnectionState.CONNECTING)
                if self.reconnect_policy.exhausted:
                    raise
                self.reconnect_policy.attempts += 1
                logger.warning("Connection attempt failed", extra={
                    "attempt": self.reconnect_policy.attempts,
                    "error": str(e),
                })
                await asyncio.sleep(self.reconnect_policy.interval_ms / 1000.0)

    async def _establish(self) -> None:
        """Run the handshake once and bring up the streaming transport."""
        try:
            reader, self._writer = await asyncio.open_connection(self.host, self.port)
        except OSError as e:
            raise ConnectionFailed(
                f"Failed to connect to control plane {self.host}:{self.port}: {e}"
            ) from e

        frames = _FrameReader(reader)
        try:
            await self._send({
                "username": self.username,
                "broker_creds": self.connection_token,
                "connection_id": self.connection_id,
            })
            frame = await frames.read_frame()
        except OSError as e:
            raise ConnectionFailed(f"Control-plane handshake failed: {e}") from e

        if frame is None:
            raise ConnectionFailed("Control plane closed the connection during handshake")
        if not isinstance(frame, dict) or "access_token" not in frame:
            raise ConnectionFailed(f"Unexpected handshake response: {frame!r}")

        # nats-py reconnects on its own until it gives up and closes
        replaced = self.transport.is_closed
        if replaced:
            await self.transport.connect(
                host=self.broker_host,
                port=self.broker_port,
                token=self.connection_token,
                reconnect=self.reconnect_policy.enabled,
                max_reconnect=self.reconnect_policy.max_attempts,
                reconnect_interval_ms=self.reconnect_policy.interval_ms,
                timeout_ms=self.reconnect_policy.timeout_ms,
            )

        self._apply_credentials(frame)
        self.reconnect_policy.reset()
        self._set_state(ConnectionState.ACTIVE)
        self._listen_task = asyncio.ensure_future(self._listen(frames))

        if replaced:
            for consumer in list(self.consumers):
                consumer.resubscribe()

    async def _send(self, payload: Dict[str, Any]) -> None:
        if self._writer is None:
            raise ConnectionInactive("Control-plane socket is not open")
        self._writer.write(json.dumps(payload).encode("utf-8"))
        await self._writer.drain()

    def _apply_credentials(self, frame: Dict[str, Any]) -> None:
        self.connection_id = frame.get("connection_id", self.connection_id)
        self.access_token = frame["access_token"]
        self.access_token_expiry = frame.get("access_token_exp")
        self._schedule_token_refresh()

    def _schedule_token_refresh(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
        if self.access_token_expiry is None:
            return
        self._refresh_timer = Timer(self.access_token_expiry, self._refresh_access_token).start()

    async def _refresh_access_token(self) -> None:
        if not self.is_active:
            return
        try:
            await self._send({"resend_access_token": True})
            logger.debug("Access token refresh requested", extra={
                "connection_id": self.connection_id,
            })
        except (OSError, MemphisError) as e:
            logger.warning("Access token refresh failed", extra={"error": str(e)})

    async def _listen(self, frames: _FrameReader) -> None:
        try:
            while True:
                frame = await frames.read_frame()
                if frame is None:
                    break
                self._handle_frame(frame)
        except (OSError, ConnectionFailed) as e:
            logger.warning("Control-plane socket error", extra={"error": str(e)})

        self._listen_task = None
        self._on_socket_closed()

    def _handle_frame(self, frame: Any) -> None:
        if isinstance(frame, dict) and "access_token" in frame:
            self._apply_credentials(frame)
            logger.debug("Access token refreshed", extra={
                "connection_id": self.connection_id,
            })
        else:
            logger.warning("Unexpected control-plane frame", extra={"frame": frame})

    def _on_socket_closed(self) -> None:
        if self.state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            return
        logger.warning("Control-plane connection lost", extra={
            "connection_id": self.connection_id,
            "reconnect": self.reconnect_policy.enabled,
            "attempts": self.reconnect_policy.attempts,
        })
        self.access_token = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self) -> None:
        """Drive DISCONNECTED -> RECONNECTING -> (ACTIVE | FAILED)."""
        async with self._lock:
            await self._drop_socket()
            policy = self.reconnect_policy
            last_error: Optional[Exception] = None

            while self.state is not ConnectionState.CLOSED:
                if not policy.enabled:
                    logger.info("Reconnect disabled, closing connection")
                    await self._cleanup()
                    self._set_state(ConnectionState.CLOSED)
                    return

                if policy.exhausted:
                    logger.error("Max reconnection attempts exceeded", extra={
                        "max_attempts": policy.max_attempts,
                        "error": str(last_error) if last_error else None,
                    })
                    await self._cleanup()
                    self._set_state(ConnectionState.FAILED, last_error)
                    return

                policy.attempts += 1
                self._set_state(ConnectionState.RECONNECTING, last_error)
                logger.info("Attempting reconnection", extra={
                    "attempt": policy.attempts,
                    "delay_ms": policy.interval_ms,
                })
                await asyncio.sleep(policy.interval_ms / 1000.0)

                try:
                    await asyncio.wait_for(self._establish(), timeout=policy.timeout_ms / 1000.0)
                except asyncio.TimeoutError:
                    last_error = ConnectionTimeout(
                        f"Reconnect timeout of {policy.timeout_ms}ms has reached"
                    )
                except MemphisError as e:
                    last_error = e
                else:
                    logger.info("Reconnection successful", extra={
                        "connection_id": self.connection_id,
                    })
                    return

                logger.warning("Reconnection attempt failed", extra={
                    "attempt": policy.attempts,
                    "error": str(last_error),
                })
                await self._drop_socket()

    async def _drop_socket(self) -> None:
        """Detach the reader, stop the refresh timer and destroy the socket."""
        _cancel(self._listen_task)
        self._listen_task = None
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None

        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _cleanup(self) -> None:
        _cancel(self._reconnect_task)
        self._reconnect_task = None
        await self._drop_socket()

        self.access_token = None
        self.access_token_expiry = None
        self.connection_id = None
        self.reconnect_policy.reset()
        self.consumers.clear()

        await self.transport.close()
        if self._control_plane is not None:
            await self._control_plane.aclose()
            self._control_plane = None

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self.state is ConnectionState.CLOSED:
            return
        await self._cleanup()
        self._set_state(ConnectionState.CLOSED)
        logger.info("Connection closed", extra={"host": self.host})

    async def __aenter__(self) -> "Memphis":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def request(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Issue an authenticated control-plane request.

        Raises:
            ConnectionInactive: If the connection is not active
            ControlPlaneError: If the control plane rejects the request
        """
        if not self.is_active or self._control_plane is None or self.access_token is None:
            raise ConnectionInactive("Connection is not active")
        return await self._control_plane.post(path, body, self.access_token)

    async def factory(self, name: str, description: str = "") -> Factory:
        """
        Create a factory.

        Args:
            name: Factory name
            description: Optional description
        """
        name = name.lower()
        response = await self.request(
            control_plane.CREATE_FACTORY,
            {"name": name, "description": description},
        )
        factory = Factory(self, response.get("name", name))
        logger.info("Factory created", extra={"factory": factory.name})
        return factory

    async def station(
        self,
        name: str,
        factory_name: str,
        retention_type: Union[RetentionType, str] = RetentionType.MAX_MESSAGE_AGE_SECONDS,
        retention_value: int = 604800,
        storage_type: Union[StorageType, str] = StorageType.FILE,
        replicas: int = 1,
        dedup_enabled: bool = False,
        dedup_window_ms: int = 0,
    ) -> Station:
        """
        Create a station.

        Args:
            name: Station name
            factory_name: Factory to link the station with
            retention_type: How retention_value is interpreted
            retention_value: Retention age in seconds, message count or bytes
            storage_type: File or memory storage
            replicas: Number of message replicas
            dedup_enabled: Whether the broker drops duplicate message ids
            dedup_window_ms: Time frame in which duplicates are tracked
        """
        name = name.lower()
        response = await self.request(
            control_plane.CREATE_STATION,
            {
                "name": name,
                "factory_name": factory_name.lower(),
                "retention_type": RetentionType(retention_type).value,
                "retention_value": retention_value,
                "storage_type": StorageType(storage_type).value,
                "replicas": replicas,
                "dedup_enabled": dedup_enabled,
                "dedup_window_in_ms": dedup_window_ms,
            },
        )
        station = Station(self, response.get("name", name))
        logger.info("Station created", extra={"station": station.name})
        return station

    async def producer(self, station_name: str, producer_name: str) -> Producer:
        """
        Register a producer on a station.

        Args:
            station_name: Station to produce messages into
            producer_name: Name for the producer
        """
        producer = Producer(self, producer_name, station_name)
        await self.request(
            control_plane.CREATE_PRODUCER,
            {
                "name": producer.producer_name,
                "station_name": producer.station_name,
                "connection_id": self.connection_id,
                "producer_type": "application",
            },
        )
        logger.info("Producer created", extra={
            "producer": producer.producer_name,
            "station": producer.station_name,
        })
        return producer

    async def consumer(
        self,
        station_name: str,
        consumer_name: str,
        consumer_group: str = "",
        pull_interval_ms: int = 1000,
        batch_size: int = 10,
        batch_max_time_to_wait_ms: int = 5000,
    ) -> Consumer:
        """
        Register a consumer on a station and start pulling.

        Args:
            station_name: Station to consume messages from
            consumer_name: Name for the consumer
            consumer_group: Consumer group; shares delivery with its members
            pull_interval_ms: Interval between pulls
            batch_size: Max messages per pull
            batch_max_time_to_wait_ms: Max time a pull waits for a full batch
        """
        consumer = Consumer(
            self,
            station_name,
            consumer_name,
            consumer_group=consumer_group,
            pull_interval_ms=pull_interval_ms,
            batch_size=batch_size,
            batch_max_time_to_wait_ms=batch_max_time_to_wait_ms,
        )
        await self.request(
            control_plane.CREATE_CONSUMER,
            {
                "name": consumer.consumer_name,
                "station_name": consumer.station_name,
                "connection_id": self.connection_id,
                "consumer_type": "application",
                "consumers_group": consumer.consumer_group,
            },
        )
        self.consumers.append(consumer)
        consumer.start()
        logger.info("Consumer created", extra={
            "consumer": consumer.consumer_name,
            "group": consumer.consumer_group,
            "station": consumer.station_name,
        })
        return consumer
