"""
Shared test fixtures: a local control-plane server, a fake JetStream
behind the real StreamingTransport, and a mocked REST API.
"""

import asyncio
import json
from collections import deque
from typing import Any, Callable, Dict, List, Optional

import httpx
import nats.errors
import pytest
import pytest_asyncio

from memphis_client import Memphis
from memphis_client.transport import StreamingTransport


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(0.01)


# ============================================================================
# Control plane socket
# ============================================================================


class ControlPlaneServer:
    """Speaks the control-plane handshake on a loopback port."""

    def __init__(self, respond: bool = True, access_token_exp: Optional[int] = None):
        self.respond = respond
        self.access_token_exp = access_token_exp
        self.connection_id = "conn-1"
        self.handshakes: List[Dict[str, Any]] = []
        self.refresh_requests = 0
        self.port: Optional[int] = None
        self._tokens = 0
        self._writers: List[asyncio.StreamWriter] = []
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", self.port or 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        decoder = json.JSONDecoder()
        buffer = ""
        try:
            while True:
                chunk = await reader.read(4096)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8")
                while buffer:
                    try:
                        frame, end = decoder.raw_decode(buffer)
                    except ValueError:
                        break
                    buffer = buffer[end:].lstrip()
                    self._on_frame(frame, writer)
        except OSError:
            pass
        finally:
            writer.close()

    def _on_frame(self, frame: Dict[str, Any], writer: asyncio.StreamWriter) -> None:
        if frame.get("resend_access_token"):
            self.refresh_requests += 1
            self._write_token(writer)
            return
        self.handshakes.append(frame)
        if self.respond:
            self._write_token(writer)

    def _write_token(self, writer: asyncio.StreamWriter) -> None:
        self._tokens += 1
        writer.write(json.dumps({
            "connection_id": self.connection_id,
            "access_token": f"token-{self._tokens}",
            "access_token_exp": self.access_token_exp,
        }).encode("utf-8"))

    def drop_clients(self) -> None:
        """Close every accepted socket, as a control-plane restart would."""
        writers, self._writers = self._writers, []
        for writer in writers:
            writer.close()

    def stop_listening(self) -> None:
        if self._server is not None:
            self._server.close()

    async def stop(self) -> None:
        self.drop_clients()
        if self._server is not None:
            self._server.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                pass


# ============================================================================
# Streaming transport
# ============================================================================


class FakeMsg:
    def __init__(self, data: bytes, subject: str = "orders.final"):
        self.data = data
        self.subject = subject
        self.headers = None
        self.acked = False

    async def ack(self) -> None:
        self.acked = True


class FakePullSubscription:
    def __init__(self):
        self.pending: deque = deque()
        self.fetch_calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.fail_with: Optional[Exception] = None
        self.unsubscribed = False

    def deliver(self, *payloads: bytes) -> None:
        for payload in payloads:
            self.pending.append(FakeMsg(payload))

    async def fetch(self, batch: int = 1, timeout: float = 5) -> List[FakeMsg]:
        self.fetch_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            error, self.fail_with = self.fail_with, None
            raise error
        if not self.pending:
            await asyncio.sleep(timeout)
            raise nats.errors.TimeoutError()
        count = min(batch, len(self.pending))
        return [self.pending.popleft() for _ in range(count)]

    async def unsubscribe(self) -> None:
        self.unsubscribed = True


class FakeJetStream:
    def __init__(self):
        self.published: List[Dict[str, Any]] = []
        self.subscriptions: List[Dict[str, Any]] = []
        self.subscription = FakePullSubscription()
        self.unresponsive = False
        self.subscribe_error: Optional[Exception] = None

    async def publish(self, subject, payload=b"", timeout=None, stream=None, headers=None):
        if self.unresponsive:
            await asyncio.sleep(timeout)
            raise nats.errors.TimeoutError()
        self.published.append({
            "subject": subject,
            "payload": payload,
            "timeout": timeout,
            "headers": headers,
        })
        return {"stream": "orders", "seq": len(self.published)}

    async def pull_subscribe(self, subject, durable=None, config=None):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscriptions.append({"subject": subject, "durable": durable, "config": config})
        return self.subscription


class FakeNatsConnection:
    def __init__(self, js: FakeJetStream):
        self._js = js
        self.is_connected = True
        self.is_closed = False

    def jetstream(self) -> FakeJetStream:
        return self._js

    async def close(self) -> None:
        self.is_connected = False
        self.is_closed = True


class FakeTransport(StreamingTransport):
    """StreamingTransport whose NATS connection is an in-memory fake."""

    def __init__(self):
        super().__init__()
        self.js = FakeJetStream()
        self.connect_calls: List[Dict[str, Any]] = []
        self.close_calls = 0
        self.connect_error: Optional[Exception] = None

    async def connect(self, host, port, token, **kwargs) -> None:
        self.connect_calls.append({"host": host, "port": port, "token": token, **kwargs})
        if self.connect_error is not None:
            raise self.connect_error
        self._nc = FakeNatsConnection(self.js)
        self._js = self._nc.jetstream()

    async def close(self) -> None:
        self.close_calls += 1
        await super().close()


# ============================================================================
# Control plane REST API
# ============================================================================


class ControlPlaneApi:
    """Records REST calls; every path answers 200 unless told otherwise."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.failures: Dict[str, int] = {}

    def fail(self, path: str, status_code: int) -> None:
        self.failures[path] = status_code

    def paths(self) -> List[str]:
        return [call["path"] for call in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.calls.append({
            "path": request.url.path,
            "body": body,
            "authorization": request.headers.get("Authorization"),
        })
        status_code = self.failures.get(request.url.path)
        if status_code is not None:
            return httpx.Response(status_code, text="not found")
        return httpx.Response(200, json={"name": body.get("name")})


# ============================================================================
# Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def control_plane():
    server = ControlPlaneServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def api() -> ControlPlaneApi:
    return ControlPlaneApi()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def memphis(transport: FakeTransport, api: ControlPlaneApi) -> Memphis:
    return Memphis(transport=transport, http_transport=httpx.MockTransport(api.handler))


@pytest.fixture
def connect_kwargs(control_plane: ControlPlaneServer) -> Dict[str, Any]:
    return {
        "host": "http://127.0.0.1",
        "port": control_plane.port,
        "username": "app",
        "connection_token": "secret",
        "broker_host": "127.0.0.1",
        "reconnect_interval_ms": 10,
        "timeout_ms": 2000,
    }


@pytest_asyncio.fixture
async def connected(memphis: Memphis, connect_kwargs: Dict[str, Any]):
    await memphis.connect(**connect_kwargs)
    yield memphis
    await memphis.close()
