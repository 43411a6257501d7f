import asyncio
import io
import json
import socket
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import pytest
import pytest_asyncio

from lucy.config import Config
from lucy.observe import RequestLog
from lucy.server import ProxyServer


@dataclass
class Captured:
    """A request as seen by a test origin."""
    request_line: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    def header_names(self):
        return [name.lower() for name, _ in self.headers]

    def get(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key.lower() == name.lower():
                return value
        return None


class OriginServer:
    """Tiny HTTP origin that records requests and replies with fixed bytes."""

    def __init__(self, response: bytes, delay: float = 0.0):
        self.response = response
        self.delay = delay
        self.requests: List[Captured] = []
        self.received = asyncio.Event()
        self.disconnected = asyncio.Event()
        self._server = None

    @property
    def port(self) -> int:
        return self._server.sockets[0].getsockname()[1]

    async def start(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    async def close(self):
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader, writer):
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            lines = head.decode("latin-1").split("\r\n")
            headers = []
            for line in lines[1:]:
                if line:
                    name, _, value = line.partition(":")
                    headers.append((name.strip(), value.strip()))
            captured = Captured(lines[0], headers)
            length = captured.get("content-length")
            if length:
                captured.body = await reader.readexactly(int(length))
            self.requests.append(captured)
            self.received.set()

            if self.delay:
                # Also notices the proxy hanging up while we stall
                try:
                    data = await asyncio.wait_for(reader.read(), self.delay)
                    if not data:
                        self.disconnected.set()
                        return
                except asyncio.TimeoutError:
                    pass

            writer.write(self.response)
            await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            self.disconnected.set()
        finally:
            writer.close()


class EchoServer:
    """TCP server that optionally greets, then echoes everything back."""

    def __init__(self, greeting: bytes = b"", close_after_greeting: bool = False):
        self.greeting = greeting
        self.close_after_greeting = close_after_greeting
        self.connections = 0
        self._server = None

    @property
    def port(self) -> int:
        return self._server.sockets[0].getsockname()[1]

    async def start(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    async def close(self):
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader, writer):
        self.connections += 1
        try:
            if self.greeting:
                writer.write(self.greeting)
                await writer.drain()
            if self.close_after_greeting:
                return
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()


def http_response(status: str = "200 OK", headers=(), body: bytes = b"") -> bytes:
    lines = [f"HTTP/1.1 {status}"]
    lines += [f"{name}: {value}" for name, value in headers]
    if not any(name.lower() == "content-length" for name, _ in headers):
        lines.append(f"Content-Length: {len(body)}")
    lines.append("Connection: close")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


def split_response(raw: bytes):
    """Split raw response bytes into (status, headers, body)."""
    head, _, body = raw.partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    status = int(lines[0].split(" ")[1])
    headers = []
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers.append((name.strip(), value.strip()))
    return status, headers, body


def header_values(headers, name):
    return [value for key, value in headers if key.lower() == name.lower()]


async def exchange(port: int, data: bytes, timeout: float = 5.0) -> bytes:
    """Send raw bytes to the proxy and read until it closes the connection."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(data)
        await writer.drain()
        return await asyncio.wait_for(reader.read(), timeout)
    finally:
        writer.close()


def closed_port() -> int:
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def records(stream: io.StringIO, event: Optional[str] = None):
    out = [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]
    if event:
        out = [r for r in out if r["event"] == event]
    return out


def make_config(**proxy) -> Config:
    config = Config()
    config.proxy.host = "127.0.0.1"
    config.proxy.port = 0
    config.proxy.request_timeout = 5.0
    config.proxy.server_timeout = 5.0
    config.proxy.max_body_size = 1024
    for key, value in proxy.items():
        setattr(config.proxy, key, value)
    return config


@pytest.fixture
def log_stream():
    return io.StringIO()


@pytest_asyncio.fixture
async def start_proxy(log_stream):
    """Factory starting a proxy on an ephemeral port; shut down afterwards."""
    servers = []

    async def _start(config: Optional[Config] = None, **proxy):
        server = ProxyServer(config or make_config(**proxy), RequestLog("json", log_stream))
        await server.start()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        await server.shutdown(grace=1.0)


@pytest_asyncio.fixture
async def start_origin():
    origins = []

    async def _start(response: bytes, delay: float = 0.0):
        origin = await OriginServer(response, delay).start()
        origins.append(origin)
        return origin

    yield _start

    for origin in origins:
        await origin.close()


@pytest_asyncio.fixture
async def start_echo():
    servers = []

    async def _start(**kwargs):
        server = await EchoServer(**kwargs).start()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        await server.close()
