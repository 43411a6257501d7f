"""HTTP/1.1 framing on the client side of the proxy."""

import asyncio
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

import httpx

from .body import read_bounded, read_chunked
from .errors import ClientBodyTooLarge, HijackUnsupported, InvalidTarget, MalformedRequest

MAX_HEADERS = 100

# Standard HTTP reason phrases
HTTP_REASONS = {
    200: "OK", 201: "Created", 204: "No Content",
    301: "Moved Permanently", 302: "Found", 304: "Not Modified",
    400: "Bad Request", 403: "Forbidden", 404: "Not Found",
    408: "Request Timeout", 413: "Request Entity Too Large",
    500: "Internal Server Error", 501: "Not Implemented",
    502: "Bad Gateway", 503: "Service Unavailable", 504: "Gateway Timeout",
}

# Headers describing how the proxy frames its own response to the client
FRAMING_HEADERS = (b"content-length", b"transfer-encoding", b"connection")

CONTINUE_RESPONSE = b"HTTP/1.1 100 Continue\r\n\r\n"


@dataclass
class InboundRequest:
    """A request as received from the client, before forwarding."""
    method: str
    target: str
    version: str = "HTTP/1.1"
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    tls: bool = False

    @property
    def host(self) -> str:
        return self.headers.get("host", "")


class ClientConnection:
    """The reader/writer pair of one accepted client connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self.hijacked = False
        self._closed = False

    @property
    def tls(self) -> bool:
        return self.writer.get_extra_info("ssl_object") is not None

    @property
    def peer(self) -> str:
        peername = self.writer.get_extra_info("peername")
        if isinstance(peername, tuple) and len(peername) >= 2:
            return f"{peername[0]}:{peername[1]}"
        return str(peername or "-")

    @property
    def can_hijack(self) -> bool:
        return self.writer.get_extra_info("socket") is not None

    def hijack(self):
        """Take raw ownership of the connection.

        After this call the caller is responsible for closing the writer;
        :meth:`close` becomes a no-op.

        Raises:
            HijackUnsupported: if the transport has no underlying socket.
        """
        if not self.can_hijack:
            raise HijackUnsupported("Hijacking not supported")
        self.hijacked = True
        return self.reader, self.writer

    def close(self) -> None:
        if self._closed or self.hijacked:
            return
        self._closed = True
        self.writer.close()

    async def wait_closed(self) -> None:
        if self.hijacked:
            return
        try:
            await self.writer.wait_closed()
        except OSError:
            pass


async def read_request_head(reader: asyncio.StreamReader) -> Optional[InboundRequest]:
    """Read the request line and headers.

    Returns ``None`` if the client closed the connection without sending
    anything.
    """
    try:
        request_line = await reader.readline()
        # Tolerate stray empty lines ahead of the request line
        while request_line in (b"\r\n", b"\n"):
            request_line = await reader.readline()
        if not request_line:
            return None

        parts = request_line.decode("latin-1").split()
        if len(parts) != 3 or not parts[2].startswith("HTTP/"):
            raise MalformedRequest("Malformed request line")
        method, target, version = parts

        raw_headers = []
        while True:
            line = await reader.readline()
            if line in (b"\r\n", b"\n"):
                break
            if not line:
                raise MalformedRequest("Unexpected end of request headers")
            name, sep, value = line.partition(b":")
            if not sep or not name.strip():
                continue
            raw_headers.append((name.strip(), value.strip()))
            if len(raw_headers) > MAX_HEADERS:
                raise MalformedRequest("Too many request headers")
    except ValueError:
        # StreamReader line limit exceeded
        raise MalformedRequest("Request header line too long")

    return InboundRequest(
        method=method,
        target=target,
        version=version,
        headers=httpx.Headers(raw_headers),
    )


async def read_request_body(
    reader: asyncio.StreamReader,
    headers: httpx.Headers,
    max_size: int,
    writer: Optional[asyncio.StreamWriter] = None,
) -> bytes:
    """Read the request body according to its framing, bounded by ``max_size``.

    If the client sent ``Expect: 100-continue`` and ``writer`` is given, the
    interim ``100 Continue`` is written once the body is known to be acceptable.

    Raises:
        ClientBodyTooLarge: if the body is larger than ``max_size``.
        MalformedRequest: on invalid framing or a body cut short.
    """
    if "chunked" in headers.get("transfer-encoding", "").lower():
        await _send_continue(writer, headers)
        body = await read_chunked(reader, max_size + 1)
        if len(body) > max_size:
            raise ClientBodyTooLarge("Request body too large")
        return body

    content_length = headers.get("content-length")
    if content_length is None:
        return b""
    try:
        length = int(content_length)
    except ValueError:
        raise MalformedRequest(f"Invalid Content-Length: {content_length!r}")
    if length < 0:
        raise MalformedRequest(f"Invalid Content-Length: {content_length!r}")
    if length > max_size:
        raise ClientBodyTooLarge("Request body too large")

    if length:
        await _send_continue(writer, headers)
    body = await read_bounded(reader, length)
    if len(body) < length:
        raise MalformedRequest("Unexpected end of request body")
    return body


async def _send_continue(
    writer: Optional[asyncio.StreamWriter], headers: httpx.Headers
) -> None:
    if writer is None:
        return
    if headers.get("expect", "").strip().lower() != "100-continue":
        return
    writer.write(CONTINUE_RESPONSE)
    await writer.drain()


def build_target_url(request: InboundRequest) -> str:
    """Resolve the absolute URL a request should be forwarded to.

    Absolute targets are returned unchanged. Origin-form targets are joined
    with the Host header; the scheme is ``https`` only when the request
    itself arrived over TLS.

    Raises:
        InvalidTarget: if no usable absolute URL can be built.
    """
    target = request.target
    parts = urlsplit(target)

    if parts.scheme:
        url = target
    else:
        if not target.startswith("/"):
            raise InvalidTarget(f"Invalid request URL: {target}")
        host = request.host
        if not host:
            raise InvalidTarget("Host header required")
        scheme = "https" if request.tls else "http"
        # Not urlsplit: "//a/b" is a path here, not a netloc
        path, _, query = target.partition("?")
        url = f"{scheme}://{host}{path}"
        if query:
            url += f"?{query}"

    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise InvalidTarget(f"Invalid request URL: {e}")
    if not parsed.host:
        raise InvalidTarget(f"Invalid request URL: {target}")
    return url


async def write_response(
    writer: asyncio.StreamWriter,
    status: int,
    reason: str,
    headers: httpx.Headers,
    body: bytes,
    keep_length: bool = False,
    timeout: Optional[float] = None,
) -> None:
    """Write a response with the origin's headers and the exact body bytes.

    Framing headers are regenerated since the proxy re-frames the body; with
    ``keep_length`` (HEAD and bodiless statuses) the origin's Content-Length
    is passed through instead.
    """
    reason = reason or HTTP_REASONS.get(status, "")
    head = [f"HTTP/1.1 {status} {reason}\r\n".encode("latin-1")]

    for name, value in headers.raw:
        lname = name.lower()
        if lname in FRAMING_HEADERS and not (keep_length and lname == b"content-length"):
            continue
        head.append(name + b": " + value + b"\r\n")

    if not keep_length:
        head.append(f"Content-Length: {len(body)}\r\n".encode())
    head.append(b"Connection: close\r\n\r\n")

    writer.write(b"".join(head))
    if body:
        writer.write(body)
    await asyncio.wait_for(writer.drain(), timeout)


async def send_error(
    writer: asyncio.StreamWriter,
    status: int,
    message: str,
    timeout: Optional[float] = None,
) -> None:
    """Send a plain-text error response."""
    reason = HTTP_REASONS.get(status, "Error")
    body_bytes = f"{message}\n".encode("utf-8")

    writer.write(f"HTTP/1.1 {status} {reason}\r\n".encode())
    writer.write(b"Content-Type: text/plain; charset=utf-8\r\n")
    writer.write(b"X-Content-Type-Options: nosniff\r\n")
    writer.write(f"Content-Length: {len(body_bytes)}\r\n".encode())
    writer.write(b"Connection: close\r\n")
    writer.write(b"\r\n")
    writer.write(body_bytes)
    await asyncio.wait_for(writer.drain(), timeout)
