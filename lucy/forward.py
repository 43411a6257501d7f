"""Forwarding pipeline for plain HTTP requests."""

import asyncio
import time
from typing import Optional, Tuple

import httpx

from .body import read_bounded_iter
from .content import decompress_for_display, display_body
from .errors import (
    ClientDisconnected,
    InvalidTarget,
    ProxyError,
    ResponseBodyTooLarge,
    UpstreamFailure,
)
from .headers import display_headers, sanitize_headers
from .observe import ErrorRecord, RequestLog, RequestRecord, ResponseRecord
from .request import (
    ClientConnection,
    InboundRequest,
    build_target_url,
    read_request_body,
    send_error,
    write_response,
)

# Statuses whose responses never carry a body
BODILESS_STATUSES = (204, 304)

# Inbound headers the outbound request must not carry over
PROXY_ANSWERED_HEADERS = ("host", "expect")


class Forwarder:
    """Runs one request/response cycle against the origin.

    Args:
        client: Shared, connection-pooled outbound client.
        log: Observability sink.
        max_body_size: Limit applied to request and response bodies.
        request_timeout: Budget for the whole outbound round trip.
        server_timeout: Budget for client-side reads and writes.
        body_preview: Characters of body shown in records.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        log: RequestLog,
        max_body_size: int,
        request_timeout: float,
        server_timeout: Optional[float] = None,
        body_preview: int = 500,
    ):
        self.client = client
        self.log = log
        self.max_body_size = max_body_size
        self.request_timeout = request_timeout
        self.server_timeout = server_timeout
        self.body_preview = body_preview
        self._timeout = httpx.Timeout(request_timeout, connect=min(10.0, request_timeout))

    async def handle(
        self, request: InboundRequest, conn: ClientConnection, started: float
    ) -> None:
        url = request.target
        try:
            body = await asyncio.wait_for(
                read_request_body(
                    conn.reader, request.headers, self.max_body_size, writer=conn.writer
                ),
                self.server_timeout,
            )
            url = build_target_url(request)

            self.log.emit(RequestRecord(
                method=request.method,
                url=url,
                headers=display_headers(request.headers),
                body=display_body(body, self.body_preview),
                body_size=len(body),
            ))

            outbound = self.build_request(request, url, body)
            response, response_body = await self._until_disconnected(
                conn.reader, self.fetch(outbound)
            )

            keep_length = (
                request.method == "HEAD"
                or response.status_code < 200
                or response.status_code in BODILESS_STATUSES
            )
            await write_response(
                conn.writer,
                response.status_code,
                response.reason_phrase,
                response.headers,
                response_body,
                keep_length=keep_length,
                timeout=self.server_timeout,
            )

            # Display copy only; the bytes above went out untouched
            shown = decompress_for_display(
                response_body, response.headers, self.max_body_size
            )
            self.log.emit(ResponseRecord(
                status=response.status_code,
                url=url,
                headers=display_headers(response.headers),
                body=display_body(shown, self.body_preview),
                body_size=len(response_body),
                duration=time.monotonic() - started,
            ))

        except ClientDisconnected as e:
            self.log.emit(ErrorRecord(url, e.message, time.monotonic() - started))

        except ProxyError as e:
            self.log.emit(ErrorRecord(url, e.message, time.monotonic() - started))
            await send_error(conn.writer, e.status, e.message, timeout=self.server_timeout)

    def build_request(self, request: InboundRequest, url: str, body: bytes) -> httpx.Request:
        """Build the outbound request.

        ``httpx.Request`` is constructed directly so the client's default
        headers are not mixed into what the caller sent. Host is always
        derived from ``url``; Expect was already answered by the proxy.
        """
        headers = sanitize_headers(request.headers)
        for name in PROXY_ANSWERED_HEADERS:
            headers.pop(name, None)
        try:
            return httpx.Request(
                request.method,
                url,
                headers=headers,
                content=body,
                extensions={"timeout": self._timeout.as_dict()},
            )
        except httpx.InvalidURL as e:
            raise InvalidTarget(f"Invalid request URL: {e}")

    async def fetch(self, outbound: httpx.Request) -> Tuple[httpx.Response, bytes]:
        """Send ``outbound`` and read the raw response body.

        Raises:
            UpstreamFailure: on any transport failure or timeout.
            ResponseBodyTooLarge: if the origin body exceeds the limit.
        """
        try:
            return await asyncio.wait_for(self._exchange(outbound), self.request_timeout)
        except asyncio.TimeoutError:
            raise UpstreamFailure(
                f"Failed to make request: timed out after {self.request_timeout:g}s"
            )

    async def _exchange(self, outbound: httpx.Request) -> Tuple[httpx.Response, bytes]:
        try:
            response = await self.client.send(outbound, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Failed to make request: {_describe(e)}")

        try:
            # aiter_raw: no content decoding, the bytes stay as the origin sent them
            body = await read_bounded_iter(response.aiter_raw(), self.max_body_size + 1)
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Failed to read response: {_describe(e)}")
        finally:
            await response.aclose()

        if len(body) > self.max_body_size:
            raise ResponseBodyTooLarge("Response body too large")
        return response, body

    async def _until_disconnected(self, reader: asyncio.StreamReader, coro):
        """Run ``coro`` but cancel it if the client hangs up meanwhile."""
        task = asyncio.ensure_future(coro)
        watcher = asyncio.ensure_future(reader.read(1))
        try:
            done, _ = await asyncio.wait(
                {task, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
            if task not in done and _hung_up(watcher):
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                raise ClientDisconnected("Client disconnected")
            return await task
        finally:
            watcher.cancel()
            task.cancel()
            await asyncio.gather(watcher, task, return_exceptions=True)


def _hung_up(watcher: asyncio.Future) -> bool:
    """Whether a finished read on the client means the client is gone."""
    if watcher.cancelled():
        return False
    if watcher.exception() is not None:
        return True
    # Extra bytes are pipelined data, not a hang-up
    return watcher.result() == b""


def _describe(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__
