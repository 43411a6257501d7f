"""HTTP debug proxy server."""

import asyncio
import signal
import time
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Optional, Set

import httpx

from .config import Config
from .errors import ListenError, ProxyError, ShutdownTimeout
from .forward import Forwarder
from .observe import RequestLog
from .request import ClientConnection, read_request_head, send_error
from .tunnel import DIAL_TIMEOUT, Tunnel

SHUTDOWN_GRACE = 10.0


def build_client(config: Config) -> httpx.AsyncClient:
    """Create the pooled outbound client shared by all requests."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            config.proxy.request_timeout,
            connect=min(DIAL_TIMEOUT, config.proxy.request_timeout),
        ),
        limits=httpx.Limits(
            max_connections=None,
            max_keepalive_connections=100,
            keepalive_expiry=90.0,
        ),
        follow_redirects=False,  # Redirects go back to the caller
        trust_env=False,         # Never route through another proxy from env
        # Origin cookies belong to the caller; the jar refuses every domain
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
    )


class ProxyServer:
    """Forward proxy: relays HTTP requests and tunnels CONNECT sessions.

    Args:
        config: Server configuration; never modified by the server.
        log: Observability sink shared by all connections.
        client: Outbound HTTP client (default: :func:`build_client`).
    """

    def __init__(
        self,
        config: Config,
        log: RequestLog,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.log = log
        self.client = client or build_client(config)
        self.forwarder = Forwarder(
            self.client,
            log,
            max_body_size=config.proxy.max_body_size,
            request_timeout=config.proxy.request_timeout,
            server_timeout=config.proxy.server_timeout,
            body_preview=config.log.body_preview,
        )
        self.tunnel = Tunnel(
            log,
            wait_both_directions=config.tunnel.wait_both_directions,
            server_timeout=config.proxy.server_timeout,
        )
        self._server: Optional[asyncio.Server] = None
        self._connections: Set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        """The port actually bound (useful when configured with port 0)."""
        if not self._server or not self._server.sockets:
            return self.config.proxy.port
        return self._server.sockets[0].getsockname()[1]

    async def start(self):
        """Bind the listening socket and start accepting connections.

        Raises:
            ListenError: if the socket cannot be bound.
        """
        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                self.config.proxy.host,
                self.config.proxy.port,
            )
        except OSError as e:
            await self.client.aclose()
            raise ListenError(f"server failed to start: {e}") from e

        addr = self._server.sockets[0].getsockname()
        print(f"[PROXY] Listening on {addr[0]}:{addr[1]}")
        print(f"[PROXY] Request timeout: {self.config.proxy.request_timeout:g}s")
        print(f"[PROXY] Max body size: {self.config.proxy.max_body_size} bytes")

    async def shutdown(self, grace: float = SHUTDOWN_GRACE):
        """Stop accepting, let in-flight connections finish, then force-close.

        Raises:
            ShutdownTimeout: if connections were still open after ``grace``
                seconds and had to be cancelled.
        """
        print("[PROXY] Shutting down proxy server...")
        if self._server:
            self._server.close()

        pending = set(self._connections)
        if pending:
            _, pending = await asyncio.wait(pending, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self._server:
            await self._server.wait_closed()
        await self.client.aclose()

        if pending:
            raise ShutdownTimeout(
                f"server shutdown failed: {len(pending)} connection(s) still open "
                f"after {grace:g}s"
            )
        print("[PROXY] Proxy server stopped")

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        """Handle one client connection: a single request or tunnel."""
        task = asyncio.current_task()
        self._connections.add(task)
        conn = ClientConnection(reader, writer)
        timeout = self.config.proxy.server_timeout
        try:
            request = await asyncio.wait_for(read_request_head(reader), timeout)
            if request is None:
                return
            request.tls = conn.tls
            started = time.monotonic()

            if request.method == "CONNECT":
                await self.tunnel.handle(request, conn, started)
            else:
                await self.forwarder.handle(request, conn, started)

        except ProxyError as e:
            # Only reachable for unparseable requests
            print(f"[PROXY] {conn.peer}: {e.message}")
            await self._send_error_safe(conn, e.status, e.message)
        except asyncio.TimeoutError:
            print(f"[PROXY] {conn.peer}: client timed out")
        except (OSError, asyncio.IncompleteReadError) as e:
            print(f"[PROXY] {conn.peer}: connection lost: {e!r}")
        except Exception as e:
            print(f"[PROXY] Error: {e!r}")
            await self._send_error_safe(conn, 500, "Internal Server Error")
        finally:
            self._connections.discard(task)
            conn.close()
            await conn.wait_closed()

    async def _send_error_safe(self, conn: ClientConnection, status: int, message: str):
        """Send an error response, ignoring a client that is already gone."""
        if conn.hijacked or conn.writer.is_closing():
            return
        try:
            await send_error(
                conn.writer, status, message, timeout=self.config.proxy.server_timeout
            )
        except (OSError, asyncio.TimeoutError):
            pass


async def run_proxy(config: Config, log: Optional[RequestLog] = None):
    """Run the proxy until SIGINT/SIGTERM.

    Raises:
        ListenError: if the listening socket cannot be bound.
        ShutdownTimeout: if in-flight connections outlived the grace period.
    """
    log = log or RequestLog(config.log.format)
    server = ProxyServer(config, log)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt ends asyncio.run instead

    await server.start()
    try:
        await stop.wait()
        print("\n[PROXY] Received shutdown signal")
    finally:
        await server.shutdown()
