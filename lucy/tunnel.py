"""CONNECT tunnels: opaque byte relays between client and target."""

import asyncio
import enum
import time
from typing import Optional, Tuple

from .errors import DialFailure, HijackUnsupported, ProxyError
from .observe import ConnectRecord, ErrorRecord, RequestLog, TunnelRecord
from .request import ClientConnection, InboundRequest, send_error

DIAL_TIMEOUT = 10.0
RELAY_CHUNK = 64 * 1024

ESTABLISHED_RESPONSE = b"HTTP/1.1 200 Connection Established\r\n\r\n"


class TunnelState(str, enum.Enum):
    REQUESTED = "requested"
    DIALING = "dialing"
    ESTABLISHED = "established"
    RELAYING = "relaying"
    CLOSED = "closed"
    ERROR = "error"


def split_host_port(authority: str) -> Tuple[str, int]:
    """Split a CONNECT target such as ``example.com:443`` or ``[::1]:8443``.

    Raises:
        DialFailure: if the port is missing or invalid.
    """
    host, sep, port = authority.rpartition(":")
    if not sep or not host:
        raise DialFailure(f"Failed to connect to target: missing port in address {authority!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise DialFailure(f"Failed to connect to target: too many colons in address {authority!r}")
    try:
        port_number = int(port)
    except ValueError:
        raise DialFailure(f"Failed to connect to target: invalid port {port!r}")
    if not 0 < port_number < 65536:
        raise DialFailure(f"Failed to connect to target: invalid port {port!r}")
    return host, port_number


class TunnelSession:
    """One CONNECT session and the connections it owns.

    Streams are attached as the session progresses; :meth:`close` closes
    whatever is attached, each connection exactly once.
    """

    def __init__(self, host: str, started: float):
        self.host = host
        self.started = started
        self.state = TunnelState.REQUESTED
        self.client_reader: Optional[asyncio.StreamReader] = None
        self.client_writer: Optional[asyncio.StreamWriter] = None
        self.target_reader: Optional[asyncio.StreamReader] = None
        self.target_writer: Optional[asyncio.StreamWriter] = None
        self._closed = set()

    def close(self) -> None:
        for writer in (self.client_writer, self.target_writer):
            if writer is not None and id(writer) not in self._closed:
                self._closed.add(id(writer))
                writer.close()
        if self.state != TunnelState.ERROR:
            self.state = TunnelState.CLOSED

    async def wait_closed(self) -> None:
        for writer in (self.client_writer, self.target_writer):
            if writer is None:
                continue
            try:
                await asyncio.wait_for(writer.wait_closed(), 1.0)
            except (OSError, asyncio.TimeoutError):
                pass


class Tunnel:
    """Handles CONNECT requests.

    Args:
        log: Observability sink.
        wait_both_directions: Keep relaying the other direction after one
            side sends EOF (half-close) instead of ending the session.
        dial_timeout: Seconds allowed for connecting to the target.
        server_timeout: Seconds allowed for writes to the client before
            the tunnel is established.
    """

    def __init__(
        self,
        log: RequestLog,
        wait_both_directions: bool = False,
        dial_timeout: float = DIAL_TIMEOUT,
        server_timeout: Optional[float] = None,
    ):
        self.log = log
        self.wait_both_directions = wait_both_directions
        self.dial_timeout = dial_timeout
        self.server_timeout = server_timeout

    async def handle(
        self, request: InboundRequest, conn: ClientConnection, started: float
    ) -> None:
        session = TunnelSession(request.target, started)
        self.log.emit(ConnectRecord(session.host))

        try:
            await self.establish(session, conn)
        except ProxyError as e:
            session.close()
            self.log.emit(ErrorRecord(
                f"CONNECT {session.host}", e.message, time.monotonic() - started
            ))
            await send_error(conn.writer, e.status, e.message, timeout=self.server_timeout)
            return
        except BaseException:
            session.close()
            raise

        try:
            await self.relay(session)
        finally:
            session.close()
            await session.wait_closed()
            self.log.emit(TunnelRecord(session.host, time.monotonic() - started))

    async def establish(self, session: TunnelSession, conn: ClientConnection) -> None:
        """Dial the target, acknowledge the CONNECT and take over the client.

        Raises:
            HijackUnsupported: if the client transport cannot be taken over.
                Checked before dialing.
            DialFailure: if the target cannot be reached.
        """
        if not conn.can_hijack:
            session.state = TunnelState.ERROR
            raise HijackUnsupported("Hijacking not supported")

        session.state = TunnelState.DIALING
        try:
            hostname, port = split_host_port(session.host)
            session.target_reader, session.target_writer = await asyncio.wait_for(
                asyncio.open_connection(hostname, port), self.dial_timeout
            )
        except DialFailure:
            session.state = TunnelState.ERROR
            raise
        except asyncio.TimeoutError:
            session.state = TunnelState.ERROR
            raise DialFailure(
                f"Failed to connect to target: timed out after {self.dial_timeout:g}s"
            )
        except OSError as e:
            session.state = TunnelState.ERROR
            raise DialFailure(f"Failed to connect to target: {e}")

        try:
            conn.writer.write(ESTABLISHED_RESPONSE)
            await asyncio.wait_for(conn.writer.drain(), self.server_timeout)
        except (OSError, asyncio.TimeoutError):
            session.state = TunnelState.ERROR
            raise

        session.client_reader, session.client_writer = conn.hijack()
        session.state = TunnelState.ESTABLISHED

    async def relay(self, session: TunnelSession) -> None:
        """Copy bytes both ways until the session ends."""
        session.state = TunnelState.RELAYING
        upstream = asyncio.ensure_future(
            self._pipe(session.client_reader, session.target_writer)
        )
        downstream = asyncio.ensure_future(
            self._pipe(session.target_reader, session.client_writer)
        )
        tasks = {upstream, downstream}
        pending = tasks
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                failed = [t for t in done if t.exception() is not None]
                for task in failed:
                    print(f"[TUNNEL] {session.host}: relay stopped: {task.exception()!r}")
                # A failed direction always ends the session
                if not self.wait_both_directions or failed:
                    break
        finally:
            session.close()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _pipe(self, src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> int:
        total = 0
        while True:
            chunk = await src.read(RELAY_CHUNK)
            if not chunk:
                break
            dst.write(chunk)
            await dst.drain()
            total += len(chunk)

        if self.wait_both_directions and dst.can_write_eof():
            try:
                dst.write_eof()
            except OSError:
                pass
        return total
