"""Observability records and the sink that renders them.

Records are produced by the forwarding pipeline and the tunnel engine and
handed to a single :class:`RequestLog`, which is created once at startup
and injected into the server. Rendering never feeds back into the proxied
traffic.
"""

import json
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, Optional, TextIO


@dataclass
class RequestRecord:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    body_size: int = 0
    event = "request"


@dataclass
class ResponseRecord:
    status: int
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    body_size: int = 0
    duration: float = 0.0
    event = "response"


@dataclass
class ErrorRecord:
    url: str
    error: str
    duration: float = 0.0
    event = "error"


@dataclass
class ConnectRecord:
    host: str
    event = "connect"


@dataclass
class TunnelRecord:
    host: str
    duration: float = 0.0
    event = "tunnel_closed"


def to_dict(record) -> dict:
    data = {"event": record.event}
    data.update(asdict(record))
    if "duration" in data:
        data["duration_ms"] = round(data.pop("duration") * 1000, 2)
    return data


def format_duration(seconds: float) -> str:
    if seconds >= 1:
        return f"{seconds:.3f}s"
    return f"{seconds * 1000:.1f}ms"


def timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


class RequestLog:
    """Line-oriented sink for observability records.

    Args:
        fmt: ``"pretty"`` for human-readable console output or ``"json"``
            for one JSON object per line.
        stream: Output stream (default: stdout).
    """

    FORMATS = ("pretty", "json")

    def __init__(self, fmt: str = "pretty", stream: Optional[TextIO] = None):
        if fmt not in self.FORMATS:
            raise ValueError(f"unknown log format: {fmt!r}")
        self.fmt = fmt
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stdout

    def emit(self, record) -> None:
        """Write one record. Output failures are dropped."""
        if self.fmt == "json":
            text = json.dumps(to_dict(record), ensure_ascii=False)
        else:
            text = self.render(record)
        try:
            print(text, file=self.stream, flush=True)
        except (OSError, ValueError):
            pass

    def render(self, record) -> str:
        if isinstance(record, RequestRecord):
            lines = [f"[{timestamp()}] ➡️ {record.method} {record.url}"]
            lines += _header_lines(record.headers)
            if record.body:
                lines.append(f"   Body: {record.body}")
            return "\n".join(lines)

        if isinstance(record, ResponseRecord):
            lines = [
                "",
                f"[{timestamp()}] ⬅️ {record.status} {record.url} "
                f"({format_duration(record.duration)})",
            ]
            lines += _header_lines(record.headers)
            if record.body:
                lines.append(f"   Response: {record.body}")
            lines.append("---")
            return "\n".join(lines)

        if isinstance(record, ErrorRecord):
            return (
                f"[{timestamp()}] ❌ ERROR {record.url}: {record.error} "
                f"({format_duration(record.duration)})\n---"
            )

        if isinstance(record, ConnectRecord):
            return f"[{timestamp()}] 🔒 CONNECT {record.host}"

        if isinstance(record, TunnelRecord):
            return (
                f"[{timestamp()}] 🔒 Tunnel closed {record.host} "
                f"({format_duration(record.duration)})\n---"
            )

        raise TypeError(f"unsupported record: {record!r}")


def _header_lines(headers: Dict[str, str]):
    return [f"   {name}: {value}" for name, value in headers.items()]
