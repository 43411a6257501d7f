"""Lucy: an HTTP debug proxy that shows what goes over the wire."""

from .config import Config
from .observe import RequestLog
from .server import ProxyServer, run_proxy

__all__ = [
    "Config",
    "ProxyServer",
    "RequestLog",
    "run_proxy",
]

__version__ = "0.1.0"
