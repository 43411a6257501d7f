"""Header classification: what may cross to the origin, what is shown."""

from typing import Dict

import httpx

# Headers scoped to the client <-> proxy link; never relayed to the origin.
HOP_BY_HOP_HEADERS = (
    "Connection",
    "Keep-Alive",
    "Proxy-Authenticate",
    "Proxy-Authorization",
    "TE",
    "Trailers",
    "Transfer-Encoding",
    "Upgrade",
)

# Headers copied into observability records. Display only.
DISPLAY_HEADERS = (
    "Authorization",
    "Content-Type",
    "Content-Length",
    "User-Agent",
    "Accept",
    "Cookie",
    "Set-Cookie",
)

_HOP_BY_HOP = frozenset(name.lower() for name in HOP_BY_HOP_HEADERS)


def is_hop_by_hop(name) -> bool:
    if isinstance(name, bytes):
        name = name.decode("latin-1")
    return name.strip().lower() in _HOP_BY_HOP


def sanitize_headers(headers: httpx.Headers) -> httpx.Headers:
    """Return a copy of ``headers`` without hop-by-hop entries.

    Values, their order and the original name casing are preserved.
    """
    return httpx.Headers(
        [(name, value) for name, value in headers.raw if not is_hop_by_hop(name)]
    )


def display_headers(headers: httpx.Headers) -> Dict[str, str]:
    """Pick the allow-listed headers for display, joining repeated values."""
    shown = {}
    for name in DISPLAY_HEADERS:
        values = headers.get_list(name)
        if values:
            shown[name] = ", ".join(values)
    return shown
