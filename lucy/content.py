"""Display helpers for captured bodies.

Nothing in here touches the bytes that go out on the wire; these
functions only produce the readable copy shown in request logs.
"""

import json
import zlib

import httpx

BODY_PREVIEW_LIMIT = 500
BINARY_RATIO = 0.2


def decompress_for_display(body: bytes, headers: httpx.Headers, limit: int) -> bytes:
    """Gunzip ``body`` if the headers say it is gzip-encoded.

    At most ``limit`` decompressed bytes are produced. Any decompression
    failure falls back to the original bytes.
    """
    encoding = headers.get("content-encoding", "").strip().lower()
    if encoding != "gzip" or not body:
        return body
    try:
        decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
        data = decompressor.decompress(body, max(limit, 1))
    except zlib.error:
        return body
    if not decompressor.eof and not decompressor.unconsumed_tail:
        # Stream ended early: truncated or corrupt
        return body
    return data


def is_binary(data: bytes) -> bool:
    """Guess whether ``data`` is binary (more than 20% non-printable bytes)."""
    if not data:
        return False
    non_printable = 0
    for b in data:
        if b == 0 or (b < 32 and b not in (9, 10, 13)) or b > 126:
            non_printable += 1
    return non_printable / len(data) > BINARY_RATIO


def looks_like_json(text: str) -> bool:
    text = text.strip()
    return (text.startswith("{") and text.endswith("}")) or (
        text.startswith("[") and text.endswith("]")
    )


def pretty_json(text: str) -> str:
    """Indent a JSON document for display; return ``text`` unchanged if invalid."""
    try:
        obj = json.loads(text)
    except ValueError:
        return text
    pretty = json.dumps(obj, indent=2, ensure_ascii=False)
    return pretty.replace("\n", "\n   ")


def format_body(text: str, limit: int = BODY_PREVIEW_LIMIT) -> str:
    """Pretty-print JSON bodies and cut everything down to ``limit`` characters."""
    if looks_like_json(text):
        text = pretty_json(text)
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def display_body(data: bytes, limit: int = BODY_PREVIEW_LIMIT) -> str:
    if not data:
        return ""
    if is_binary(data):
        return f"[Binary/Compressed content, {len(data)} bytes]"
    return format_body(data.decode("utf-8", errors="replace"), limit)
