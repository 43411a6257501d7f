"""Bounded readers for untrusted request and response bodies.

Every reader here returns *at most* ``limit`` bytes and stops pulling data
from its source once that many are held. Hitting the limit is not an
error; callers that need to detect an oversized body ask for
``max_size + 1`` bytes and compare lengths.
"""

import asyncio
from typing import AsyncIterator

from .errors import MalformedRequest

READ_CHUNK = 64 * 1024


async def read_bounded(stream: asyncio.StreamReader, limit: int) -> bytes:
    """Read until EOF or until exactly ``limit`` bytes have been read."""
    chunks = []
    total = 0
    while total < limit:
        chunk = await stream.read(min(READ_CHUNK, limit - total))
        if not chunk:
            break
        chunks.append(chunk)
        total += len(chunk)
    return b"".join(chunks)


async def read_bounded_iter(chunks: AsyncIterator[bytes], limit: int) -> bytes:
    """Collect chunks from an async iterator, keeping at most ``limit`` bytes.

    Iteration stops as soon as the limit is reached, so an endless source
    is never drained into memory.
    """
    parts = []
    total = 0
    if limit <= 0:
        return b""
    async for chunk in chunks:
        parts.append(chunk)
        total += len(chunk)
        if total >= limit:
            break
    return b"".join(parts)[:limit]


async def read_chunked(stream: asyncio.StreamReader, limit: int) -> bytes:
    """Decode a ``Transfer-Encoding: chunked`` body, keeping at most ``limit`` bytes.

    Raises:
        MalformedRequest: on broken chunk framing or a premature EOF.
    """
    chunks = []
    total = 0
    while total < limit:
        size_line = await stream.readline()
        if not size_line.endswith(b"\n"):
            raise MalformedRequest("Unexpected end of chunked body")
        size_text = size_line.split(b";", 1)[0].strip()
        try:
            size = int(size_text, 16)
        except ValueError:
            raise MalformedRequest(f"Invalid chunk size: {size_text[:32]!r}")
        if size < 0:
            raise MalformedRequest(f"Invalid chunk size: {size_text[:32]!r}")

        if size == 0:
            # Trailer section, discarded
            while True:
                line = await stream.readline()
                if line in (b"\r\n", b"\n", b""):
                    break
            break

        wanted = min(size, limit - total)
        try:
            data = await stream.readexactly(wanted)
        except asyncio.IncompleteReadError:
            raise MalformedRequest("Unexpected end of chunked body")
        chunks.append(data)
        total += len(data)
        if wanted < size:
            break  # limit reached mid-chunk

        terminator = await stream.readline()
        if terminator not in (b"\r\n", b"\n"):
            raise MalformedRequest("Missing CRLF after chunk data")

    return b"".join(chunks)
