# src/gemini_relay/utils/streams.py
"""
Helpers for audio inputs that arrive as a byte stream rather than in memory.

An AudioSource is one of:
- bytes / bytearray already held in memory
- a binary file object whose `read(n)` returns bytes or an awaitable of
  bytes (e.g. a handle from `aiofiles.open(path, "rb")`)
- an async iterable of byte chunks (e.g. an HTTP upload body)
"""

import inspect
from typing import AsyncIterable, AsyncIterator, BinaryIO, Optional, Union

DEFAULT_CHUNK_SIZE = 1024 * 1024

AudioSource = Union[bytes, bytearray, BinaryIO, AsyncIterable[bytes]]


async def iter_chunks(
    source: AudioSource, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> AsyncIterator[bytes]:
    """Yields the source's bytes in chunks of at most `chunk_size` (async iterables keep their own chunking)."""
    if isinstance(source, (bytes, bytearray)):
        for start in range(0, len(source), chunk_size):
            yield bytes(source[start:start + chunk_size])
        return

    if hasattr(source, "read"):
        while True:
            chunk = source.read(chunk_size)
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                return
            yield chunk
        return

    if hasattr(source, "__aiter__"):
        async for chunk in source:
            if chunk:
                yield bytes(chunk)
        return

    raise TypeError(f"Unsupported audio source: {type(source).__name__}")


async def read_all(source: AudioSource) -> bytes:
    """Reads the whole source into memory."""
    if isinstance(source, bytes):
        return source
    return b"".join([chunk async for chunk in iter_chunks(source)])


def source_size(source: AudioSource, size: Optional[int] = None) -> int:
    """
    Returns the declared size of a source.

    Raises:
        ValueError: `size` was not given for a stream
    """
    if size is not None:
        return size
    if isinstance(source, (bytes, bytearray)):
        return len(source)
    raise ValueError("The size must be given when the audio is a stream.")
