"""
Tests for reading audio sources given as bytes, file objects or async chunks.
"""
import io

import aiofiles
import pytest

from gemini_relay.utils.streams import iter_chunks, read_all, source_size

from tests.fixtures.upstream import collect


async def chunked(*chunks):
    for chunk in chunks:
        yield chunk


class TestIterChunks:
    @pytest.mark.asyncio
    async def test_bytes_are_split(self):
        assert await collect(iter_chunks(b"abcdefg", chunk_size=3)) == [b"abc", b"def", b"g"]

    @pytest.mark.asyncio
    async def test_sync_file_object(self):
        source = io.BytesIO(b"abcdefg")
        assert await collect(iter_chunks(source, chunk_size=4)) == [b"abcd", b"efg"]

    @pytest.mark.asyncio
    async def test_aiofiles_handle(self, tmp_path):
        path = tmp_path / "meeting.m4a"
        path.write_bytes(b"x" * 10)

        async with aiofiles.open(path, "rb") as source:
            chunks = await collect(iter_chunks(source, chunk_size=4))

        assert chunks == [b"xxxx", b"xxxx", b"xx"]

    @pytest.mark.asyncio
    async def test_async_iterable_keeps_its_chunks(self):
        chunks = await collect(iter_chunks(chunked(b"ab", b"", b"cde")))
        assert chunks == [b"ab", b"cde"]

    @pytest.mark.asyncio
    async def test_unsupported_source(self):
        with pytest.raises(TypeError):
            await collect(iter_chunks(12345))


class TestReadAll:
    @pytest.mark.asyncio
    async def test_joins_stream(self):
        assert await read_all(chunked(b"ab", b"cd")) == b"abcd"
        assert await read_all(io.BytesIO(b"data")) == b"data"


class TestSourceSize:
    def test_bytes_default_to_their_length(self):
        assert source_size(b"abc") == 3

    def test_explicit_size_wins(self):
        assert source_size(io.BytesIO(b"abc"), 1000) == 1000

    def test_stream_without_size(self):
        with pytest.raises(ValueError):
            source_size(io.BytesIO(b"abc"))
