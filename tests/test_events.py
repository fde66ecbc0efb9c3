"""
Tests for event framing and the heartbeat merge.
"""
import asyncio
import json

import pytest

from gemini_relay.schemas import Fragment
from relay_app.events import format_sse, stream_events, to_event

from tests.fixtures.upstream import collect


async def fragments_from(items, delay=0.0, error=None):
    for item in items:
        await asyncio.sleep(delay)
        yield item
    if error is not None:
        raise error


class TestFraming:
    def test_to_event(self):
        assert to_event(Fragment.content_of("Hi")) == {"type": "content", "content": "Hi"}
        assert to_event(Fragment.transcription("t"))["type"] == "transcription"

    def test_format_sse(self):
        framed = format_sse({"type": "content", "content": "héllo"})
        assert framed.startswith("data: ")
        assert framed.endswith("\n\n")
        assert json.loads(framed[len("data: "):]) == {"type": "content", "content": "héllo"}


class TestStreamEvents:
    @pytest.mark.asyncio
    async def test_ends_with_done(self):
        events = await collect(
            stream_events(fragments_from([Fragment.content_of("a"), Fragment.system("s")]))
        )

        assert events == [
            {"type": "content", "content": "a"},
            {"type": "system", "content": "s"},
            {"type": "done", "content": ""},
        ]

    @pytest.mark.asyncio
    async def test_source_exception_becomes_error_event(self):
        events = await collect(
            stream_events(
                fragments_from([Fragment.content_of("a")], error=RuntimeError("kaput"))
            )
        )

        assert events[0] == {"type": "content", "content": "a"}
        assert events[-1]["type"] == "error"
        assert "kaput" in events[-1]["content"]

    @pytest.mark.asyncio
    async def test_heartbeats_while_work_is_slow(self):
        events = await collect(
            stream_events(
                fragments_from([Fragment.content_of("late")], delay=0.35),
                heartbeat_interval=0.1,
            )
        )

        heartbeats = [e for e in events if e["type"] == "heartbeat"]
        assert len(heartbeats) >= 2
        assert events[-2] == {"type": "content", "content": "late"}
        assert events[-1]["type"] == "done"

    @pytest.mark.asyncio
    async def test_closing_stops_the_source(self):
        closed = asyncio.Event()

        async def endless():
            try:
                while True:
                    await asyncio.sleep(0.01)
                    yield Fragment.content_of("tick")
            finally:
                closed.set()

        events = stream_events(endless(), heartbeat_interval=10)
        assert (await events.__anext__())["type"] == "content"
        await events.aclose()

        await asyncio.wait_for(closed.wait(), timeout=1)
