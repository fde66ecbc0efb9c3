import asyncio
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Dict

from gemini_relay.schemas import Fragment

HEARTBEAT_INTERVAL = 30.0

_END = object()


def to_event(fragment: Fragment) -> Dict[str, str]:
    """Maps a fragment onto the `{type, content}` event sent to callers."""
    return {"type": fragment.type.value, "content": fragment.content}


def format_sse(event: Dict[str, Any]) -> str:
    """Frames one event as a server-sent-event `data:` block."""
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


async def stream_events(
    fragments: AsyncIterator[Fragment],
    heartbeat_interval: float = HEARTBEAT_INTERVAL,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Turns a fragment stream into caller events with a keepalive heartbeat.

    A `heartbeat` event is emitted every `heartbeat_interval` seconds while
    the work is still running. The stream ends with a `done` event, or with
    an `error` event if the fragment source raised. Closing this generator
    stops the heartbeat and the fragment source.
    """
    queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    async def pump():
        try:
            async for fragment in fragments:
                await queue.put(to_event(fragment))
            final = {"type": "done", "content": ""}
        except Exception as e:
            logging.error(f"An error occurred during the response stream: {e}")
            final = {
                "type": "error",
                "content": f"An unexpected error occurred during the stream: {e}",
            }
        finally:
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()
        await queue.put((_END, final))

    async def beat():
        while True:
            await asyncio.sleep(heartbeat_interval)
            await queue.put({"type": "heartbeat", "content": ""})

    pump_task = asyncio.create_task(pump())
    beat_task = asyncio.create_task(beat())
    try:
        while True:
            event = await queue.get()
            if isinstance(event, tuple) and event[0] is _END:
                yield event[1]
                return
            yield event
    finally:
        beat_task.cancel()
        pump_task.cancel()
        await asyncio.gather(beat_task, pump_task, return_exceptions=True)
