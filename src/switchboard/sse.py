"""Server-Sent Events adapter for orchestration events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict, is_dataclass

from switchboard.events import RunCompleteEvent, StreamEvent


def _result_payload(result) -> str:
    if result is None or not is_dataclass(result):
        return "{}"
    payload = asdict(result)
    usage = getattr(result, "usage", None)
    if usage is not None:
        payload["usage"]["total_tokens"] = usage.total_tokens
    return json.dumps(payload, default=str)


async def sse_generator(
    event_stream: AsyncIterator[StreamEvent],
) -> AsyncIterator[str]:
    """Convert a StreamEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        event_type = type(event).__name__
        if isinstance(event, RunCompleteEvent):
            data = _result_payload(event.result)
        else:
            data = json.dumps(asdict(event), default=str)
        yield f"event: {event_type}\ndata: {data}\n\n"
    yield "event: done\ndata: {}\n\n"
