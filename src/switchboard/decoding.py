"""Turn raw provider byte streams into :class:`ProviderEvent` objects.

Decoding happens in two layers.  :class:`FrameDecoder` splits bytes
into complete frames (server-sent ``data:`` lines or newline-delimited
JSON) and never decodes a partial line, so frames and multi-byte
characters may be split across network reads at any point.  A
per-protocol frame parser then maps each JSON frame onto the shared
event vocabulary.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from switchboard.descriptor import WireApi
from switchboard.errors import RequestCancelled, TransportError
from switchboard.streaming import (
    ProviderEvent,
    StreamEnd,
    TextDelta,
    ToolCallComplete,
    ToolCallDelta,
    UsageUpdate,
)
from switchboard.transport import CancellationToken

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class FrameDecoder:
    """Incremental splitter for ``sse`` or ``ndjson`` framed streams."""

    def __init__(self, framing: str = "sse"):
        if framing not in ("sse", "ndjson"):
            raise ValueError(f"Unknown framing: {framing}")
        self.framing = framing
        self._buffer = b""

    def feed(self, data: bytes) -> list[str]:
        """Buffer *data* and return the payloads of every complete line."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        return [p for p in (self._payload(line) for line in lines) if p is not None]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""
        rest, self._buffer = self._buffer, b""
        payload = self._payload(rest)
        return [payload] if payload is not None else []

    def _payload(self, raw: bytes) -> str | None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        if self.framing == "ndjson":
            return line.strip() or None
        if not line.startswith("data:"):
            # event names, comments and blank separators carry nothing we need
            return None
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        return payload if payload.strip() else None


# ----------------------------------------------------------------------
# Frame parsers
# ----------------------------------------------------------------------

class OpenAIFrameParser:
    def parse(self, frame: dict) -> list[ProviderEvent]:
        events: list[ProviderEvent] = []
        choices = frame.get("choices") or []
        if choices:
            delta = choices[0].get("delta") or {}
            if delta.get("content"):
                events.append(TextDelta(text=delta["content"]))
            for i, tc in enumerate(delta.get("tool_calls") or []):
                fn = tc.get("function") or {}
                events.append(ToolCallDelta(
                    index=tc.get("index", i),
                    id_fragment=tc.get("id"),
                    name_fragment=fn.get("name"),
                    args_fragment=fn.get("arguments"),
                ))
        usage = frame.get("usage")
        if usage:
            events.append(UsageUpdate(
                prompt_tokens=usage.get("prompt_tokens"),
                completion_tokens=usage.get("completion_tokens"),
            ))
        return events


class AnthropicFrameParser:
    def __init__(self) -> None:
        self._tool_blocks: set[int] = set()

    def parse(self, frame: dict) -> list[ProviderEvent]:
        kind = frame.get("type")
        index = frame.get("index", 0)
        if kind == "content_block_start":
            block = frame.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._tool_blocks.add(index)
                initial = block.get("input")
                return [ToolCallDelta(
                    index=index,
                    id_fragment=block.get("id"),
                    name_fragment=block.get("name"),
                    args_fragment=json.dumps(initial) if initial else None,
                )]
            if block.get("type") == "text" and block.get("text"):
                return [TextDelta(text=block["text"])]
        elif kind == "content_block_delta":
            delta = frame.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [TextDelta(text=delta["text"])]
            if delta.get("type") == "input_json_delta":
                return [ToolCallDelta(index=index, args_fragment=delta.get("partial_json", ""))]
        elif kind == "content_block_stop":
            if index in self._tool_blocks:
                return [ToolCallComplete(index=index)]
        elif kind == "message_start":
            usage = (frame.get("message") or {}).get("usage") or {}
            if usage:
                return [UsageUpdate(
                    prompt_tokens=usage.get("input_tokens"),
                    completion_tokens=usage.get("output_tokens"),
                )]
        elif kind == "message_delta":
            usage = frame.get("usage") or {}
            if usage:
                return [UsageUpdate(
                    prompt_tokens=usage.get("input_tokens"),
                    completion_tokens=usage.get("output_tokens"),
                )]
        elif kind == "message_stop":
            return [StreamEnd()]
        elif kind == "error":
            error = frame.get("error") or {}
            raise TransportError(
                f"Anthropic stream error: {error.get('type', 'error')}: {error.get('message', '')}"
            )
        return []


class GeminiFrameParser:
    def __init__(self) -> None:
        self._next_index = 0

    def parse(self, frame: dict) -> list[ProviderEvent]:
        events: list[ProviderEvent] = []
        if "error" in frame:
            error = frame["error"]
            raise TransportError(
                f"Gemini error: {error.get('message', error)}",
                status_code=error.get("code"),
            )
        for candidate in (frame.get("candidates") or [])[:1]:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("text"):
                    events.append(TextDelta(text=part["text"]))
                elif "functionCall" in part:
                    call = part["functionCall"]
                    index = self._next_index
                    self._next_index += 1
                    events.append(ToolCallDelta(
                        index=index,
                        id_fragment=call.get("id"),
                        name_fragment=call.get("name"),
                        args_fragment=json.dumps(call.get("args") or {}),
                    ))
                    events.append(ToolCallComplete(index=index))
        usage = frame.get("usageMetadata")
        if usage:
            events.append(UsageUpdate(
                prompt_tokens=usage.get("promptTokenCount"),
                completion_tokens=usage.get("candidatesTokenCount"),
            ))
        return events


class OllamaFrameParser:
    def __init__(self) -> None:
        self._next_index = 0

    def parse(self, frame: dict) -> list[ProviderEvent]:
        if frame.get("error"):
            raise TransportError(f"Ollama error: {frame['error']}")
        events: list[ProviderEvent] = []
        message = frame.get("message") or {}
        if message.get("content"):
            events.append(TextDelta(text=message["content"]))
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            arguments = fn.get("arguments")
            index = self._next_index
            self._next_index += 1
            events.append(ToolCallDelta(
                index=index,
                id_fragment=tc.get("id"),
                name_fragment=fn.get("name"),
                args_fragment=arguments if isinstance(arguments, str) else json.dumps(arguments or {}),
            ))
            events.append(ToolCallComplete(index=index))
        if frame.get("done"):
            if "prompt_eval_count" in frame or "eval_count" in frame:
                events.append(UsageUpdate(
                    prompt_tokens=frame.get("prompt_eval_count"),
                    completion_tokens=frame.get("eval_count"),
                ))
            events.append(StreamEnd(finish_reason=frame.get("done_reason")))
        return events


def frame_parser(api: WireApi):
    return {
        WireApi.OPENAI_CHAT: OpenAIFrameParser,
        WireApi.ANTHROPIC_MESSAGES: AnthropicFrameParser,
        WireApi.GEMINI_GENERATE: GeminiFrameParser,
        WireApi.OLLAMA_CHAT: OllamaFrameParser,
    }[api]()


def framing_for(api: WireApi) -> str:
    return "ndjson" if api is WireApi.OLLAMA_CHAT else "sse"


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------

async def decode_stream(
    chunks: AsyncIterator[bytes],
    api: WireApi,
    cancel: CancellationToken | None = None,
) -> AsyncIterator[ProviderEvent]:
    """Decode a provider byte stream into events, ending with one StreamEnd.

    Malformed frames are logged and skipped.  Each read races
    *cancel*, so a stalled stream still aborts promptly.
    """
    decoder = FrameDecoder(framing_for(api))
    parser = frame_parser(api)
    ended = False

    def handle(payload: str) -> list[ProviderEvent]:
        nonlocal ended
        if payload.strip() == DONE_SENTINEL:
            ended = True
            return []
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping malformed {api.value} frame ({e}): {payload[:200]!r}")
            return []
        if not isinstance(frame, dict):
            logger.warning(f"Skipping non-object {api.value} frame: {payload[:200]!r}")
            return []
        events = parser.parse(frame)
        if any(isinstance(e, StreamEnd) for e in events):
            ended = True
            events = [e for e in events if not isinstance(e, StreamEnd)]
        return events

    iterator = chunks.__aiter__()
    try:
        while not ended:
            chunk = await _next_chunk(iterator, cancel)
            if chunk is None:
                break
            for payload in decoder.feed(chunk):
                for event in handle(payload):
                    yield event
                if ended:
                    break
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    if cancel is not None and cancel.cancelled:
        raise RequestCancelled("Request cancelled while streaming")
    if not ended:
        for payload in decoder.flush():
            for event in handle(payload):
                yield event
    yield StreamEnd()


async def _anext(iterator: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _next_chunk(
    iterator: AsyncIterator[bytes],
    cancel: CancellationToken | None,
) -> bytes | None:
    """The next chunk, ``None`` at end of stream.

    With a token, the read races ``cancel.wait()`` so a stalled stream
    still aborts as soon as the token fires.
    """
    if cancel is None:
        return await _anext(iterator)
    if cancel.cancelled:
        raise RequestCancelled("Request cancelled while streaming")

    read = asyncio.create_task(_anext(iterator))
    stop = asyncio.create_task(cancel.wait())
    try:
        await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if cancel.cancelled or not read.done():
            read.cancel()
            await asyncio.gather(read, stop, return_exceptions=True)
    if cancel.cancelled:
        raise RequestCancelled("Request cancelled while streaming")
    return read.result()


def parse_response(api: WireApi, body: dict) -> list[ProviderEvent]:
    """Map a buffered, non-streaming response body onto stream events."""
    events: list[ProviderEvent] = []
    if api is WireApi.OPENAI_CHAT:
        choices = body.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        if message.get("content"):
            events.append(TextDelta(text=message["content"]))
        for i, tc in enumerate(message.get("tool_calls") or []):
            fn = tc.get("function") or {}
            events.append(ToolCallDelta(
                index=i,
                id_fragment=tc.get("id"),
                name_fragment=fn.get("name"),
                args_fragment=fn.get("arguments"),
            ))
            events.append(ToolCallComplete(index=i))
        usage = body.get("usage")
        if usage:
            events.append(UsageUpdate(
                prompt_tokens=usage.get("prompt_tokens"),
                completion_tokens=usage.get("completion_tokens"),
            ))
    elif api is WireApi.ANTHROPIC_MESSAGES:
        for i, block in enumerate(body.get("content") or []):
            if block.get("type") == "text" and block.get("text"):
                events.append(TextDelta(text=block["text"]))
            elif block.get("type") == "tool_use":
                events.append(ToolCallDelta(
                    index=i,
                    id_fragment=block.get("id"),
                    name_fragment=block.get("name"),
                    args_fragment=json.dumps(block.get("input") or {}),
                ))
                events.append(ToolCallComplete(index=i))
        usage = body.get("usage")
        if usage:
            events.append(UsageUpdate(
                prompt_tokens=usage.get("input_tokens"),
                completion_tokens=usage.get("output_tokens"),
            ))
    else:
        events.extend(e for e in frame_parser(api).parse(body) if not isinstance(e, StreamEnd))
    events.append(StreamEnd())
    return events
