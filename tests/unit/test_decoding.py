import asyncio
import json

import pytest

from switchboard.decoding import FrameDecoder, decode_stream, parse_response
from switchboard.descriptor import WireApi
from switchboard.errors import RequestCancelled, TransportError
from switchboard.streaming import (
    StreamEnd,
    TextDelta,
    ToolCallAccumulator,
    ToolCallComplete,
    ToolCallDelta,
    UsageUpdate,
)
from switchboard.transport import CancellationToken
from tests.conftest import (
    ndjson,
    openai_text_frames,
    openai_tool_frames,
    openai_usage_frame,
    split_every,
    sse,
)


async def _chunks(parts):
    for part in parts:
        yield part


async def collect(parts, api, cancel=None):
    return [e async for e in decode_stream(_chunks(parts), api, cancel)]


def _text(events):
    return "".join(e.text for e in events if isinstance(e, TextDelta))


# ---------------------------------------------------------------------------
# FrameDecoder
# ---------------------------------------------------------------------------


class TestFrameDecoder:
    def test_sse_keeps_only_data_payloads(self):
        decoder = FrameDecoder("sse")
        frames = decoder.feed(b"event: ping\n: comment\ndata: {\"a\": 1}\n\ndata:[DONE]\n")
        assert frames == ['{"a": 1}', "[DONE]"]

    def test_partial_line_is_buffered(self):
        decoder = FrameDecoder("sse")
        assert decoder.feed(b"data: {\"a\"") == []
        assert decoder.feed(b": 1}\r\n") == ['{"a": 1}']

    def test_multibyte_character_split(self):
        decoder = FrameDecoder("ndjson")
        raw = '{"t": "日本"}\n'.encode("utf-8")
        assert decoder.feed(raw[:8]) == []
        assert decoder.feed(raw[8:]) == ['{"t": "日本"}']

    def test_flush_returns_unterminated_line(self):
        decoder = FrameDecoder("ndjson")
        assert decoder.feed(b'{"done": true}') == []
        assert decoder.flush() == ['{"done": true}']
        assert decoder.flush() == []

    def test_unknown_framing(self):
        with pytest.raises(ValueError):
            FrameDecoder("xml")


# ---------------------------------------------------------------------------
# Chunk-boundary independence
# ---------------------------------------------------------------------------


class TestBoundaryIndependence:
    BODY = sse(
        *openai_text_frames("Grüße ", "aus ", "東京 🙂"),
        *openai_tool_frames("web_search", {"query": "café"}, "call_a"),
        openai_usage_frame(12, 34),
        "[DONE]",
    )

    @pytest.mark.asyncio
    async def test_every_split_size_decodes_identically(self):
        reference = await collect([self.BODY], WireApi.OPENAI_CHAT)
        assert _text(reference) == "Grüße aus 東京 🙂"

        for size in range(1, len(self.BODY) + 1):
            events = await collect(split_every(self.BODY, size), WireApi.OPENAI_CHAT)
            assert events == reference, f"split size {size}"

    @pytest.mark.asyncio
    async def test_tool_call_reassembled(self):
        events = await collect(split_every(self.BODY, 3), WireApi.OPENAI_CHAT)
        acc = ToolCallAccumulator(round_index=1)
        for e in events:
            if isinstance(e, ToolCallDelta):
                acc.feed(e)
        calls = acc.finalize()

        assert [(c.id, c.name, c.arguments) for c in calls] == [
            ("call_a", "web_search", {"query": "café"}),
        ]
        assert UsageUpdate(prompt_tokens=12, completion_tokens=34) in events


# ---------------------------------------------------------------------------
# Stream handling
# ---------------------------------------------------------------------------


class TestDecodeStream:
    @pytest.mark.asyncio
    async def test_exactly_one_stream_end(self):
        events = await collect([sse(*openai_text_frames("a"), "[DONE]")], WireApi.OPENAI_CHAT)
        assert events == [TextDelta(text="a"), StreamEnd()]

    @pytest.mark.asyncio
    async def test_stream_end_without_sentinel(self):
        events = await collect([sse(*openai_text_frames("a"))], WireApi.OPENAI_CHAT)
        assert events[-1] == StreamEnd()
        assert sum(isinstance(e, StreamEnd) for e in events) == 1

    @pytest.mark.asyncio
    async def test_frames_after_done_ignored(self):
        body = sse(*openai_text_frames("a"), "[DONE]", *openai_text_frames("b"))
        events = await collect([body], WireApi.OPENAI_CHAT)
        assert _text(events) == "a"

    @pytest.mark.asyncio
    async def test_malformed_frames_skipped(self, caplog):
        body = b"data: {not json\n\n" + b"data: [1, 2]\n\n" + sse(*openai_text_frames("ok"), "[DONE]")
        events = await collect([body], WireApi.OPENAI_CHAT)

        assert events == [TextDelta(text="ok"), StreamEnd()]
        assert any("malformed" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_cancel_between_reads(self):
        token = CancellationToken()

        async def chunks():
            yield sse(*openai_text_frames("first"))
            token.cancel()
            yield sse(*openai_text_frames("second"))

        seen = []
        with pytest.raises(RequestCancelled):
            async for event in decode_stream(chunks(), WireApi.OPENAI_CHAT, token):
                seen.append(event)
        assert seen == [TextDelta(text="first")]

    @pytest.mark.asyncio
    async def test_cancel_interrupts_stalled_stream(self):
        token = CancellationToken()
        closed = asyncio.Event()

        async def stalled():
            try:
                yield sse(*openai_text_frames("first"))
                await asyncio.sleep(3600)
                yield b""
            finally:
                closed.set()

        seen = []

        async def consume():
            async for event in decode_stream(stalled(), WireApi.OPENAI_CHAT, token):
                seen.append(event)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        token.cancel()

        with pytest.raises(RequestCancelled):
            await asyncio.wait_for(task, timeout=1)
        assert seen == [TextDelta(text="first")]
        assert closed.is_set()


# ---------------------------------------------------------------------------
# Per-protocol parsers
# ---------------------------------------------------------------------------


class TestAnthropicStream:
    BODY = (
        b"event: message_start\n"
        + sse({"type": "message_start", "message": {"usage": {"input_tokens": 10, "output_tokens": 1}}})
        + b"event: content_block_start\n"
        + sse(
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1,
             "content_block": {"type": "tool_use", "id": "toolu_1", "name": "web_search", "input": {}}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": '{"query":'}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": ' "x"}'}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 20}},
            {"type": "message_stop"},
        )
    )

    @pytest.mark.asyncio
    async def test_events(self):
        events = await collect([self.BODY], WireApi.ANTHROPIC_MESSAGES)
        assert events == [
            UsageUpdate(prompt_tokens=10, completion_tokens=1),
            TextDelta(text="Hi"),
            ToolCallDelta(index=1, id_fragment="toolu_1", name_fragment="web_search"),
            ToolCallDelta(index=1, args_fragment='{"query":'),
            ToolCallDelta(index=1, args_fragment=' "x"}'),
            ToolCallComplete(index=1),
            UsageUpdate(prompt_tokens=None, completion_tokens=20),
            StreamEnd(),
        ]

    @pytest.mark.asyncio
    async def test_error_frame_raises(self):
        body = sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        with pytest.raises(TransportError, match="overloaded_error"):
            await collect([body], WireApi.ANTHROPIC_MESSAGES)


class TestGeminiStream:
    @pytest.mark.asyncio
    async def test_text_and_function_call(self):
        body = sse(
            {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
            {
                "candidates": [{"content": {"parts": [
                    {"functionCall": {"name": "web_search", "args": {"query": "x"}}},
                ]}}],
                "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 7},
            },
        )
        events = await collect([body], WireApi.GEMINI_GENERATE)
        assert events == [
            TextDelta(text="Hel"),
            ToolCallDelta(index=0, name_fragment="web_search", args_fragment='{"query": "x"}'),
            ToolCallComplete(index=0),
            UsageUpdate(prompt_tokens=5, completion_tokens=7),
            StreamEnd(),
        ]

    @pytest.mark.asyncio
    async def test_error_payload(self):
        body = sse({"error": {"code": 429, "message": "Resource exhausted"}})
        with pytest.raises(TransportError) as excinfo:
            await collect([body], WireApi.GEMINI_GENERATE)
        assert excinfo.value.status_code == 429


class TestOllamaStream:
    BODY = ndjson(
        {"message": {"role": "assistant", "content": "Hi"}, "done": False},
        {"message": {"content": "", "tool_calls": [
            {"function": {"name": "web_search", "arguments": {"query": "x"}}},
        ]}, "done": False},
        {"message": {"content": ""}, "done": True, "done_reason": "stop",
         "prompt_eval_count": 3, "eval_count": 4},
    )

    @pytest.mark.asyncio
    async def test_events(self):
        events = await collect(split_every(self.BODY, 7), WireApi.OLLAMA_CHAT)
        assert events == [
            TextDelta(text="Hi"),
            ToolCallDelta(index=0, name_fragment="web_search", args_fragment='{"query": "x"}'),
            ToolCallComplete(index=0),
            UsageUpdate(prompt_tokens=3, completion_tokens=4),
            StreamEnd(),
        ]

    @pytest.mark.asyncio
    async def test_unterminated_last_line(self):
        body = json.dumps({"message": {"content": "tail"}, "done": False}).encode()
        events = await collect([body], WireApi.OLLAMA_CHAT)
        assert events == [TextDelta(text="tail"), StreamEnd()]

    @pytest.mark.asyncio
    async def test_error_line(self):
        with pytest.raises(TransportError, match="model not found"):
            await collect([ndjson({"error": "model not found"})], WireApi.OLLAMA_CHAT)


# ---------------------------------------------------------------------------
# Buffered bodies
# ---------------------------------------------------------------------------


class TestParseResponse:
    def test_openai(self):
        body = {
            "choices": [{"message": {
                "content": "Let me check.",
                "tool_calls": [{"id": "c1", "type": "function",
                                "function": {"name": "web_search", "arguments": '{"query": "x"}'}}],
            }}],
            "usage": {"prompt_tokens": 8, "completion_tokens": 9},
        }
        assert parse_response(WireApi.OPENAI_CHAT, body) == [
            TextDelta(text="Let me check."),
            ToolCallDelta(index=0, id_fragment="c1", name_fragment="web_search",
                          args_fragment='{"query": "x"}'),
            ToolCallComplete(index=0),
            UsageUpdate(prompt_tokens=8, completion_tokens=9),
            StreamEnd(),
        ]

    def test_openai_without_choices(self):
        assert parse_response(WireApi.OPENAI_CHAT, {"choices": []}) == [StreamEnd()]

    def test_anthropic(self):
        body = {
            "content": [
                {"type": "text", "text": "Sure."},
                {"type": "tool_use", "id": "toolu_9", "name": "web_search", "input": {"query": "y"}},
            ],
            "usage": {"input_tokens": 4, "output_tokens": 6},
        }
        events = parse_response(WireApi.ANTHROPIC_MESSAGES, body)
        assert events[0] == TextDelta(text="Sure.")
        assert events[1] == ToolCallDelta(index=1, id_fragment="toolu_9", name_fragment="web_search",
                                          args_fragment='{"query": "y"}')
        assert events[-2:] == [UsageUpdate(prompt_tokens=4, completion_tokens=6), StreamEnd()]

    def test_ollama(self):
        body = {"message": {"content": "done"}, "done": True, "prompt_eval_count": 1, "eval_count": 2}
        assert parse_response(WireApi.OLLAMA_CHAT, body) == [
            TextDelta(text="done"),
            UsageUpdate(prompt_tokens=1, completion_tokens=2),
            StreamEnd(),
        ]
