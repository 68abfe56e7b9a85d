"""Tests for the event stream (iter) and its SSE rendering."""

import json

import pytest

from switchboard.events import RawResponseEvent, RunCompleteEvent, RunItemEvent
from switchboard.message import user
from switchboard.runner import Runner
from switchboard.sse import sse_generator

from tests.conftest import FakeTransport, openai_text_body, openai_tool_body


def _tool_then_text():
    return FakeTransport(
        openai_tool_body([("web_search", {"query": "rust"}, "call_1")],
                         text="Let me check. ", usage=(10, 3)),
        openai_text_body("Found ", "it.", usage=(20, 4)),
    )


# ---------------------------------------------------------------------------
# Runner.iter()
# ---------------------------------------------------------------------------

class TestRunnerIter:
    @pytest.mark.asyncio
    async def test_text_response_events(self, openai_settings):
        runner = Runner(transport=FakeTransport(openai_text_body("Hello!")))

        events = [e async for e in runner.iter([user("hi")], openai_settings)]

        assert [type(e) for e in events] == [RawResponseEvent, RunItemEvent, RunCompleteEvent]
        assert events[0].content == "Hello!"
        assert events[1].name == "round_complete"
        assert events[1].data == {"round": 1, "tool_calls": 0}
        assert events[-1].result.content == "Hello!"

    @pytest.mark.asyncio
    async def test_tool_round_events(self, openai_settings, weather_tool):
        runner = Runner(transport=_tool_then_text())

        events = [e async for e in runner.iter([user("rust?")], openai_settings, [weather_tool])]

        kinds = [
            e.name if isinstance(e, RunItemEvent) else type(e).__name__
            for e in events
        ]
        assert kinds == [
            "RawResponseEvent",
            "round_complete",
            "tool_call",
            "RawResponseEvent",
            "RawResponseEvent",
            "round_complete",
            "RunCompleteEvent",
        ]
        tool_event = events[2]
        assert tool_event.data["tool_name"] == "web_search"
        assert tool_event.data["call_id"] == "call_1"
        assert tool_event.data["arguments"] == {"query": "rust"}
        assert tool_event.data["output"] == "results for rust"
        assert tool_event.data["is_error"] is False

    @pytest.mark.asyncio
    async def test_raw_events_match_final_content(self, openai_settings, weather_tool):
        runner = Runner(transport=_tool_then_text())

        events = [e async for e in runner.iter([user("rust?")], openai_settings, [weather_tool])]

        streamed = "".join(e.content for e in events if isinstance(e, RawResponseEvent))
        assert streamed == events[-1].result.content == "Let me check. Found it."

    @pytest.mark.asyncio
    async def test_degraded_event(self, openai_settings, weather_tool, network_error):
        transport = FakeTransport(
            openai_tool_body([("web_search", {"query": "rust"}, "call_1")]),
            network_error,
        )
        runner = Runner(transport=transport)

        events = [e async for e in runner.iter([user("rust?")], openai_settings, [weather_tool])]

        degraded = [e for e in events if isinstance(e, RunItemEvent) and e.name == "degraded"]
        assert len(degraded) == 1
        assert degraded[0].data["round"] == 2
        assert degraded[0].data["status_code"] is None
        assert isinstance(events[-1], RunCompleteEvent)

    @pytest.mark.asyncio
    async def test_run_matches_iter(self, openai_settings):
        runner = Runner(transport=FakeTransport(openai_text_body("a", "b")))
        result = await runner.run([user("hi")], openai_settings)
        assert result.content == "ab"


# ---------------------------------------------------------------------------
# sse_generator
# ---------------------------------------------------------------------------

class TestSSEGenerator:
    @pytest.mark.asyncio
    async def test_sse_format(self, openai_settings):
        runner = Runner(transport=FakeTransport(openai_text_body("Hi", usage=(3, 1))))

        chunks = [c async for c in sse_generator(runner.iter([user("hi")], openai_settings))]

        assert chunks[0] == 'event: RawResponseEvent\ndata: {"content": "Hi"}\n\n'
        assert chunks[1].startswith("event: RunItemEvent\n")
        assert chunks[-1] == "event: done\ndata: {}\n\n"

        complete = chunks[-2]
        assert complete.startswith("event: RunCompleteEvent\n")
        payload = json.loads(complete.split("data: ", 1)[1])
        assert payload["content"] == "Hi"
        assert payload["rounds"] == 1
        assert payload["usage"] == {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}

    @pytest.mark.asyncio
    async def test_tool_call_event_serializes(self, openai_settings, weather_tool):
        runner = Runner(transport=_tool_then_text())

        chunks = [
            c async for c in sse_generator(
                runner.iter([user("rust?")], openai_settings, [weather_tool])
            )
        ]

        tool_chunk = next(c for c in chunks if '"name": "tool_call"' in c)
        data = json.loads(tool_chunk.split("data: ", 1)[1])
        assert data["data"]["output"] == "results for rust"
