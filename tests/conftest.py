import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from switchboard.errors import TransportError
from switchboard.settings import Settings
from switchboard.tools import ToolNotFound, ToolSpec, tool


# ---------------------------------------------------------------------------
# Wire payload builders
# ---------------------------------------------------------------------------

def sse(*frames) -> bytes:
    """Encode frames as an SSE body; dict frames are JSON-serialized."""
    out = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame, ensure_ascii=False)
        out.append(f"data: {payload}\n\n")
    return "".join(out).encode("utf-8")


def ndjson(*frames) -> bytes:
    return "".join(json.dumps(f, ensure_ascii=False) + "\n" for f in frames).encode("utf-8")


def openai_text_frames(*texts: str) -> list[dict]:
    return [{"choices": [{"index": 0, "delta": {"content": t}}]} for t in texts]


def openai_tool_frames(
    name: str,
    args: dict,
    call_id: str = "call_1",
    index: int = 0,
) -> list[dict]:
    """Frames for one tool call, arguments split into two fragments."""
    raw = json.dumps(args)
    half = len(raw) // 2
    return [
        {"choices": [{"index": 0, "delta": {"tool_calls": [{
            "index": index, "id": call_id, "type": "function",
            "function": {"name": name, "arguments": raw[:half]},
        }]}}]},
        {"choices": [{"index": 0, "delta": {"tool_calls": [{
            "index": index, "function": {"arguments": raw[half:]},
        }]}}]},
    ]


def openai_usage_frame(prompt: int, completion: int) -> dict:
    return {"choices": [], "usage": {
        "prompt_tokens": prompt, "completion_tokens": completion,
        "total_tokens": prompt + completion,
    }}


def openai_text_body(*texts: str, usage: tuple[int, int] | None = None) -> bytes:
    frames = openai_text_frames(*texts)
    if usage:
        frames.append(openai_usage_frame(*usage))
    return sse(*frames, "[DONE]")


def openai_tool_body(
    calls: list[tuple[str, dict, str]],
    text: str = "",
    usage: tuple[int, int] | None = None,
) -> bytes:
    """SSE body requesting every ``(name, args, call_id)`` in *calls*."""
    frames = openai_text_frames(text) if text else []
    for index, (name, args, call_id) in enumerate(calls):
        frames.extend(openai_tool_frames(name, args, call_id, index))
    if usage:
        frames.append(openai_usage_frame(*usage))
    return sse(*frames, "[DONE]")


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, chunks: list[bytes], status_code: int = 200):
        self.status_code = status_code
        self._chunks = chunks

    async def aiter_bytes(self):
        for chunk in self._chunks:
            await asyncio.sleep(0)
            yield chunk

    async def aread(self) -> bytes:
        return b"".join(self._chunks)


class FakeTransport:
    """Transport that replays queued bodies. No network calls.

    Each queued item is a ``bytes`` body, a list of byte chunks, or an
    exception to raise when the request is opened.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    @asynccontextmanager
    async def open(self, request):
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("FakeTransport ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        chunks = [item] if isinstance(item, bytes) else list(item)
        yield FakeResponse(chunks)


class RepeatingTransport(FakeTransport):
    """Returns the same body for every request."""

    def __init__(self, body: bytes):
        super().__init__()
        self.body = body

    @asynccontextmanager
    async def open(self, request):
        self.requests.append(request)
        yield FakeResponse([self.body])


# ---------------------------------------------------------------------------
# Fake registry
# ---------------------------------------------------------------------------

class RecordingRegistry:
    """Registry over plain async/sync callables that logs every execution."""

    def __init__(self, handlers: dict | None = None, specs: list[ToolSpec] | None = None):
        self.handlers = dict(handlers or {})
        self.specs = specs
        self.executed: list[tuple[str, dict]] = []

    def list_available_tools(self, provider_id: str) -> list[ToolSpec]:
        if self.specs is not None:
            return list(self.specs)
        return [ToolSpec(name=n, description=f"{n} tool") for n in self.handlers]

    async def execute(self, name: str, arguments: dict) -> str:
        self.executed.append((name, arguments))
        handler = self.handlers.get(name)
        if handler is None:
            raise ToolNotFound(name)
        result = handler(**arguments)
        if asyncio.iscoroutine(result):
            result = await result
        return str(result)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def openai_settings():
    return Settings(provider="openai", model="gpt-4o", api_key="sk-test")


@pytest.fixture
def ollama_settings():
    return Settings(provider="ollama", model="llama3.1")


@pytest.fixture
def weather_tool():
    @tool
    def web_search(query: str):
        """Search the web.

        Args:
            query: What to look for.
        """
        return f"results for {query}"
    return web_search


@pytest.fixture
def network_error():
    return TransportError("Network error talking to openai: boom")
