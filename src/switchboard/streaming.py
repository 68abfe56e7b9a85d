"""Streaming primitives shared by every provider.

The decoder turns provider frames into :class:`ProviderEvent` objects.
The :class:`ToolCallAccumulator` reassembles tool calls whose names and
arguments arrive in fragments across multiple events.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from switchboard.jsonutil import loads_object, repair_object

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Provider events
# ----------------------------------------------------------------------

@dataclass
class ProviderEvent:
    """Base for all decoded stream events."""


@dataclass
class TextDelta(ProviderEvent):
    text: str = ""


@dataclass
class ToolCallDelta(ProviderEvent):
    """A fragment of a tool call, addressed by positional index."""

    index: int = 0
    id_fragment: str | None = None
    name_fragment: str | None = None
    args_fragment: str | None = None


@dataclass
class ToolCallComplete(ProviderEvent):
    index: int = 0


@dataclass
class UsageUpdate(ProviderEvent):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


@dataclass
class StreamEnd(ProviderEvent):
    finish_reason: str | None = None


# ----------------------------------------------------------------------
# Tool calls
# ----------------------------------------------------------------------

@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    Built up by the accumulator while streaming, then completed by the
    dispatcher with ``result`` or ``error`` and the execution latency.
    """

    id: str = ""
    name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    result: str | None = None
    error: str | None = None
    execution_time_ms: float | None = None
    parse_error: str | None = None

    def signature(self) -> tuple[str, str]:
        """Structural identity used for duplicate suppression."""
        return self.name, json.dumps(self.arguments, sort_keys=True, default=str)

    def to_openai(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments),
            },
        }


def parse_arguments(raw: str) -> tuple[dict[str, Any], str | None]:
    """Parse an accumulated argument buffer.

    Returns the arguments and a parse error message, if any.  An empty
    buffer means no arguments.
    """
    if not raw.strip():
        return {}, None
    parsed = loads_object(raw)
    if parsed is not None:
        return parsed, None
    error = f"could not parse tool arguments as a JSON object: {raw[:200]!r}"
    repaired = repair_object(raw)
    if repaired is not None:
        return repaired, error
    return {}, error


@dataclass
class _Pending:
    id: str = ""
    name: str = ""
    raw_arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    Args:
        round_index: Used to synthesize ids for calls the provider
            left unnamed.
    """

    def __init__(self, round_index: int = 0) -> None:
        self.round_index = round_index
        self._pending: dict[int, _Pending] = {}
        self._completed: dict[int, ToolCall] = {}

    def feed(self, delta: ToolCallDelta) -> None:
        if delta.index in self._completed:
            logger.warning(f"Ignoring fragment for completed tool call #{delta.index}")
            return
        pending = self._pending.setdefault(delta.index, _Pending())
        if delta.id_fragment and not pending.id:
            pending.id = delta.id_fragment
        if delta.name_fragment:
            # Some back-ends resend the full name on every chunk.
            if delta.name_fragment != pending.name:
                pending.name += delta.name_fragment
        if delta.args_fragment:
            pending.raw_arguments += delta.args_fragment

    def complete(self, index: int) -> ToolCall | None:
        """Freeze the call at *index*, parsing its argument buffer."""
        if index in self._completed:
            return self._completed[index]
        pending = self._pending.pop(index, None)
        if pending is None:
            return None
        arguments, parse_error = parse_arguments(pending.raw_arguments)
        if parse_error:
            logger.warning(f"Tool call {pending.name or '#' + str(index)}: {parse_error}")
        call = ToolCall(
            id=pending.id or f"call_{self.round_index}_{index}",
            name=pending.name,
            arguments=arguments,
            parse_error=parse_error,
        )
        self._completed[index] = call
        return call

    def finalize(self) -> list[ToolCall]:
        """Return completed tool calls in index order.

        Open calls are completed, nameless calls are dropped, and exact
        structural duplicates collapse onto their first occurrence.
        """
        for index in list(self._pending):
            self.complete(index)
        calls: list[ToolCall] = []
        for index in sorted(self._completed):
            call = self._completed[index]
            if not call.name:
                logger.warning(f"Dropping tool call #{index} without a name")
                continue
            calls.append(call)
        unique = dedupe_calls(calls)
        if len(unique) < len(calls):
            logger.info(f"Suppressed {len(calls) - len(unique)} duplicate tool call(s)")
        return unique


def dedupe_calls(calls: list[ToolCall]) -> list[ToolCall]:
    """Drop structural duplicates, keeping the first occurrence."""
    seen: set[tuple[str, str]] = set()
    unique = []
    for call in calls:
        key = call.signature()
        if key not in seen:
            seen.add(key)
            unique.append(call)
    return unique
