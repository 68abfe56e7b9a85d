"""Events emitted while an orchestration runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from switchboard.dispatcher import ToolOutcome
    from switchboard.errors import TransportError
    from switchboard.normalizer import OrchestrationResult

TOOL_CALL = "tool_call"
ROUND_COMPLETE = "round_complete"
DEGRADED = "degraded"


@dataclass
class StreamEvent:
    """Base for all run events."""


@dataclass
class RawResponseEvent(StreamEvent):
    """A text chunk from the provider, forwarded as soon as it is decoded."""

    content: str = ""


@dataclass
class RunItemEvent(StreamEvent):
    """A discrete step of the orchestration, named by ``name``.

    Build these with the constructors below so every payload of a given
    name carries the same keys.
    """

    name: str = ""
    data: dict = field(default_factory=dict)

    @classmethod
    def tool_call(cls, outcome: ToolOutcome) -> RunItemEvent:
        call = outcome.call
        return cls(name=TOOL_CALL, data={
            "tool_name": call.name,
            "call_id": call.id,
            "arguments": call.arguments,
            "output": outcome.output,
            "is_error": not outcome.success,
            "execution_time_ms": outcome.execution_time_ms,
        })

    @classmethod
    def round_complete(cls, round_index: int, tool_calls: int) -> RunItemEvent:
        return cls(name=ROUND_COMPLETE, data={"round": round_index, "tool_calls": tool_calls})

    @classmethod
    def degraded(cls, round_index: int, error: TransportError) -> RunItemEvent:
        """A follow-up round failed; the tool results were summarized instead."""
        return cls(name=DEGRADED, data={
            "round": round_index,
            "error": str(error),
            "status_code": error.status_code,
        })


@dataclass
class RunCompleteEvent(StreamEvent):
    """Final event, always the last one yielded."""

    result: OrchestrationResult | None = None
