"""Fold the rounds of one request into a single :class:`OrchestrationResult`."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from switchboard.pricing import Cost, Usage, estimate_cost
from switchboard.streaming import ToolCall, UsageUpdate

logger = logging.getLogger(__name__)


@dataclass
class OrchestrationResult:
    """What the caller gets back from one orchestrated turn.

    ``content`` is exactly the concatenation of every text chunk that was
    forwarded while the request ran.  ``usage`` is ``None`` only when no
    round reported any token counts.
    """

    content: str = ""
    usage: Usage | None = None
    cost: Cost | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    rounds: int = 0


class ResultBuilder:
    """Accumulates text, usage and tool calls across follow-up rounds.

    Args:
        provider_id: Used for cost estimation.
        model: Used for cost estimation.
        on_text_chunk: Called synchronously, in order, with every chunk.
    """

    def __init__(
        self,
        provider_id: str,
        model: str,
        on_text_chunk: Callable[[str], None] | None = None,
    ):
        self.provider_id = provider_id
        self.model = model
        self.on_text_chunk = on_text_chunk
        self.chunks: list[str] = []
        self.rounds = 0
        self._usage: Usage | None = None
        self._round_prompt: int | None = None
        self._round_completion: int | None = None
        self._calls: dict[str, ToolCall] = {}

    def start_round(self) -> None:
        self.rounds += 1
        self._round_prompt = None
        self._round_completion = None

    def add_text(self, text: str) -> None:
        if not text:
            return
        self.chunks.append(text)
        if self.on_text_chunk is not None:
            self.on_text_chunk(text)

    def record_usage(self, update: UsageUpdate) -> None:
        """Keep the latest value of each counter within the current round."""
        if update.prompt_tokens is not None:
            self._round_prompt = update.prompt_tokens
        if update.completion_tokens is not None:
            self._round_completion = update.completion_tokens

    def end_round(self) -> None:
        if self._round_prompt is None and self._round_completion is None:
            return
        round_usage = Usage(
            prompt_tokens=self._round_prompt or 0,
            completion_tokens=self._round_completion or 0,
        )
        self._usage = round_usage if self._usage is None else self._usage + round_usage
        self._round_prompt = None
        self._round_completion = None

    def add_tool_calls(self, calls: list[ToolCall]) -> None:
        for call in calls:
            if call.id in self._calls:
                logger.debug(f"Tool call {call.id} already recorded")
                continue
            self._calls[call.id] = call

    @property
    def content(self) -> str:
        return "".join(self.chunks)

    def build(self) -> OrchestrationResult:
        return OrchestrationResult(
            content=self.content,
            usage=self._usage,
            cost=estimate_cost(self.provider_id, self.model, self._usage),
            tool_calls=list(self._calls.values()),
            rounds=self.rounds,
        )
