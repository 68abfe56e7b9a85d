import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from switchboard.decoding import decode_stream, parse_response
from switchboard.descriptor import ProviderDescriptor, get_descriptor
from switchboard.dispatcher import (
    DEFAULT_TOOL_TIMEOUT,
    ToolDispatcher,
    ToolOutcome,
    summarize_outcomes,
)
from switchboard.errors import RequestCancelled, RoundLimitExceeded, TransportError
from switchboard.events import RawResponseEvent, RunCompleteEvent, RunItemEvent, StreamEvent
from switchboard.instrumentation import (
    completion_span,
    orchestration_span,
    record_error,
    record_usage,
)
from switchboard.message import ChatTurn, assistant, tool_results
from switchboard.normalizer import OrchestrationResult, ResultBuilder
from switchboard.settings import Settings
from switchboard.streaming import (
    TextDelta,
    ToolCall,
    ToolCallAccumulator,
    ToolCallComplete,
    ToolCallDelta,
    UsageUpdate,
)
from switchboard.textcalls import has_invocation_syntax, parse_tool_calls
from switchboard.tools import FunctionToolRegistry, Tool, ToolRegistry, ToolSpec
from switchboard.translate import ProviderRequest, build_request
from switchboard.transport import CancellationToken, Transport, default_transport

logger = logging.getLogger(__name__)

MAX_ROUNDS = 5


@dataclass
class _RequestState:
    """Mutable state of one orchestration, never shared between requests."""

    descriptor: ProviderDescriptor
    settings: Settings
    conversation: list[ChatTurn]
    tools: list[ToolSpec]
    builder: ResultBuilder
    round: int = 0
    last_outcomes: list[ToolOutcome] = field(default_factory=list)


@dataclass
class _RoundResult:
    text: str = ""
    calls: list[ToolCall] = field(default_factory=list)


class Runner:
    """Drives the request / tool / follow-up loop for one chat turn.

    Each round builds a provider request from the growing conversation,
    streams and decodes the reply, forwards text as it arrives, then runs
    any requested tools and resubmits with their results.  The loop ends
    on a round without tool calls.  If the model still wants tools after
    ``max_rounds`` requests, :class:`RoundLimitExceeded` is raised.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        transport: How requests reach the back-end.  Defaults per
            provider (see :func:`default_transport`).
        max_rounds: Ceiling on provider requests per orchestration.
        tool_timeout: Per-call tool execution limit in seconds.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        max_rounds: int = MAX_ROUNDS,
        tool_timeout: float = DEFAULT_TOOL_TIMEOUT,
    ):
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.transport = transport
        self.max_rounds = max_rounds
        self.tool_timeout = tool_timeout

    async def run(
        self,
        turns: list[ChatTurn],
        settings: Settings,
        tools: list | None = None,
        *,
        registry: ToolRegistry | None = None,
        on_text_chunk: Callable[[str], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> OrchestrationResult:
        """Run to completion and return the normalized result."""
        result: OrchestrationResult | None = None
        async for event in self.iter(
            turns, settings, tools,
            registry=registry, on_text_chunk=on_text_chunk, cancel=cancel,
        ):
            if isinstance(event, RunCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting RunCompleteEvent")
        return result

    async def iter(
        self,
        turns: list[ChatTurn],
        settings: Settings,
        tools: list | None = None,
        *,
        registry: ToolRegistry | None = None,
        on_text_chunk: Callable[[str], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run the orchestration, yielding events as execution proceeds."""
        descriptor = get_descriptor(settings.provider)
        transport = self.transport or default_transport(descriptor)
        specs, registry = _resolve_tools(tools, registry, descriptor.id)
        state = _RequestState(
            descriptor=descriptor,
            settings=settings,
            conversation=list(turns),
            tools=specs,
            builder=ResultBuilder(descriptor.id, settings.model, on_text_chunk),
        )
        dispatcher = ToolDispatcher(registry, descriptor.id, timeout=self.tool_timeout)

        async with orchestration_span(descriptor.id, settings.model) as span:
            try:
                while True:
                    _check_cancel(cancel)
                    state.round += 1
                    state.builder.start_round()
                    request = build_request(
                        descriptor, settings, state.conversation, state.tools,
                        follow_up=state.round > 1,
                    )
                    outcome = _RoundResult()
                    try:
                        async for event in self._stream_round(request, transport, state, outcome, cancel):
                            yield event
                    except TransportError as e:
                        state.builder.end_round()
                        if state.round == 1:
                            raise
                        logger.warning(
                            f"Follow-up round {state.round} failed ({e}); "
                            "returning tool results summary"
                        )
                        summary = "\n\n" + summarize_outcomes(state.last_outcomes)
                        state.builder.add_text(summary)
                        yield RawResponseEvent(content=summary)
                        yield RunItemEvent.degraded(state.round, e)
                        break
                    state.builder.end_round()

                    yield RunItemEvent.round_complete(state.round, len(outcome.calls))
                    if not outcome.calls:
                        break
                    if state.round >= self.max_rounds:
                        logger.warning(
                            f"Model still requested {len(outcome.calls)} tool(s) "
                            f"after {self.max_rounds} rounds"
                        )
                        raise RoundLimitExceeded(self.max_rounds, partial=state.builder.build())

                    _check_cancel(cancel)
                    outcomes = await dispatcher.dispatch(outcome.calls)
                    state.last_outcomes = outcomes
                    state.builder.add_tool_calls(outcome.calls)
                    for o in outcomes:
                        yield RunItemEvent.tool_call(o)
                    state.conversation.append(assistant(outcome.text, outcome.calls))
                    state.conversation.append(tool_results(outcome.calls))
            except Exception as e:
                record_error(span, e)
                raise

            result = state.builder.build()
            record_usage(span, result.usage, settings.model)
        yield RunCompleteEvent(result=result)

    # ------------------------------------------------------------------
    # One provider round
    # ------------------------------------------------------------------

    async def _stream_round(
        self,
        request: ProviderRequest,
        transport: Transport,
        state: _RequestState,
        outcome: _RoundResult,
        cancel: CancellationToken | None,
    ) -> AsyncIterator[StreamEvent]:
        acc = ToolCallAccumulator(round_index=state.round)
        text_parts: list[str] = []

        async with completion_span(request.provider_id, request.model, state.round) as span:
            try:
                async with transport.open(request) as response:
                    if request.stream:
                        events = decode_stream(response.aiter_bytes(), request.api, cancel)
                    else:
                        events = _iterate(parse_response(request.api, json.loads(await response.aread())))
                    async for event in events:
                        if isinstance(event, TextDelta):
                            text_parts.append(event.text)
                            state.builder.add_text(event.text)
                            yield RawResponseEvent(content=event.text)
                        elif isinstance(event, ToolCallDelta):
                            acc.feed(event)
                        elif isinstance(event, ToolCallComplete):
                            acc.complete(event.index)
                        elif isinstance(event, UsageUpdate):
                            state.builder.record_usage(event)
            except (TransportError, RequestCancelled) as e:
                record_error(span, e)
                raise
            except json.JSONDecodeError as e:
                record_error(span, e)
                raise TransportError(f"{request.provider_id} returned a non-JSON body: {e}") from e

        outcome.text = "".join(text_parts)
        calls = acc.finalize()
        for call in calls:
            call.name = request.original_tool_name(call.name)
        if not calls:
            calls = self._calls_from_text(request, state, outcome.text)
        outcome.calls = calls

    def _calls_from_text(
        self, request: ProviderRequest, state: _RequestState, text: str,
    ) -> list[ToolCall]:
        if not (state.settings.tool_calling_enabled and state.tools and text):
            return []
        names = [t.name for t in state.tools]
        if request.structured_tools:
            if not has_invocation_syntax(text, names):
                return []
            calls = parse_tool_calls(text, names, best_effort=False)
        else:
            calls = parse_tool_calls(text, names)
        for i, call in enumerate(calls):
            call.id = f"call_{state.round}_{i}"
        return calls


async def _iterate(items):
    for item in items:
        yield item


def _check_cancel(cancel: CancellationToken | None) -> None:
    if cancel is not None and cancel.cancelled:
        raise RequestCancelled("Request cancelled")


def _resolve_tools(
    tools: list | None,
    registry: ToolRegistry | None,
    provider_id: str,
) -> tuple[list[ToolSpec], ToolRegistry]:
    """Normalise *tools* to specs and make sure a registry exists.

    Plain :class:`Tool` objects are registered in an in-process registry
    when the caller did not pass one.
    """
    if tools is None:
        if registry is None:
            return [], FunctionToolRegistry()
        return registry.list_available_tools(provider_id), registry

    callables = [t for t in tools if isinstance(t, Tool)]
    specs = [t.spec() if isinstance(t, Tool) else t for t in tools]
    if registry is None:
        registry = FunctionToolRegistry(callables)
    return specs, registry


async def orchestrate(
    turns: list[ChatTurn],
    tools: list | None,
    settings: Settings,
    on_text_chunk: Callable[[str], None] | None = None,
    *,
    registry: ToolRegistry | None = None,
    transport: Transport | None = None,
    cancel: CancellationToken | None = None,
    max_rounds: int = MAX_ROUNDS,
) -> OrchestrationResult:
    """Send one chat turn and return the normalized result.

    *tools* may hold :class:`ToolSpec` or :class:`Tool` objects; ``None``
    asks *registry* for its tools.  Every text chunk of every round is
    passed to *on_text_chunk* in order as it arrives.

    Raises:
        InvalidCredential: The provider's API key is missing or malformed.
        TransportError: The first round failed.
        RoundLimitExceeded: The model kept calling tools past *max_rounds*.
        RequestCancelled: *cancel* fired.
    """
    runner = Runner(transport=transport, max_rounds=max_rounds)
    return await runner.run(
        turns, settings, tools,
        registry=registry, on_text_chunk=on_text_chunk, cancel=cancel,
    )
