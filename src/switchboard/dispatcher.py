"""Concurrent execution of the tool calls requested in one round."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from switchboard.instrumentation import record_error, tool_span
from switchboard.streaming import ToolCall
from switchboard.textcalls import ERROR_RESPONSE_TOOL
from switchboard.tools import ToolNotFound, ToolRegistry, ToolTimeout

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 30.0


class ToolErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    INVALID_ARGUMENT = "invalid_argument"
    RATE_LIMIT = "rate_limit"
    UNAUTHORIZED = "unauthorized"
    GENERIC = "generic"


@dataclass
class ToolOutcome:
    """Result of executing a single tool call."""

    call: ToolCall
    success: bool
    output: str
    kind: ToolErrorKind | None = None
    execution_time_ms: float = 0.0


_KEYWORDS = (
    (ToolErrorKind.TIMEOUT, ("timed out", "timeout")),
    (ToolErrorKind.NOT_FOUND, ("not found", "no such tool", "unknown tool")),
    (ToolErrorKind.RATE_LIMIT, ("rate limit", "too many requests", "429")),
    (ToolErrorKind.UNAUTHORIZED, ("unauthorized", "forbidden", "401", "403", "permission denied")),
    (ToolErrorKind.NETWORK, ("network", "connection", "econnrefused", "unreachable", "dns")),
    (ToolErrorKind.INVALID_ARGUMENT, ("invalid argument", "invalid parameter", "missing required",
                                      "unexpected keyword argument", "required positional argument")),
)


def categorize_error(exc: BaseException) -> ToolErrorKind:
    if isinstance(exc, (ToolTimeout, asyncio.TimeoutError)):
        return ToolErrorKind.TIMEOUT
    if isinstance(exc, ToolNotFound):
        return ToolErrorKind.NOT_FOUND
    text = " ".join(str(e).lower() for e in (exc, exc.__cause__) if e is not None)
    for kind, needles in _KEYWORDS:
        if any(n in text for n in needles):
            return kind
    if isinstance(exc.__cause__ or exc, (TypeError, ValueError)):
        return ToolErrorKind.INVALID_ARGUMENT
    return ToolErrorKind.GENERIC


def format_tool_error(name: str, kind: ToolErrorKind, exc: BaseException | None = None) -> str:
    """A message the model can act on, rather than a raw traceback line."""
    detail = str(exc) if exc is not None else ""
    if kind is ToolErrorKind.TIMEOUT:
        return f"{name} timed out. The operation took too long to complete."
    if kind is ToolErrorKind.NOT_FOUND:
        return f"{name} is not available. Check the tool name against the available tools."
    if kind is ToolErrorKind.NETWORK:
        return f"Network error while executing {name}. Check connectivity and try again."
    if kind is ToolErrorKind.INVALID_ARGUMENT:
        return f"Invalid arguments for {name}: {detail}"
    if kind is ToolErrorKind.RATE_LIMIT:
        return f"{name} was rate limited. Wait a moment before trying again."
    if kind is ToolErrorKind.UNAUTHORIZED:
        return f"{name} was denied access. Its credentials or permissions need attention."
    return f"{name} execution failed: {detail}"


class ToolDispatcher:
    """Runs a round's tool calls concurrently against a registry.

    Every call settles on its own: a failure, a timeout or an unknown
    name becomes that call's error result and never cancels siblings.

    Args:
        registry: Where tools are listed and executed.
        provider_id: Passed to ``list_available_tools`` so registries can
            tailor the toolset per back-end.
        timeout: Per-call limit in seconds.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        provider_id: str,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
    ):
        self.registry = registry
        self.provider_id = provider_id
        self.timeout = timeout

    async def dispatch(self, calls: list[ToolCall]) -> list[ToolOutcome]:
        """Execute *calls* and return one outcome per call, in order."""
        if not calls:
            return []
        available = {s.name for s in self.registry.list_available_tools(self.provider_id)}
        outcomes = await asyncio.gather(*(self._execute_one(c, available) for c in calls))
        succeeded = sum(o.success for o in outcomes)
        logger.info(f"Executed {len(outcomes)} tool call(s): {succeeded} succeeded")
        return list(outcomes)

    async def _execute_one(self, call: ToolCall, available: set[str]) -> ToolOutcome:
        if call.name == ERROR_RESPONSE_TOOL:
            message = str(call.arguments.get("error", "Unknown tool requested."))
            return self._settle(call, message, ToolErrorKind.NOT_FOUND, 0.0)

        if call.name not in available:
            logger.warning(f"Tool not found: {call.name}")
            message = format_tool_error(call.name, ToolErrorKind.NOT_FOUND)
            return self._settle(call, message, ToolErrorKind.NOT_FOUND, 0.0)

        logger.info(f"Calling {call.name} with {call.arguments}")
        async with tool_span(call.name, call.id) as span:
            started = time.perf_counter()
            try:
                output = await asyncio.wait_for(
                    self.registry.execute(call.name, call.arguments), timeout=self.timeout,
                )
            except asyncio.TimeoutError as e:
                elapsed = (time.perf_counter() - started) * 1000
                logger.warning(f"Tool {call.name} timed out after {self.timeout:g}s")
                record_error(span, e)
                message = format_tool_error(call.name, ToolErrorKind.TIMEOUT)
                return self._settle(call, message, ToolErrorKind.TIMEOUT, elapsed)
            except Exception as e:
                elapsed = (time.perf_counter() - started) * 1000
                kind = categorize_error(e)
                logger.error(f"Tool {call.name} raised: {e}")
                record_error(span, e)
                return self._settle(call, format_tool_error(call.name, kind, e), kind, elapsed)

        elapsed = (time.perf_counter() - started) * 1000
        if not isinstance(output, str):
            output = str(output)
        call.result = output
        call.execution_time_ms = elapsed
        return ToolOutcome(call=call, success=True, output=output, execution_time_ms=elapsed)

    @staticmethod
    def _settle(call: ToolCall, message: str, kind: ToolErrorKind, elapsed: float) -> ToolOutcome:
        call.error = message
        call.execution_time_ms = elapsed
        return ToolOutcome(
            call=call, success=False, output=message, kind=kind, execution_time_ms=elapsed,
        )


def summarize_outcomes(outcomes: list[ToolOutcome], preview: int = 200) -> str:
    """Plain-text digest of a round's tool results."""
    if not outcomes:
        return "No tools were executed."
    ok = [o for o in outcomes if o.success]
    failed = [o for o in outcomes if not o.success]
    lines = [f"Executed {len(outcomes)} tool(s): {len(ok)} successful, {len(failed)} failed."]
    if ok:
        lines.append("\nSuccessful executions:")
        for o in ok:
            text = o.output if len(o.output) <= preview else o.output[:preview] + "..."
            lines.append(f"- {o.call.name}: {text}")
    if failed:
        lines.append("\nFailed executions:")
        for o in failed:
            lines.append(f"- {o.call.name}: {o.output}")
    return "\n".join(lines)
