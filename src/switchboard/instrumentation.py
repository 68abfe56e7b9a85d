"""Optional OpenTelemetry tracing for orchestration requests.

Call ``switchboard.instrument()`` once at startup to emit spans for
each orchestration, each provider round and each tool execution.
Requires ``opentelemetry-api``; without it every helper here is a no-op.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "switchboard") -> None:
    """Enable OpenTelemetry tracing.

    Configure a ``TracerProvider`` first; spans follow the GenAI
    semantic conventions (``gen_ai.*`` attributes)::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        import switchboard
        switchboard.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install switchboard[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be discarded. "
            "Set up a TracerProvider to export traces."
        )
    else:
        logger.info("switchboard instrumentation enabled")


def uninstrument() -> None:
    """Disable tracing; later requests emit no spans."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def orchestration_span(provider: str, model: str):
    """Wrap one ``orchestrate()`` call, covering every round."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"orchestrate {provider}",
        attributes={
            "gen_ai.operation.name": "invoke_agent",
            "gen_ai.provider.name": provider,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def completion_span(system: str, model: str, round_index: int = 1):
    """Wrap a single provider round in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
            "switchboard.round": round_index,
        },
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    """Wrap a tool execution in an ``execute_tool`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


def record_usage(span, usage, response_model: str | None = None):
    """Set token-usage and response-model attributes on a span."""
    if span is None or usage is None:
        return
    if getattr(usage, "prompt_tokens", None) is not None:
        span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
    if getattr(usage, "completion_tokens", None) is not None:
        span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)
    if response_model:
        span.set_attribute("gen_ai.response.model", response_model)


def record_error(span, exception: BaseException) -> None:
    """Record *exception* and mark the span as failed.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
