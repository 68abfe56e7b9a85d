"""Static capability records for every supported back-end.

A :class:`ProviderDescriptor` is pure data: which wire protocol the
back-end speaks, how tools must be declared to it, and the limits the
request translator has to respect.  The table is loaded once at import
time and never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class WireApi(str, Enum):
    OPENAI_CHAT = "openai-chat"
    ANTHROPIC_MESSAGES = "anthropic-messages"
    GEMINI_GENERATE = "gemini-generate"
    OLLAMA_CHAT = "ollama-chat"


class ToolSchemaDialect(str, Enum):
    OPENAI = "openai"
    ANTHROPIC_CUSTOM = "anthropic-custom"
    GEMINI_FUNCTIONS = "gemini-functions"
    ADAPTIVE = "adaptive"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Capabilities and limits of one LLM back-end.

    ``max_output_tokens`` is an ordered table of ``(model_family,
    ceiling)`` pairs; the first family that occurs in the model name
    wins, otherwise ``default_max_output_tokens`` applies (``None``
    meaning unbounded).
    """

    id: str
    name: str
    api: WireApi
    base_url: str
    tool_schema_dialect: ToolSchemaDialect
    max_tool_name_length: int | None = 64
    supports_structured_tools: bool = True
    supports_streaming: bool = True
    supports_vision: bool = False
    requires_api_key: bool = True
    api_key_prefix: str | None = None
    max_output_tokens: tuple[tuple[str, int], ...] = ()
    default_max_output_tokens: int | None = None
    max_system_prompt_chars: int | None = None
    reports_stream_usage: bool = True
    is_local: bool = False


# Model name fragments that never accept a tool schema.
LEGACY_COMPLETION_MODELS = (
    "text-davinci",
    "text-curie",
    "text-babbage",
    "text-ada",
    "code-davinci",
    "gpt-3.5-turbo-instruct",
)

EMBEDDING_MARKERS = ("embed", "embedding")

# Families known to handle native tool calling on adaptive back-ends.
ADAPTIVE_TOOL_FAMILIES = (
    "llama3.1",
    "llama3.2",
    "llama3.3",
    "llama4",
    "qwen2.5",
    "qwen3",
    "mistral-nemo",
    "mistral-small",
    "mistral-large",
    "mistral",
    "mixtral",
    "command-r",
    "hermes3",
    "firefunction",
    "granite3",
    "smollm2",
    "nemotron",
)


PROVIDERS: dict[str, ProviderDescriptor] = {
    d.id: d
    for d in (
        ProviderDescriptor(
            id="openai",
            name="OpenAI",
            api=WireApi.OPENAI_CHAT,
            base_url="https://api.openai.com/v1",
            tool_schema_dialect=ToolSchemaDialect.OPENAI,
            supports_vision=True,
            api_key_prefix="sk-",
            max_output_tokens=(
                ("gpt-4o-mini", 16384),
                ("gpt-4o", 16384),
                ("gpt-4-turbo", 4096),
                ("gpt-3.5-turbo", 4096),
            ),
        ),
        ProviderDescriptor(
            id="anthropic",
            name="Anthropic",
            api=WireApi.ANTHROPIC_MESSAGES,
            base_url="https://api.anthropic.com/v1",
            tool_schema_dialect=ToolSchemaDialect.ANTHROPIC_CUSTOM,
            supports_vision=True,
            api_key_prefix="sk-ant-",
            max_output_tokens=(
                ("claude-3-5-haiku", 8192),
                ("claude-3-5-sonnet", 8192),
                ("claude-3-7-sonnet", 64000),
                ("claude-sonnet-4", 64000),
                ("claude-opus-4", 32000),
                ("claude-3-opus", 4096),
                ("claude-3-sonnet", 4096),
                ("claude-3-haiku", 4096),
            ),
            default_max_output_tokens=4096,
        ),
        ProviderDescriptor(
            id="gemini",
            name="Google Gemini",
            api=WireApi.GEMINI_GENERATE,
            base_url="https://generativelanguage.googleapis.com/v1beta",
            tool_schema_dialect=ToolSchemaDialect.GEMINI_FUNCTIONS,
            max_tool_name_length=64,
            supports_vision=True,
            max_output_tokens=(("gemini-1.5", 8192), ("gemini-2", 8192)),
        ),
        ProviderDescriptor(
            id="mistral",
            name="Mistral AI",
            api=WireApi.OPENAI_CHAT,
            base_url="https://api.mistral.ai/v1",
            tool_schema_dialect=ToolSchemaDialect.OPENAI,
            supports_vision=True,
        ),
        ProviderDescriptor(
            id="deepseek",
            name="DeepSeek",
            api=WireApi.OPENAI_CHAT,
            base_url="https://api.deepseek.com/v1",
            tool_schema_dialect=ToolSchemaDialect.OPENAI,
            supports_structured_tools=False,
            default_max_output_tokens=8192,
        ),
        ProviderDescriptor(
            id="lmstudio",
            name="LM Studio",
            api=WireApi.OPENAI_CHAT,
            base_url="http://localhost:1234/v1",
            tool_schema_dialect=ToolSchemaDialect.OPENAI,
            supports_structured_tools=False,
            requires_api_key=False,
            reports_stream_usage=False,
            is_local=True,
        ),
        ProviderDescriptor(
            id="ollama",
            name="Ollama",
            api=WireApi.OLLAMA_CHAT,
            base_url="http://localhost:11434",
            tool_schema_dialect=ToolSchemaDialect.ADAPTIVE,
            max_tool_name_length=None,
            supports_vision=True,
            requires_api_key=False,
            is_local=True,
        ),
        ProviderDescriptor(
            id="openrouter",
            name="OpenRouter",
            api=WireApi.OPENAI_CHAT,
            base_url="https://openrouter.ai/api/v1",
            tool_schema_dialect=ToolSchemaDialect.OPENAI,
            supports_vision=True,
        ),
        ProviderDescriptor(
            id="requesty",
            name="Requesty",
            api=WireApi.OPENAI_CHAT,
            base_url="https://router.requesty.ai/v1",
            tool_schema_dialect=ToolSchemaDialect.OPENAI,
            supports_vision=True,
        ),
        ProviderDescriptor(
            id="llamacpp",
            name="llama.cpp",
            api=WireApi.OPENAI_CHAT,
            base_url="http://localhost:8080/v1",
            tool_schema_dialect=ToolSchemaDialect.OPENAI,
            supports_structured_tools=False,
            requires_api_key=False,
            reports_stream_usage=False,
            is_local=True,
        ),
    )
}


def get_descriptor(provider_id: str) -> ProviderDescriptor:
    """Return the descriptor registered under *provider_id*.

    Raises:
        KeyError: If no provider with that id exists.
    """
    try:
        return PROVIDERS[provider_id]
    except KeyError:
        known = ", ".join(sorted(PROVIDERS))
        raise KeyError(
            f"Unknown provider '{provider_id}'. Known providers: {known}"
        ) from None


def structured_tools_enabled(
    descriptor: ProviderDescriptor, model: str
) -> bool:
    """Whether *model* on *descriptor* gets native tool schemas.

    Embedding and legacy completion models never do.  On adaptive
    back-ends only known tool-capable families do; everything else
    falls back to text-based tool calling.
    """
    name = model.lower()
    if any(marker in name for marker in EMBEDDING_MARKERS):
        return False
    if any(name.startswith(legacy) for legacy in LEGACY_COMPLETION_MODELS):
        return False
    if descriptor.tool_schema_dialect is ToolSchemaDialect.ADAPTIVE:
        return any(family in name for family in ADAPTIVE_TOOL_FAMILIES)
    return descriptor.supports_structured_tools


def output_token_ceiling(
    descriptor: ProviderDescriptor, model: str
) -> int | None:
    name = model.lower()
    for family, ceiling in descriptor.max_output_tokens:
        if family in name:
            return ceiling
    return descriptor.default_max_output_tokens


def clamp_max_tokens(
    descriptor: ProviderDescriptor, model: str, requested: int
) -> int:
    """Clamp *requested* to the model's output-token ceiling."""
    ceiling = output_token_ceiling(descriptor, model)
    if ceiling is None:
        return requested
    return min(requested, ceiling)
