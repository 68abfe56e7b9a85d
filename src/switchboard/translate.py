"""Build provider-native requests from provider-neutral turns.

One pure function per wire protocol; :func:`build_request` picks the
right one from the descriptor.  Nothing here performs I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from switchboard.descriptor import (
    ProviderDescriptor,
    WireApi,
    clamp_max_tokens,
    structured_tools_enabled,
)
from switchboard.errors import InvalidCredential
from switchboard.message import (
    ChatTurn,
    DocumentPart,
    ImagePart,
    MessageRole,
    TextPart,
    ToolResultPart,
)
from switchboard.prompts import (
    FOLLOW_UP_PROMPT,
    GENERIC_DEFAULT_PROMPT,
    render_tool_request_for_text,
    render_tool_results_for_text,
    select_system_prompt,
    tool_usage_prompt,
)
from switchboard.settings import Settings
from switchboard.tools import ToolSpec, sanitize_tool_name

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class ProviderRequest:
    """Everything a transport needs to send one round to a back-end.

    ``tool_names`` maps the names sent on the wire back to registry
    names, so calls the model makes can be resolved.
    """

    provider_id: str
    api: WireApi
    model: str
    url: str
    headers: dict[str, str]
    body: dict[str, Any]
    stream: bool = True
    structured_tools: bool = False
    tool_names: dict[str, str] = field(default_factory=dict)
    api_key: str | None = field(default=None, repr=False)
    base_url: str = ""

    def original_tool_name(self, wire_name: str) -> str:
        return self.tool_names.get(wire_name, wire_name)


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def check_credentials(descriptor: ProviderDescriptor, api_key: str | None) -> None:
    """Raise :class:`InvalidCredential` if *api_key* cannot work."""
    if not descriptor.requires_api_key:
        return
    if not api_key or not api_key.strip():
        raise InvalidCredential(descriptor.id, "API key is required")
    if descriptor.api_key_prefix and not api_key.startswith(descriptor.api_key_prefix):
        raise InvalidCredential(
            descriptor.id,
            f"API key must start with '{descriptor.api_key_prefix}'",
        )


def build_request(
    descriptor: ProviderDescriptor,
    settings: Settings,
    turns: list[ChatTurn],
    tools: list[ToolSpec] | None = None,
    *,
    stream: bool | None = None,
    follow_up: bool = False,
) -> ProviderRequest:
    """Translate one round into *descriptor*'s native request shape."""
    check_credentials(descriptor, settings.api_key)
    stream = settings.stream if stream is None else stream
    stream = stream and descriptor.supports_streaming
    tools = tools or []

    structured = bool(
        settings.tool_calling_enabled
        and tools
        and structured_tools_enabled(descriptor, settings.model)
    )
    text_tools = bool(settings.tool_calling_enabled and tools and not structured)

    system_prompt = _system_prompt(descriptor, settings, turns, follow_up)
    if text_tools:
        system_prompt += tool_usage_prompt(tools)
    if descriptor.max_system_prompt_chars and len(system_prompt) > descriptor.max_system_prompt_chars:
        logger.warning(
            f"System prompt truncated from {len(system_prompt)} to "
            f"{descriptor.max_system_prompt_chars} chars for {descriptor.id}"
        )
        system_prompt = system_prompt[:descriptor.max_system_prompt_chars]

    conversation = [t for t in turns if t.role is not MessageRole.SYSTEM]
    if not structured:
        conversation = flatten_tool_traffic(conversation)

    wire_names = _wire_names(descriptor, tools) if structured else {}
    max_tokens = clamp_max_tokens(descriptor, settings.model, settings.max_tokens)
    base_url = (settings.base_url or descriptor.base_url).rstrip("/")

    encoder = _ENCODERS[descriptor.api]
    url, headers, body = encoder(
        descriptor=descriptor,
        settings=settings,
        base_url=base_url,
        system_prompt=system_prompt,
        turns=conversation,
        tools=tools if structured else [],
        wire_names=wire_names,
        max_tokens=max_tokens,
        stream=stream,
    )
    headers.setdefault("Content-Type", "application/json")

    logger.debug(
        f"Built {descriptor.api.value} request for {settings.model}: "
        f"{len(conversation)} turns, tools={'structured' if structured else 'text' if text_tools else 'off'}"
    )
    return ProviderRequest(
        provider_id=descriptor.id,
        api=descriptor.api,
        model=settings.model,
        url=url,
        headers=headers,
        body=body,
        stream=stream,
        structured_tools=structured,
        tool_names={wire: name for name, wire in wire_names.items()},
        api_key=settings.api_key,
        base_url=base_url,
    )


def _system_prompt(
    descriptor: ProviderDescriptor,
    settings: Settings,
    turns: list[ChatTurn],
    follow_up: bool,
) -> str:
    requested = next(
        (t.text for t in reversed(turns) if t.role is MessageRole.SYSTEM),
        settings.system_prompt,
    )
    custom = bool(requested and requested.strip() and requested.strip() != GENERIC_DEFAULT_PROMPT)
    if follow_up and not custom:
        return FOLLOW_UP_PROMPT
    return select_system_prompt(descriptor.id, requested)


def _wire_names(descriptor: ProviderDescriptor, tools: list[ToolSpec]) -> dict[str, str]:
    """Registry name -> name sent on the wire, unique per request."""
    mapping: dict[str, str] = {}
    used: set[str] = set()
    for spec in tools:
        wire = sanitize_tool_name(spec.name, descriptor)
        candidate, n = wire, 2
        while candidate in used:
            suffix = f"_{n}"
            limit = descriptor.max_tool_name_length
            candidate = (wire[:limit - len(suffix)] if limit else wire) + suffix
            n += 1
        used.add(candidate)
        mapping[spec.name] = candidate
    return mapping


def flatten_tool_traffic(turns: list[ChatTurn]) -> list[ChatTurn]:
    """Rewrite tool calls and results as plain text turns.

    Back-ends without structured tools reject ``tool`` roles, so earlier
    calls become tagged blocks in the assistant text and their results
    become a user turn.
    """
    flattened: list[ChatTurn] = []
    last_question = ""
    for turn in turns:
        if turn.role is MessageRole.USER:
            last_question = turn.text or last_question
            flattened.append(turn)
        elif turn.role is MessageRole.ASSISTANT and turn.tool_calls:
            blocks = [render_tool_request_for_text(c.name, c.arguments) for c in turn.tool_calls]
            text = "\n".join(filter(None, [turn.text, *blocks]))
            flattened.append(ChatTurn(role=MessageRole.ASSISTANT, content=text))
        elif turn.role is MessageRole.TOOL:
            results = [
                (p.name or p.tool_call_id, p.text)
                for p in turn.parts
                if isinstance(p, ToolResultPart)
            ]
            flattened.append(ChatTurn(
                role=MessageRole.USER,
                content=render_tool_results_for_text(results, last_question),
            ))
        else:
            flattened.append(turn)
    return flattened


# ----------------------------------------------------------------------
# OpenAI-compatible chat completions
# ----------------------------------------------------------------------

def _openai_content(turn: ChatTurn) -> str | list[dict]:
    if isinstance(turn.content, str):
        return turn.content
    if all(isinstance(p, TextPart) for p in turn.content):
        return turn.text
    parts: list[dict] = []
    for p in turn.content:
        if isinstance(p, TextPart):
            parts.append({"type": "text", "text": p.text})
        elif isinstance(p, ImagePart):
            parts.append({"type": "image_url", "image_url": {"url": p.data_url}})
        elif isinstance(p, DocumentPart):
            parts.append({
                "type": "file",
                "file": {
                    "filename": p.name,
                    "file_data": f"data:{p.mime_type};base64,{p.base64}",
                },
            })
    return parts


def _encode_openai(*, descriptor, settings, base_url, system_prompt, turns, tools,
                   wire_names, max_tokens, stream):
    messages: list[dict] = [{"role": "system", "content": system_prompt}]
    for turn in turns:
        if turn.role is MessageRole.TOOL:
            for p in turn.parts:
                if isinstance(p, ToolResultPart):
                    messages.append({
                        "role": "tool", "tool_call_id": p.tool_call_id, "content": p.text,
                    })
            continue
        if turn.is_empty():
            continue
        message: dict[str, Any] = {
            "role": turn.role.value,
            "content": _openai_content(turn),
        }
        if turn.tool_calls:
            message["content"] = turn.text or None
            message["tool_calls"] = []
            for c in turn.tool_calls:
                wire = c.to_openai()
                wire["function"]["name"] = wire_names.get(c.name, c.name)
                message["tool_calls"].append(wire)
        messages.append(message)

    body: dict[str, Any] = {
        "model": settings.model,
        "messages": messages,
        "temperature": settings.temperature,
        "max_tokens": max_tokens,
        "stream": stream,
    }
    if stream and descriptor.reports_stream_usage:
        body["stream_options"] = {"include_usage": True}
    if tools:
        body["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": wire_names[t.name],
                    "description": t.description,
                    "parameters": t.json_schema,
                },
            }
            for t in tools
        ]
        body["tool_choice"] = "auto"

    headers = {}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"
    return f"{base_url}/chat/completions", headers, body


# ----------------------------------------------------------------------
# Anthropic messages
# ----------------------------------------------------------------------

def _anthropic_blocks(turn: ChatTurn, wire_names: dict[str, str]) -> list[dict]:
    blocks: list[dict] = []
    for p in turn.parts:
        if isinstance(p, TextPart):
            if p.text:
                blocks.append({"type": "text", "text": p.text})
        elif isinstance(p, (ImagePart, DocumentPart)):
            blocks.append({
                "type": "image" if isinstance(p, ImagePart) else "document",
                "source": {"type": "base64", "media_type": p.mime_type, "data": p.base64},
            })
        elif isinstance(p, ToolResultPart):
            block = {"type": "tool_result", "tool_use_id": p.tool_call_id, "content": p.text}
            if p.is_error:
                block["is_error"] = True
            blocks.append(block)
    for c in turn.tool_calls:
        blocks.append({
            "type": "tool_use",
            "id": c.id,
            "name": wire_names.get(c.name, c.name),
            "input": c.arguments,
        })
    return blocks


def _encode_anthropic(*, descriptor, settings, base_url, system_prompt, turns, tools,
                      wire_names, max_tokens, stream):
    messages: list[dict] = []
    for turn in turns:
        blocks = _anthropic_blocks(turn, wire_names)
        if not blocks:
            continue
        role = "assistant" if turn.role is MessageRole.ASSISTANT else "user"
        messages.append({"role": role, "content": blocks})

    body: dict[str, Any] = {
        "model": settings.model,
        "max_tokens": max_tokens,
        "temperature": settings.temperature,
        "system": system_prompt,
        "messages": messages,
        "stream": stream,
    }
    if tools:
        body["tools"] = [
            {"name": wire_names[t.name], "description": t.description, "input_schema": t.json_schema}
            for t in tools
        ]
        body["tool_choice"] = {"type": "auto"}

    headers = {
        "x-api-key": settings.api_key or "",
        "anthropic-version": ANTHROPIC_VERSION,
    }
    return f"{base_url}/messages", headers, body


# ----------------------------------------------------------------------
# Gemini generateContent
# ----------------------------------------------------------------------

GEMINI_SUPPORTED_SCHEMA_KEYS = frozenset({
    "type", "description", "properties", "required", "items", "enum",
    "minimum", "maximum",
})

GEMINI_UNSUPPORTED_SCHEMA_KEYS = frozenset({
    "$ref", "$defs", "$schema", "$id", "$comment", "exclusiveMinimum",
    "exclusiveMaximum", "multipleOf", "minLength", "maxLength", "pattern",
    "format", "minItems", "maxItems", "uniqueItems", "contains",
    "minProperties", "maxProperties", "additionalProperties",
    "patternProperties", "dependencies", "propertyNames", "const", "if",
    "then", "else", "allOf", "anyOf", "oneOf", "not",
})


def _uses_unsupported(schema: Any) -> bool:
    if isinstance(schema, dict):
        for key, value in schema.items():
            if key in GEMINI_UNSUPPORTED_SCHEMA_KEYS:
                return True
            if key == "properties" and isinstance(value, dict):
                if any(_uses_unsupported(v) for v in value.values()):
                    return True
            elif _uses_unsupported(value):
                return True
    elif isinstance(schema, list):
        return any(_uses_unsupported(v) for v in schema)
    return False


def _keep_supported(schema: dict) -> dict:
    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in GEMINI_SUPPORTED_SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {
                name: _keep_supported(prop) if isinstance(prop, dict) else prop
                for name, prop in value.items()
            }
        elif key == "items" and isinstance(value, dict):
            cleaned[key] = _keep_supported(value)
        else:
            cleaned[key] = value
    return cleaned


def clean_gemini_schema(schema: dict | None, description: str = "") -> dict:
    """Reduce a JSON schema to the subset Gemini function declarations accept.

    Schemas using any unsupported construct are replaced wholesale by an
    empty object schema rather than being partially rewritten.
    """
    if not schema:
        return {"type": "object", "properties": {}, "required": []}
    if _uses_unsupported(schema):
        logger.info("Tool schema uses constructs Gemini rejects; sending an empty object schema")
        return {"type": "object", "description": description, "properties": {}, "required": []}
    return _keep_supported(schema)


def _gemini_parts(turn: ChatTurn, wire_names: dict[str, str]) -> list[dict]:
    parts: list[dict] = []
    for p in turn.parts:
        if isinstance(p, TextPart):
            if p.text:
                parts.append({"text": p.text})
        elif isinstance(p, ImagePart):
            parts.append({"inline_data": {"mime_type": p.mime_type, "data": p.base64}})
        elif isinstance(p, DocumentPart):
            parts.append({"text": f"[Document: {p.name}]"})
        elif isinstance(p, ToolResultPart):
            parts.append({
                "functionResponse": {
                    "name": wire_names.get(p.name, p.name),
                    "response": {"content": p.text},
                },
            })
    for c in turn.tool_calls:
        parts.append({"functionCall": {"name": wire_names.get(c.name, c.name), "args": c.arguments}})
    return parts


def _encode_gemini(*, descriptor, settings, base_url, system_prompt, turns, tools,
                   wire_names, max_tokens, stream):
    contents: list[dict] = []
    for turn in turns:
        parts = _gemini_parts(turn, wire_names)
        if not parts:
            continue
        role = "model" if turn.role is MessageRole.ASSISTANT else "user"
        contents.append({"role": role, "parts": parts})

    body: dict[str, Any] = {
        "contents": contents,
        "generationConfig": {
            "temperature": settings.temperature,
            "maxOutputTokens": max_tokens,
        },
    }
    if system_prompt:
        body["system_instruction"] = {"parts": [{"text": system_prompt}]}
    if tools:
        body["tools"] = [{
            "functionDeclarations": [
                {
                    "name": wire_names[t.name],
                    "description": t.description,
                    "parameters": clean_gemini_schema(t.json_schema, t.description),
                }
                for t in tools
            ],
        }]

    method = "streamGenerateContent?alt=sse" if stream else "generateContent"
    headers = {"x-goog-api-key": settings.api_key or ""}
    return f"{base_url}/models/{settings.model}:{method}", headers, body


# ----------------------------------------------------------------------
# Ollama native chat
# ----------------------------------------------------------------------

def _encode_ollama(*, descriptor, settings, base_url, system_prompt, turns, tools,
                   wire_names, max_tokens, stream):
    messages: list[dict] = [{"role": "system", "content": system_prompt}]
    for turn in turns:
        if turn.role is MessageRole.TOOL:
            for p in turn.parts:
                if isinstance(p, ToolResultPart):
                    messages.append({
                        "role": "tool",
                        "content": p.text,
                        "tool_name": wire_names.get(p.name, p.name),
                    })
            continue
        if turn.is_empty():
            continue
        texts: list[str] = []
        images: list[str] = []
        for p in turn.parts:
            if isinstance(p, TextPart):
                texts.append(p.text)
            elif isinstance(p, ImagePart):
                images.append(p.base64)
            elif isinstance(p, DocumentPart):
                texts.append(f"[Document: {p.name}]")
        message: dict[str, Any] = {"role": turn.role.value, "content": "\n".join(texts)}
        if images:
            message["images"] = images
        if turn.tool_calls:
            message["tool_calls"] = [
                {"function": {"name": wire_names.get(c.name, c.name), "arguments": c.arguments}}
                for c in turn.tool_calls
            ]
        messages.append(message)

    body: dict[str, Any] = {
        "model": settings.model,
        "messages": messages,
        "stream": stream,
        "options": {"temperature": settings.temperature, "num_predict": max_tokens},
    }
    if tools:
        body["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": wire_names[t.name],
                    "description": t.description,
                    "parameters": t.json_schema,
                },
            }
            for t in tools
        ]
    headers = {}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"
    return f"{base_url}/api/chat", headers, body


_ENCODERS = {
    WireApi.OPENAI_CHAT: _encode_openai,
    WireApi.ANTHROPIC_MESSAGES: _encode_anthropic,
    WireApi.GEMINI_GENERATE: _encode_gemini,
    WireApi.OLLAMA_CHAT: _encode_ollama,
}


# ----------------------------------------------------------------------
# Native content back to parts
# ----------------------------------------------------------------------

def _split_data_url(url: str) -> tuple[str, str] | None:
    if not url.startswith("data:") or ";base64," not in url:
        return None
    header, data = url[5:].split(";base64,", 1)
    return header, data


def decode_content(api: WireApi, native: Any) -> list:
    """Convert a provider-native message content back into parts.

    *native* is what the matching encoder produced for one message: a
    string or part list (OpenAI), a block list (Anthropic), a part list
    (Gemini), or a message dict (Ollama).
    """
    if isinstance(native, str):
        return [TextPart(text=native)] if native else []

    parts: list = []
    if api is WireApi.OLLAMA_CHAT:
        if native.get("content"):
            parts.append(TextPart(text=native["content"]))
        for data in native.get("images") or []:
            parts.append(ImagePart(mime_type="image/png", base64=data))
        return parts

    for item in native:
        if api is WireApi.OPENAI_CHAT:
            kind = item.get("type")
            if kind == "text":
                parts.append(TextPart(text=item["text"]))
            elif kind == "image_url":
                split = _split_data_url(item["image_url"]["url"])
                if split:
                    parts.append(ImagePart(mime_type=split[0], base64=split[1]))
            elif kind == "file":
                split = _split_data_url(item["file"].get("file_data", ""))
                if split:
                    parts.append(DocumentPart(
                        name=item["file"].get("filename", "document"),
                        mime_type=split[0],
                        base64=split[1],
                    ))
        elif api is WireApi.ANTHROPIC_MESSAGES:
            kind = item.get("type")
            if kind == "text":
                parts.append(TextPart(text=item["text"]))
            elif kind == "image":
                src = item["source"]
                parts.append(ImagePart(mime_type=src["media_type"], base64=src["data"]))
            elif kind == "document":
                src = item["source"]
                parts.append(DocumentPart(name="document", mime_type=src["media_type"], base64=src["data"]))
            elif kind == "tool_result":
                parts.append(ToolResultPart(
                    tool_call_id=item["tool_use_id"],
                    text=item.get("content", ""),
                    is_error=item.get("is_error", False),
                ))
        elif api is WireApi.GEMINI_GENERATE:
            if "text" in item:
                parts.append(TextPart(text=item["text"]))
            elif "inline_data" in item:
                blob = item["inline_data"]
                parts.append(ImagePart(mime_type=blob["mime_type"], base64=blob["data"]))
    return parts
