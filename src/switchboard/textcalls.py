"""Recover tool calls from free-form model text.

Used for back-ends that have no native tool calling, and as a second
look at structured rounds whose text contains invocation syntax anyway.
Grammars are tried in a fixed priority order and the first one that
yields calls wins; results from different grammars are never merged.

1. tagged blocks      ``<web_search><query>weather</query></web_search>``
2. directives         ``to=functions.web_search json{"query": "weather"}``
3. ``tool_call`` JSON ``{"tool_call": {"name": ..., "arguments": {...}}}``
4. best effort        ``web_search(query="weather")`` and friends
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable

from switchboard.jsonutil import coerce_scalar, extract_balanced, loads_object, repair_object
from switchboard.streaming import ToolCall, dedupe_calls

logger = logging.getLogger(__name__)

ERROR_RESPONSE_TOOL = "error_response"

_THINK_CLOSED = re.compile(r"<(think|thinking)>[\s\S]*?</\1>", re.IGNORECASE)
_THINK_OPEN = re.compile(r"<(?:think|thinking)>[\s\S]*$", re.IGNORECASE)
_TEMPLATE_TOKEN = re.compile(
    r"<\|[^|>]*\|>(?:\s*(?:assistant|user|system|analysis|final)\b)?",
    re.IGNORECASE,
)

_TAG_BLOCK = re.compile(r"<([a-zA-Z_][\w-]*)\b[^>]*>([\s\S]*?)</\1>")

_NESTED_DIRECTIVE = re.compile(r"(?:commentary\s+)?to=functions\s+json\s*")
_DIRECTIVE = re.compile(
    r"(?:commentary\s+)?to=(?:functions\.)?([a-zA-Z_][\w-]*)\s*(?:<\|constrain\|>)?\s*json\s*"
)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TOOL_CALL_KEY = re.compile(r'\{\s*"tool_call"\s*:')

_KEY_VALUE = re.compile(
    r"""([A-Za-z_]\w*)\s*[=:]\s*("(?:[^"\\]|\\.)*"|'[^']*'|\[[^\]]*\]|[^,\s)]+)"""
)


def strip_thinking(text: str) -> str:
    """Remove reasoning blocks and chat-template tokens from *text*."""
    text = _THINK_CLOSED.sub("", text)
    text = _THINK_OPEN.sub("", text)
    return _TEMPLATE_TOKEN.sub(" ", text)


# ----------------------------------------------------------------------
# Argument helpers
# ----------------------------------------------------------------------

def _coerce_value(raw: str):
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        return raw[1:-1]
    if raw.startswith("["):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return [coerce_scalar(v.strip().strip("\"'")) for v in raw[1:-1].split(",") if v.strip()]
    if "," in raw:
        return [coerce_scalar(v.strip()) for v in raw.split(",") if v.strip()]
    return coerce_scalar(raw)


def parse_arguments_from_text(text: str) -> dict:
    """Read arguments written as JSON or as ``key=value`` pairs."""
    stripped = text.strip()
    if not stripped:
        return {}
    if stripped.startswith("{"):
        return loads_object(stripped) or repair_object(stripped) or {}
    pairs = {key: _coerce_value(value) for key, value in _KEY_VALUE.findall(stripped)}
    if pairs:
        return pairs
    return {"input": _coerce_value(stripped)}


def _directive_arguments(obj: dict) -> dict:
    if obj == {"": ""}:
        return {}
    return obj


# ----------------------------------------------------------------------
# Grammars
# ----------------------------------------------------------------------

def _parse_tagged(text: str, known: set[str]) -> list[ToolCall]:
    calls = []
    for match in _TAG_BLOCK.finditer(text):
        name, body = match.group(1), match.group(2)
        if name not in known:
            # wrappers such as <tool_call> may still hold known blocks
            calls.extend(_parse_tagged(body, known))
            continue
        arguments: dict = {}
        for child in _TAG_BLOCK.finditer(body):
            key, value = child.group(1), child.group(2).strip()
            if key in arguments:
                existing = arguments[key]
                arguments[key] = existing + [value] if isinstance(existing, list) else [existing, value]
            else:
                arguments[key] = value
        if not arguments:
            inner = body.strip()
            if inner.startswith("{"):
                arguments = loads_object(inner) or repair_object(inner) or {}
            elif inner:
                arguments = {"input": inner}
        calls.append(ToolCall(name=name, arguments=arguments))
    return calls


def _unknown_tool_response(name: str, known: set[str]) -> list[ToolCall]:
    available = ", ".join(sorted(known)) or "none"
    return [ToolCall(
        name=ERROR_RESPONSE_TOOL,
        arguments={
            "error": (
                f'Tool "{name}" does not exist. Available tools include: {available}. '
                "Please use an exact tool name from the available list."
            ),
        },
    )]


def _parse_directives(text: str, known: set[str]) -> list[ToolCall]:
    calls = []
    for match in _NESTED_DIRECTIVE.finditer(text):
        if not text[match.end():].startswith("{"):
            continue
        found = extract_balanced(text, match.end())
        if found is None:
            continue
        obj = loads_object(found[0]) or repair_object(found[0])
        if not obj or not isinstance(obj.get("name"), str):
            continue
        name = obj["name"].removeprefix("functions.")
        if name not in known:
            return _unknown_tool_response(name, known)
        arguments = obj.get("arguments") or {}
        if isinstance(arguments, str):
            arguments = loads_object(arguments) or {}
        calls.append(ToolCall(name=name, arguments=_directive_arguments(arguments)))
    if calls:
        return calls

    for match in _DIRECTIVE.finditer(text):
        name = match.group(1)
        if name == "functions":
            continue
        if not text[match.end():].startswith("{"):
            continue
        found = extract_balanced(text, match.end())
        if found is None:
            continue
        if name not in known:
            return _unknown_tool_response(name, known)
        obj = loads_object(found[0]) or repair_object(found[0]) or {}
        calls.append(ToolCall(name=name, arguments=_directive_arguments(obj)))
    return calls


def _tool_call_objects(text: str) -> Iterable[dict]:
    for match in _TOOL_CALL_KEY.finditer(text):
        found = extract_balanced(text, match.start())
        if found is None:
            continue
        obj = loads_object(found[0])
        if obj is not None:
            yield obj


def _parse_tool_call_json(text: str) -> list[ToolCall]:
    calls = []
    sources = [m.group(1) for m in _FENCED_BLOCK.finditer(text)]
    sources.append(_FENCED_BLOCK.sub("", text))
    for source in sources:
        for obj in _tool_call_objects(source):
            spec = obj.get("tool_call")
            if not isinstance(spec, dict) or not isinstance(spec.get("name"), str):
                continue
            arguments = spec.get("arguments") or {}
            if isinstance(arguments, str):
                arguments = loads_object(arguments) or parse_arguments_from_text(arguments)
            calls.append(ToolCall(name=spec["name"], arguments=arguments))
    return calls


def _parse_best_effort(text: str, known: set[str]) -> list[ToolCall]:
    calls = []
    for name in sorted(known):
        escaped = re.escape(name)
        call_syntax = re.search(rf"\b{escaped}\(([^)]*)\)", text)
        if call_syntax:
            calls.append(ToolCall(name=name, arguments=parse_arguments_from_text(call_syntax.group(1))))
            continue
        assignment = re.search(rf"[\"']?\b{escaped}[\"']?\s*[:=]\s*(\{{[^}}]*\}})", text)
        if assignment:
            calls.append(ToolCall(name=name, arguments=parse_arguments_from_text(assignment.group(1))))
            continue
        mention = re.search(rf"\b{escaped}\b", text)
        if mention:
            window_start = max(0, mention.start() - 100)
            window = text[window_start:mention.end() + 200]
            found = extract_balanced(window)
            obj = loads_object(found[0]) if found else None
            if obj is not None:
                calls.append(ToolCall(name=name, arguments=obj))
    return calls


def parse_tool_calls(
    text: str,
    known_tools: Iterable[str],
    *,
    best_effort: bool = True,
) -> list[ToolCall]:
    """Extract tool calls from *text*, first matching grammar wins.

    Returned calls have no id; the caller assigns them.  With
    ``best_effort=False`` only the three explicit grammars are tried,
    which is what a structured round's secondary pass wants.
    """
    known = set(known_tools)
    cleaned = strip_thinking(text)
    if not cleaned.strip():
        return []

    grammars = [
        ("tagged", lambda: _parse_tagged(cleaned, known)),
        ("directive", lambda: _parse_directives(cleaned, known)),
        ("tool_call json", lambda: _parse_tool_call_json(cleaned)),
    ]
    if best_effort:
        grammars.append(("best effort", lambda: _parse_best_effort(cleaned, known)))

    for label, grammar in grammars:
        calls = grammar()
        if calls:
            logger.info(f"Parsed {len(calls)} tool call(s) from text using {label} grammar")
            return dedupe_calls(calls)
    return []


def has_invocation_syntax(text: str, known_tools: Iterable[str]) -> bool:
    """Cheap pre-check before running the parser on structured rounds."""
    if "to=" in text or '"tool_call"' in text:
        return True
    return any(f"<{name}" in text for name in known_tools)
