"""Lenient JSON helpers for model-produced argument strings."""

from __future__ import annotations

import json
import re
from typing import Any

_KEY_VALUE_PATTERNS = (
    re.compile(r'"([A-Za-z_][\w-]*)"\s*:\s*"((?:[^"\\]|\\.)*)"'),
    re.compile(r'"([A-Za-z_][\w-]*)"\s*:\s*(-?\d+(?:\.\d+)?|true|false|null)'),
)


def extract_balanced(text: str, start: int = 0) -> tuple[str, int] | None:
    """Return the first balanced ``{...}`` object at or after *start*.

    Braces inside string literals are ignored.  Returns the object text
    and the index just past it, or ``None`` when no object closes.
    """
    begin = text.find("{", start)
    while begin != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(begin, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[begin:i + 1], i + 1
        begin = text.find("{", begin + 1)
    return None


def loads_object(text: str) -> dict | None:
    """Parse *text* as a JSON object, or return ``None``."""
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def _close_truncated(text: str) -> str:
    in_string = False
    escaped = False
    stack: list[str] = []
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    repaired = text + ('"' if in_string else "")
    repaired = re.sub(r",\s*$", "", repaired)
    return repaired + "".join(reversed(stack))


def coerce_scalar(raw: str) -> Any:
    if raw == "true":
        return True
    if raw == "false":
        return False
    if raw == "null":
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def repair_object(text: str) -> dict | None:
    """Best-effort recovery of a truncated or malformed JSON object.

    Closes a dangling string and any unclosed brackets, then falls back
    to scraping ``"key": value`` pairs.  ``None`` when nothing usable
    is found.
    """
    stripped = text.strip()
    if not stripped:
        return None
    repaired = loads_object(_close_truncated(stripped))
    if repaired is not None:
        return repaired
    found: dict[str, Any] = {}
    for pattern in _KEY_VALUE_PATTERNS:
        for key, value in pattern.findall(stripped):
            if key in found:
                continue
            if pattern is _KEY_VALUE_PATTERNS[0]:
                found[key] = value.replace('\\"', '"')
            else:
                found[key] = coerce_scalar(value)
    return found or None
