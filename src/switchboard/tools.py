"""Tool declarations and the registry interface the dispatcher calls.

Plain Python functions become tools with the :func:`tool` decorator.
Their JSON schema is derived from the signature and the docstring
(Google, reST and NumPy styles are understood)::

    @tool
    def web_search(query: str, max_results: int = 5):
        \"\"\"Search the web.

        Args:
            query: What to look for.
            max_results: Upper bound on returned hits.
        \"\"\"
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import re
import typing
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from switchboard.descriptor import ProviderDescriptor, ToolSchemaDialect
from switchboard.errors import SwitchboardError

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Errors raised by registries
# ----------------------------------------------------------------------

class ToolError(SwitchboardError):
    """Base class for failures reported by a tool registry."""


class ToolNotFound(ToolError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool '{name}' not found")


class ToolTimeout(ToolError):
    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"Tool '{name}' timed out after {timeout:g}s")


class ToolRuntimeError(ToolError):
    """The tool itself raised; the original exception is chained."""


# ----------------------------------------------------------------------
# Schema generation
# ----------------------------------------------------------------------

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}

_JSON_TYPE_NAMES = {t.__name__: name for t, name in _JSON_TYPES.items()}


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    if isinstance(annotation, str):
        return _JSON_TYPE_NAMES.get(annotation.split("[")[0].strip(), "string")
    origin = typing.get_origin(annotation)
    if origin is typing.Union or type(annotation).__name__ == "UnionType":
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        return _json_type(args[0]) if args else "string"
    return _JSON_TYPES.get(origin or annotation, "string")


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    """Derive an object schema and required list from *func*'s signature."""
    signature = inspect.signature(func)
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError):
        hints = {}
    descriptions = _parse_param_descriptions(func)

    properties: dict[str, dict] = {}
    required: list[str] = []
    for name, param in signature.parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        properties[name] = {
            "type": _json_type(hints.get(name, param.annotation)),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)

    schema = {"type": "object", "properties": properties, "required": required}
    return schema, required


_GOOGLE_HEADER = re.compile(r"^\s*(?:Args|Arguments|Parameters):\s*$")
_GOOGLE_ENTRY = re.compile(r"^\*{0,2}(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")
_REST_ENTRY = re.compile(r"^:param\s+(?:[^:]*\s)?(\w+)\s*:\s*(.*)$")
_SECTION_RULE = re.compile(r"^\s*-{3,}\s*$")


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _parse_google(lines: list[str]) -> dict[str, str]:
    start = next((i for i, ln in enumerate(lines) if _GOOGLE_HEADER.match(ln)), None)
    if start is None:
        return {}
    header_indent = _indent(lines[start])
    entry_indent: int | None = None
    parsed: dict[str, list[str]] = {}
    current: str | None = None
    for line in lines[start + 1:]:
        if not line.strip():
            continue
        indent = _indent(line)
        if indent <= header_indent:
            break
        if entry_indent is None:
            entry_indent = indent
        match = _GOOGLE_ENTRY.match(line.strip())
        if indent == entry_indent and match:
            current = match.group(1)
            parsed[current] = [match.group(2).strip()]
        elif current is not None:
            parsed[current].append(line.strip())
    return {k: "\n".join(v).strip() for k, v in parsed.items()}


def _parse_rest(lines: list[str]) -> dict[str, str]:
    parsed: dict[str, list[str]] = {}
    current: str | None = None
    for line in lines:
        stripped = line.strip()
        match = _REST_ENTRY.match(stripped)
        if match:
            current = match.group(1)
            parsed[current] = [match.group(2).strip()]
        elif current is not None and stripped and not stripped.startswith(":"):
            parsed[current].append(stripped)
        else:
            current = None
    return {k: "\n".join(v).strip() for k, v in parsed.items()}


def _parse_numpy(lines: list[str]) -> dict[str, str]:
    start = None
    for i in range(len(lines) - 1):
        if lines[i].strip() == "Parameters" and _SECTION_RULE.match(lines[i + 1]):
            start = i + 2
            break
    if start is None:
        return {}
    base = _indent(lines[start - 2])
    parsed: dict[str, list[str]] = {}
    current: str | None = None
    body = lines[start:]
    for offset, line in enumerate(body):
        if not line.strip():
            continue
        next_line = body[offset + 1] if offset + 1 < len(body) else ""
        if _SECTION_RULE.match(next_line):
            break
        if _indent(line) <= base:
            current = line.split(":")[0].strip()
            parsed[current] = []
        elif current is not None:
            parsed[current].append(line.strip())
    return {k: "\n".join(v).strip() for k, v in parsed.items()}


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract per-parameter descriptions from *func*'s docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()
    return _parse_rest(lines) or _parse_numpy(lines) or _parse_google(lines)


def _summary(func: Callable) -> str:
    doc = inspect.getdoc(func) or ""
    return doc.split("\n\n")[0].strip()


# ----------------------------------------------------------------------
# Tool objects
# ----------------------------------------------------------------------

class ToolSpec(BaseModel):
    """Provider-neutral description of a callable tool."""

    name: str
    description: str = ""
    json_schema: dict = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


class Tool(BaseModel):
    """A Python callable exposed to the model."""

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict
    model_config = {"arbitrary_types_allowed": True}

    def model_dump(self, **kwargs):
        """Return the OpenAI function schema instead of internal fields."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            json_schema=self.parameters_schema,
        )

    async def __call__(self, **kwargs) -> ToolCallResult:
        if inspect.iscoroutinefunction(self.func):
            output = await self.func(**kwargs)
        else:
            # Keep blocking tools off the event loop so siblings progress.
            output = await asyncio.to_thread(self.func, **kwargs)
        return ToolCallResult(tool_name=self.name, output=output)


def _make_tool(func: Callable, name: str | None, description: str | None) -> Tool:
    schema, _ = _build_parameters_schema(func)
    return Tool(
        func=func,
        name=name or func.__name__,
        description=description if description is not None else _summary(func),
        parameters_schema=schema,
    )


def tool(func: Callable | None = None, *, name: str | None = None,
         description: str | None = None):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="lookup", description="...")``).
    """
    if func is not None:
        return _make_tool(func, name, description)

    def decorator(f: Callable) -> Tool:
        return _make_tool(f, name, description)

    return decorator


# ----------------------------------------------------------------------
# Wire names
# ----------------------------------------------------------------------

_ABBREVIATIONS = (
    ("information", "info"),
    ("configuration", "config"),
    ("repository", "repo"),
    ("directory", "dir"),
    ("document", "doc"),
    ("function", "fn"),
    ("message", "msg"),
    ("_and_", "_"),
)


def sanitize_tool_name(name: str, descriptor: ProviderDescriptor) -> str:
    """Make *name* acceptable to *descriptor*'s tool declaration rules.

    Deterministic: the same input always maps to the same output.
    Over-long names are abbreviated, then cut and suffixed with a short
    hash of the original so distinct long names stay distinct.
    """
    if descriptor.tool_schema_dialect is ToolSchemaDialect.GEMINI_FUNCTIONS:
        cleaned = re.sub(r"[^A-Za-z0-9_.\-]", "_", name)
        if cleaned and not re.match(r"[A-Za-z_]", cleaned):
            cleaned = "_" + cleaned
    else:
        cleaned = re.sub(r"[^A-Za-z0-9_\-]", "_", name)
    cleaned = cleaned or "tool"

    limit = descriptor.max_tool_name_length
    if limit is None or len(cleaned) <= limit:
        return cleaned
    for long, short in _ABBREVIATIONS:
        cleaned = cleaned.replace(long, short)
    if len(cleaned) <= limit:
        return cleaned
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"{cleaned[:limit - 9]}_{digest}"


# ----------------------------------------------------------------------
# Registries
# ----------------------------------------------------------------------

@runtime_checkable
class ToolRegistry(Protocol):
    """What the dispatcher needs from a tool runtime."""

    def list_available_tools(self, provider_id: str) -> list[ToolSpec]:
        ...

    async def execute(self, name: str, arguments: dict) -> str:
        ...


class FunctionToolRegistry:
    """In-process registry backed by :class:`Tool` objects."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, t: Tool) -> None:
        if t.name in self._tools:
            logger.warning(f"Replacing already registered tool {t.name}")
        self._tools[t.name] = t

    def list_available_tools(self, provider_id: str) -> list[ToolSpec]:
        return [t.spec() for t in self._tools.values()]

    async def execute(self, name: str, arguments: dict) -> str:
        t = self._tools.get(name)
        if t is None:
            raise ToolNotFound(name)
        try:
            result = await t(**arguments)
        except ToolError:
            raise
        except Exception as e:
            raise ToolRuntimeError(str(e) or type(e).__name__) from e
        output = result.output
        return output if isinstance(output, str) else json.dumps(output, default=str)
