"""System prompts and prompt fragments sent to the back-ends."""

from __future__ import annotations

import json

from switchboard.tools import ToolSpec

GENERIC_DEFAULT_PROMPT = (
    "You are a helpful AI assistant. Please provide concise and helpful responses."
)

_BEHAVIOR = (
    "You are a capable assistant. Answer directly from your own knowledge "
    "when you can. Use the available tools for current information, file or "
    "system operations, calculations and anything outside your training "
    "data. When a task needs several tools, run them in sequence without "
    "stopping between successful calls, then give one complete answer that "
    "weaves the tool results in naturally."
)

_LOCAL_BEHAVIOR = (
    _BEHAVIOR
    + " You are running on a local model server, so keep answers focused."
)

BEHAVIORAL_DEFAULTS: dict[str, str] = {
    "openai": _BEHAVIOR,
    "anthropic": _BEHAVIOR,
    "gemini": _BEHAVIOR,
    "mistral": _BEHAVIOR,
    "deepseek": _BEHAVIOR,
    "openrouter": _BEHAVIOR,
    "requesty": _BEHAVIOR,
    "lmstudio": _LOCAL_BEHAVIOR,
    "ollama": _LOCAL_BEHAVIOR,
    "llamacpp": _LOCAL_BEHAVIOR,
}

FOLLOW_UP_PROMPT = (
    "You are a helpful AI assistant. Based on the tool results provided, "
    "continue the conversation naturally. If you need to use additional "
    "tools to better answer the user's question, feel free to do so."
)


def behavioral_default(provider_id: str) -> str:
    return BEHAVIORAL_DEFAULTS.get(provider_id, _BEHAVIOR)


def select_system_prompt(provider_id: str, requested: str | None) -> str:
    """Use *requested* unless it is blank or the stock generic prompt."""
    if requested and requested.strip() and requested.strip() != GENERIC_DEFAULT_PROMPT:
        return requested
    return behavioral_default(provider_id)


def _describe_parameters(spec: ToolSpec) -> str:
    properties = spec.json_schema.get("properties") or {}
    required = set(spec.json_schema.get("required") or [])
    if not properties:
        return "    (no parameters)"
    lines = []
    for name, prop in properties.items():
        kind = prop.get("type", "string") if isinstance(prop, dict) else "string"
        desc = prop.get("description", "") if isinstance(prop, dict) else ""
        flag = "required" if name in required else "optional"
        lines.append(f"    - {name} ({kind}, {flag}){': ' + desc if desc else ''}")
    return "\n".join(lines)


def tool_usage_prompt(tools: list[ToolSpec]) -> str:
    """Instructions for back-ends that call tools by writing text.

    The grammar taught here is the tagged-block form, the first one the
    text parser looks for.
    """
    if not tools:
        return ""
    catalogue = "\n".join(
        f"- {t.name}: {t.description or 'No description.'}\n{_describe_parameters(t)}"
        for t in tools
    )
    first = tools[0]
    example_params = "\n".join(
        f"<{p}>value</{p}>"
        for p in list((first.json_schema.get("properties") or {}))[:2]
    )
    example = f"<{first.name}>\n{example_params}\n</{first.name}>" if example_params \
        else f"<{first.name}></{first.name}>"
    names = ", ".join(t.name for t in tools)
    return (
        "\n\n## Tools\n\n"
        "You can call tools by writing an XML-style block. The outer tag is the "
        "tool name and each parameter is a child tag:\n\n"
        f"{example}\n\n"
        "Write one block per call. After the blocks, stop and wait: the results "
        "will be sent back to you.\n\n"
        f"Available tools:\n{catalogue}\n\n"
        f"Only use these exact tool names: {names}"
    )


def render_tool_results_for_text(results: list[tuple[str, str]], question: str) -> str:
    """Tool results as a plain user turn, for back-ends without tool roles."""
    body = "\n\n".join(f"Tool: {name}\nResult: {result}" for name, result in results)
    prompt = (
        "Based on the tool results below, please provide a helpful response "
        "to the original question. If more information is needed, you may call "
        "another tool.\n\n"
        f"Tool Results:\n{body}"
    )
    if question:
        prompt += f"\n\nOriginal Question: {question}"
    return prompt


def render_tool_request_for_text(name: str, arguments: dict) -> str:
    """An assistant's earlier tool call, written in the tagged-block grammar."""
    inner = "\n".join(
        f"<{k}>{v if isinstance(v, str) else json.dumps(v)}</{k}>"
        for k, v in arguments.items()
    )
    return f"<{name}>\n{inner}\n</{name}>" if inner else f"<{name}></{name}>"
