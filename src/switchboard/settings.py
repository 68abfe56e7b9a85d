from __future__ import annotations

import os

from pydantic import BaseModel, Field


DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4000


class Settings(BaseModel):
    """Per-request provider selection and sampling options.

    Treated as read-only by the orchestrator.  ``base_url`` overrides
    the descriptor's default endpoint (self-hosted or proxied back-ends).
    """

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str | None = Field(default=None, repr=False)
    base_url: str | None = None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    system_prompt: str | None = None
    tool_calling_enabled: bool = True
    stream: bool = True

    @classmethod
    def from_env(cls, provider: str | None = None, **overrides) -> Settings:
        """Build settings from ``SWITCHBOARD_*`` environment variables.

        The API key comes from ``<PROVIDER>_API_KEY`` (for example
        ``OPENAI_API_KEY``) unless passed explicitly.
        """
        provider = provider or os.getenv("SWITCHBOARD_PROVIDER", "openai")
        values: dict = {"provider": provider}
        env_map = {
            "model": "SWITCHBOARD_MODEL",
            "base_url": "SWITCHBOARD_BASE_URL",
            "system_prompt": "SWITCHBOARD_SYSTEM_PROMPT",
            "temperature": "SWITCHBOARD_TEMPERATURE",
            "max_tokens": "SWITCHBOARD_MAX_TOKENS",
        }
        for field_name, var in env_map.items():
            value = os.getenv(var)
            if value is not None:
                values[field_name] = value
        api_key = os.getenv(f"{provider.upper()}_API_KEY")
        if api_key:
            values["api_key"] = api_key
        tools_flag = os.getenv("SWITCHBOARD_TOOLS")
        if tools_flag is not None:
            values["tool_calling_enabled"] = tools_flag.lower() not in ("0", "false", "no", "off")
        values.update(overrides)
        return cls(**values)
