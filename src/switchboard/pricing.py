"""Token pricing tables and cost estimation.

Prices are USD per one million tokens, ``(input, output)``.
"""

from __future__ import annotations

from dataclasses import dataclass

from switchboard.descriptor import PROVIDERS


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


@dataclass
class Cost:
    input_cost: float
    output_cost: float
    total_cost: float
    currency: str
    provider: str
    model: str


PRICING: dict[str, dict[str, tuple[float, float]]] = {
    "openai": {
        "gpt-4": (30.00, 60.00),
        "gpt-4-turbo": (10.00, 30.00),
        "gpt-4o": (5.00, 15.00),
        "gpt-4o-mini": (0.15, 0.60),
        "gpt-3.5-turbo": (0.50, 1.50),
        "gpt-3.5-turbo-16k": (3.00, 4.00),
        "o1-preview": (15.00, 60.00),
        "o1-mini": (3.00, 12.00),
    },
    "anthropic": {
        "claude-3-5-sonnet-20241022": (3.00, 15.00),
        "claude-3-5-sonnet-20240620": (3.00, 15.00),
        "claude-3-5-haiku-20241022": (1.00, 5.00),
        "claude-3-opus-20240229": (15.00, 75.00),
        "claude-3-sonnet-20240229": (3.00, 15.00),
        "claude-3-haiku-20240307": (0.25, 1.25),
    },
    "gemini": {
        "gemini-1.5-pro": (3.50, 10.50),
        "gemini-1.5-flash": (0.075, 0.30),
        "gemini-1.0-pro": (0.50, 1.50),
        "gemini-pro": (0.50, 1.50),
    },
    "mistral": {
        "mistral-large-latest": (4.00, 12.00),
        "mistral-medium-latest": (2.70, 8.10),
        "mistral-small-latest": (1.00, 3.00),
        "open-mistral-7b": (0.25, 0.25),
        "open-mixtral-8x7b": (0.70, 0.70),
        "open-mixtral-8x22b": (2.00, 6.00),
    },
    "deepseek": {
        "deepseek-chat": (0.14, 0.28),
        "deepseek-coder": (0.14, 0.28),
    },
    "openrouter": {
        "openai/gpt-4o": (5.00, 15.00),
        "openai/gpt-4o-mini": (0.15, 0.60),
        "anthropic/claude-3.5-sonnet": (3.00, 15.00),
        "anthropic/claude-3-haiku": (0.25, 1.25),
        "google/gemini-flash-1.5": (0.075, 0.30),
        "meta-llama/llama-3.1-70b-instruct": (0.52, 0.75),
        "meta-llama/llama-3.1-8b-instruct": (0.055, 0.055),
    },
    "requesty": {
        "default": (2.00, 6.00),
    },
}


def find_price(provider_id: str, model: str) -> tuple[float, float] | None:
    """Look up ``(input, output)`` prices for *model*.

    Tries the exact model, then its first two dash-separated segments,
    then the first segment, then the provider's ``default`` entry.
    """
    table = PRICING.get(provider_id.lower())
    if not table:
        return None
    segments = model.split("-")
    for key in (model, "-".join(segments[:2]), segments[0], "default"):
        if key in table:
            return table[key]
    return None


def estimate_cost(provider_id: str, model: str, usage: Usage | None) -> Cost | None:
    """Cost of *usage*, or ``None`` when no price is known.

    Local back-ends are free.
    """
    if usage is None:
        return None
    descriptor = PROVIDERS.get(provider_id)
    if descriptor is not None and descriptor.is_local:
        price: tuple[float, float] | None = (0.0, 0.0)
    else:
        price = find_price(provider_id, model)
    if price is None:
        return None
    input_cost = usage.prompt_tokens / 1_000_000 * price[0]
    output_cost = usage.completion_tokens / 1_000_000 * price[1]
    return Cost(
        input_cost=round(input_cost, 6),
        output_cost=round(output_cost, 6),
        total_cost=round(input_cost + output_cost, 6),
        currency="USD",
        provider=provider_id,
        model=model,
    )


def format_cost(cost: float) -> str:
    if cost < 0.000001:
        return "<$0.000001"
    if cost < 0.01:
        return f"${cost:.6f}"
    return f"${cost:.4f}"
