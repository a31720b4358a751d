"""Model pricing, usage parsing and per-call cost estimation."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from portfolio_chat.types import TokenUsage

TOKENS_PER_MILLION = 1_000_000
COST_DECIMAL_PLACES = 6

_PROMPT_TOKEN_KEYS = ("prompt_tokens", "promptTokens", "input_tokens")
_COMPLETION_TOKEN_KEYS = ("completion_tokens", "completionTokens", "output_tokens")
_NAMED_SUFFIX = re.compile(r"-(latest|preview)$")
_ISO_DATE_SUFFIX = re.compile(r"-\d{4}-\d{2}-\d{2}$")


@dataclass(slots=True, frozen=True)
class ModelPrice:
    """Token pricing model (USD per 1M tokens)."""

    prompt_per_1m: float
    completion_per_1m: float

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (prompt_tokens / TOKENS_PER_MILLION) * self.prompt_per_1m + (
            completion_tokens / TOKENS_PER_MILLION
        ) * self.completion_per_1m


MODEL_PRICING: dict[str, ModelPrice] = {
    "gpt-5.1": ModelPrice(1.25, 10.0),
    "gpt-5-pro": ModelPrice(15.0, 120.0),
    "gpt-5-mini": ModelPrice(0.25, 2.0),
    "gpt-5-nano": ModelPrice(0.05, 0.4),
    "gpt-4.1": ModelPrice(2.75, 11.0),
    "gpt-4o": ModelPrice(2.5, 10.0),
    "gpt-4o-mini": ModelPrice(0.15, 0.6),
    "gpt-4.1-nano": ModelPrice(0.15, 0.6),
    "gpt-4-turbo": ModelPrice(10.0, 30.0),
    "gpt-4": ModelPrice(30.0, 60.0),
    "gpt-3.5-turbo": ModelPrice(0.5, 1.5),
    "o1": ModelPrice(15.0, 60.0),
    "o1-mini": ModelPrice(3.0, 12.0),
    "claude-opus-4-1": ModelPrice(15.0, 75.0),
    "claude-sonnet-4-5": ModelPrice(3.0, 15.0),
    "claude-haiku-4-5": ModelPrice(1.0, 5.0),
    "text-embedding-3-large": ModelPrice(0.13, 0.0),
    "text-embedding-3-small": ModelPrice(0.02, 0.0),
}

MODEL_ALIASES: dict[str, str] = {
    "gpt-4-turbo-preview": "gpt-4-turbo",
    "gpt-3.5-turbo-0125": "gpt-3.5-turbo",
    "gpt-3.5-turbo-1106": "gpt-3.5-turbo",
    "gpt-4-0613": "gpt-4",
    "o1-preview": "o1",
    "claude-sonnet-4-5-20250929": "claude-sonnet-4-5",
    "claude-haiku-4-5-20251001": "claude-haiku-4-5",
    "claude-opus-4-1-20250805": "claude-opus-4-1",
}


def resolve_model_key(model: str | None) -> str | None:
    """Map dated or suffixed model names onto a pricing key."""
    if not model:
        return None
    if model in MODEL_ALIASES:
        return MODEL_ALIASES[model]
    if _NAMED_SUFFIX.search(model):
        normalized = _NAMED_SUFFIX.sub("", model)
    else:
        normalized = _ISO_DATE_SUFFIX.sub("", model)
    return MODEL_ALIASES.get(normalized, normalized)


def price_for(model: str | None) -> ModelPrice | None:
    key = resolve_model_key(model)
    return MODEL_PRICING.get(key) if key else None


def parse_usage(candidate: Any, *, allow_zero: bool = False) -> TokenUsage | None:
    """Read token counts from a provider usage object or mapping.

    Accepts `TokenUsage`, mappings with OpenAI/Anthropic/camelCase keys, or
    objects exposing those keys as attributes.
    """
    if isinstance(candidate, TokenUsage):
        usage = candidate
    else:
        record = _as_mapping(candidate)
        if record is None:
            return TokenUsage() if allow_zero else None
        usage = TokenUsage.from_counts(
            _pick_count(record, _PROMPT_TOKEN_KEYS),
            _pick_count(record, _COMPLETION_TOKEN_KEYS),
        )
    if not allow_zero and usage.total_tokens <= 0:
        return None
    return usage


def estimate_cost_usd(model: str | None, usage: TokenUsage | None) -> float | None:
    if usage is None:
        return None
    price = price_for(model)
    if price is None:
        return None
    cost = price.estimate_cost(usage.prompt_tokens, usage.completion_tokens)
    return round(cost, COST_DECIMAL_PLACES)


def _as_mapping(candidate: Any) -> Mapping[str, Any] | None:
    if candidate is None:
        return None
    if isinstance(candidate, Mapping):
        return candidate
    attrs = {
        key: getattr(candidate, key)
        for key in (*_PROMPT_TOKEN_KEYS, *_COMPLETION_TOKEN_KEYS)
        if hasattr(candidate, key)
    }
    return attrs or None


def _pick_count(record: Mapping[str, Any], keys: tuple[str, ...]) -> int:
    for key in keys:
        value = record.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value >= 0:
            return int(value)
        if isinstance(value, str) and value.strip():
            try:
                parsed = float(value.strip())
            except ValueError:
                continue
            if parsed >= 0:
                return int(parsed)
    return 0
