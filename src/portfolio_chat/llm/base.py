"""Provider-neutral structured JSON call contract."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from portfolio_chat.errors import LlmCancelledError
from portfolio_chat.types import TokenUsage

T = TypeVar("T")

SnapshotCallback = Callable[[str], None]


@dataclass(slots=True, frozen=True)
class JsonSchema:
    """A named JSON Schema for constrained output."""

    name: str
    schema: dict[str, Any]
    strict: bool = True


@dataclass(slots=True)
class LlmStructuredPrompt:
    system_prompt: str
    user_content: str
    json_schema: JsonSchema
    model: str
    max_output_tokens: int | None = None
    temperature: float | None = None
    reasoning_effort: str | None = None
    signal: asyncio.Event | None = None


@dataclass(slots=True)
class LlmStructuredResult:
    """Raw provider text, the parsed object when available, and usage."""

    raw_text: str
    structured: Any | None = None
    usage: TokenUsage | None = None


class LlmProviderClient(ABC):
    """Uniform create/stream interface over hosted APIs and local CLIs."""

    provider: str = "unknown"

    @abstractmethod
    async def create_structured_json(self, prompt: LlmStructuredPrompt) -> LlmStructuredResult:
        """Run one call and return the complete response."""

    @abstractmethod
    async def stream_structured_json(
        self,
        prompt: LlmStructuredPrompt,
        on_snapshot: SnapshotCallback,
    ) -> LlmStructuredResult:
        """Run one call, passing the cumulative text to `on_snapshot` as it grows."""


def schema_instruction(schema: JsonSchema) -> str:
    return (
        "Respond with exactly one JSON object and nothing else (no markdown fences, "
        f"no commentary). The object must conform to this JSON Schema named "
        f"`{schema.name}`:\n{json.dumps(schema.schema, indent=2)}"
    )


def inline_schema_system_prompt(prompt: LlmStructuredPrompt) -> str:
    """System prompt with the schema appended for providers without native support."""
    return f"{prompt.system_prompt}\n\n{schema_instruction(prompt.json_schema)}"


def try_parse_json(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


async def run_cancellable(
    awaitable: Awaitable[T],
    signal: asyncio.Event | None,
    *,
    provider: str,
) -> T:
    """Await `awaitable`, cancelling it as soon as `signal` is set.

    Cancelling the task tears down the underlying HTTP request or subprocess;
    the caller then sees `LlmCancelledError`.
    """
    task = asyncio.ensure_future(awaitable)
    if signal is None:
        return await task
    if signal.is_set():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise LlmCancelledError(provider, "request cancelled before start")

    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task.done():
        waiter.cancel()
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise LlmCancelledError(provider, "request cancelled")
