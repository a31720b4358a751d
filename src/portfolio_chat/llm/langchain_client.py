"""Hosted chat-model providers driven through LangChain chat models."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.runnables import Runnable
from langchain_openai import ChatOpenAI

from portfolio_chat.cost.pricing import parse_usage
from portfolio_chat.errors import ChatPipelineError, LlmProviderError, LlmTimeoutError
from portfolio_chat.llm.base import (
    LlmProviderClient,
    LlmStructuredPrompt,
    LlmStructuredResult,
    SnapshotCallback,
    inline_schema_system_prompt,
    run_cancellable,
    try_parse_json,
)
from portfolio_chat.types import TokenUsage

ModelFactory = Callable[[LlmStructuredPrompt], BaseChatModel]


class LangChainStructuredClient(LlmProviderClient):
    """Structured JSON calls over any LangChain chat model.

    With `native_json_schema` the schema is bound as an OpenAI-style
    `response_format`; otherwise it is appended to the system prompt and the
    response text is left for the caller to parse.
    """

    def __init__(
        self,
        provider: str,
        model_factory: ModelFactory,
        *,
        native_json_schema: bool,
    ) -> None:
        self.provider = provider
        self.model_factory = model_factory
        self.native_json_schema = native_json_schema

    async def create_structured_json(self, prompt: LlmStructuredPrompt) -> LlmStructuredResult:
        try:
            runnable, messages = self._prepare(prompt)
            message = await run_cancellable(
                runnable.ainvoke(messages), prompt.signal, provider=self.provider
            )
        except ChatPipelineError:
            raise
        except Exception as exc:
            raise _provider_error(self.provider, exc) from exc

        usage = parse_usage(getattr(message, "usage_metadata", None))
        return self._result(_content_text(message.content), usage)

    async def stream_structured_json(
        self,
        prompt: LlmStructuredPrompt,
        on_snapshot: SnapshotCallback,
    ) -> LlmStructuredResult:
        async def _consume(
            runnable: Runnable[Any, Any], messages: list[BaseMessage]
        ) -> tuple[str, TokenUsage | None]:
            snapshot = ""
            prompt_tokens = 0
            completion_tokens = 0
            async for chunk in runnable.astream(messages):
                chunk_usage = parse_usage(getattr(chunk, "usage_metadata", None))
                if chunk_usage is not None:
                    prompt_tokens += chunk_usage.prompt_tokens
                    completion_tokens += chunk_usage.completion_tokens
                text = _content_text(chunk.content)
                if text:
                    snapshot += text
                    on_snapshot(snapshot)
            usage = None
            if prompt_tokens or completion_tokens:
                usage = TokenUsage.from_counts(prompt_tokens, completion_tokens)
            return snapshot, usage

        try:
            runnable, messages = self._prepare(prompt)
            raw_text, usage = await run_cancellable(
                _consume(runnable, messages), prompt.signal, provider=self.provider
            )
        except ChatPipelineError:
            raise
        except Exception as exc:
            raise _provider_error(self.provider, exc) from exc
        return self._result(raw_text, usage)

    def _prepare(self, prompt: LlmStructuredPrompt) -> tuple[Runnable[Any, Any], list[BaseMessage]]:
        model: Runnable[Any, Any] = self.model_factory(prompt)
        if self.native_json_schema:
            system_prompt = prompt.system_prompt
            model = model.bind(
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": prompt.json_schema.name,
                        "schema": prompt.json_schema.schema,
                        "strict": prompt.json_schema.strict,
                    },
                }
            )
        else:
            system_prompt = inline_schema_system_prompt(prompt)
        messages: list[BaseMessage] = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=prompt.user_content),
        ]
        return model, messages

    def _result(self, raw_text: str, usage: TokenUsage | None) -> LlmStructuredResult:
        raw_text = raw_text.strip()
        structured = try_parse_json(raw_text) if self.native_json_schema else None
        return LlmStructuredResult(raw_text=raw_text, structured=structured, usage=usage)


def openai_model_factory(*, api_key: str, timeout_seconds: float = 60.0) -> ModelFactory:
    """Factory building (and reusing) `ChatOpenAI` clients per generation settings."""
    cache: dict[tuple[Any, ...], BaseChatModel] = {}

    def _factory(prompt: LlmStructuredPrompt) -> BaseChatModel:
        key = (prompt.model, prompt.max_output_tokens, prompt.temperature, prompt.reasoning_effort)
        if key not in cache:
            kwargs: dict[str, Any] = {
                "model": prompt.model,
                "api_key": api_key,
                "timeout": timeout_seconds,
                "stream_usage": True,
                "max_retries": 0,
            }
            if prompt.max_output_tokens is not None:
                kwargs["max_tokens"] = prompt.max_output_tokens
            if prompt.temperature is not None:
                kwargs["temperature"] = prompt.temperature
            if prompt.reasoning_effort is not None:
                kwargs["reasoning_effort"] = prompt.reasoning_effort
            cache[key] = ChatOpenAI(**kwargs)
        return cache[key]

    return _factory


def anthropic_model_factory(*, api_key: str, timeout_seconds: float = 60.0) -> ModelFactory:
    """Factory building (and reusing) `ChatAnthropic` clients per generation settings."""
    cache: dict[tuple[Any, ...], BaseChatModel] = {}

    def _factory(prompt: LlmStructuredPrompt) -> BaseChatModel:
        max_tokens = min(max(prompt.max_output_tokens or 1024, 1), 8192)
        key = (prompt.model, max_tokens, prompt.temperature)
        if key not in cache:
            kwargs: dict[str, Any] = {
                "model": prompt.model,
                "api_key": api_key,
                "max_tokens": max_tokens,
                "timeout": timeout_seconds,
                "max_retries": 0,
            }
            if prompt.temperature is not None:
                kwargs["temperature"] = prompt.temperature
            cache[key] = ChatAnthropic(**kwargs)
        return cache[key]

    return _factory


def openai_client(*, api_key: str, timeout_seconds: float = 60.0) -> LangChainStructuredClient:
    return LangChainStructuredClient(
        "openai",
        openai_model_factory(api_key=api_key, timeout_seconds=timeout_seconds),
        native_json_schema=True,
    )


def anthropic_client(*, api_key: str, timeout_seconds: float = 60.0) -> LangChainStructuredClient:
    return LangChainStructuredClient(
        "anthropic",
        anthropic_model_factory(api_key=api_key, timeout_seconds=timeout_seconds),
        native_json_schema=False,
    )


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type", "text") == "text" and "text" in item:
                    parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return str(content or "")


def _provider_error(provider: str, exc: Exception) -> LlmProviderError:
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)) or "timeout" in type(exc).__name__.lower():
        return LlmTimeoutError(provider, f"request timed out: {exc}")
    return LlmProviderError(provider, f"{type(exc).__name__}: {exc}")
