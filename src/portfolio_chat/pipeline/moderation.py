"""Input moderation applied to the latest user message before a turn runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from openai import AsyncOpenAI

from portfolio_chat.errors import InputModeratedError, LlmProviderError
from portfolio_chat.types import ChatMessage

logger = logging.getLogger(__name__)

DEFAULT_MODERATION_MODEL = "omni-moderation-latest"
DEFAULT_REFUSAL_MESSAGE = "I can only answer questions about my portfolio and professional background."


@dataclass(slots=True)
class ModerationVerdict:
    flagged: bool
    categories: list[str] = field(default_factory=list)


class ModerationClient(Protocol):
    async def moderate(self, text: str) -> ModerationVerdict: ...


class OpenAIModerationClient:
    """Moderation through the OpenAI moderations endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = DEFAULT_MODERATION_MODEL,
        timeout_seconds: float = 10.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout_seconds)

    async def moderate(self, text: str) -> ModerationVerdict:
        response = await self._client.moderations.create(model=self.model, input=text)
        results = response.results or []
        if not any(result.flagged for result in results):
            return ModerationVerdict(flagged=False)
        categories: set[str] = set()
        for result in results:
            hits = result.categories.model_dump(by_alias=True)
            categories.update(name for name, hit in hits.items() if hit)
        return ModerationVerdict(flagged=True, categories=sorted(categories))


class ModerationGate:
    """Refuses a turn whose latest user message is flagged.

    A failing moderation call refuses the turn as a retryable provider error
    rather than letting unchecked input through.
    """

    def __init__(self, client: ModerationClient, *, refusal_message: str = DEFAULT_REFUSAL_MESSAGE) -> None:
        self.client = client
        self.refusal_message = refusal_message

    async def check(self, messages: list[ChatMessage]) -> ModerationVerdict:
        text = latest_user_text(messages)
        if not text:
            return ModerationVerdict(flagged=False)
        try:
            verdict = await self.client.moderate(text)
        except Exception as exc:
            logger.warning("chat.moderation_failed error=%s", exc)
            raise LlmProviderError("moderation", f"{type(exc).__name__}: {exc}") from exc
        if verdict.flagged:
            logger.info("chat.moderation_blocked categories=%s", ",".join(verdict.categories))
            raise InputModeratedError(self.refusal_message, categories=verdict.categories)
        return verdict


def latest_user_text(messages: list[ChatMessage]) -> str:
    """Trimmed content of the last non-blank user message, or ``""``."""
    for message in reversed(messages):
        if message.role == "user" and message.content.strip():
            return message.content.strip()
    return ""
