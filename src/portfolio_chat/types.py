"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ChatRole = Literal["user", "assistant"]
RetrievalSource = Literal["projects", "resume", "profile"]
RETRIEVAL_SOURCES: tuple[str, ...] = ("projects", "resume", "profile")


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """One message of a chat turn."""

    role: ChatRole
    content: str


@dataclass(slots=True)
class CorpusDocument:
    """A project, resume entry or profile document with its prompt text."""

    doc_id: str
    source: RetrievalSource
    kind: str
    title: str
    text: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ScoredDocument:
    """A retrieval hit with its cosine score."""

    document: CorpusDocument
    score: float
    rank: int = 0


@dataclass(slots=True)
class TokenUsage:
    """Token counts reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int) -> "TokenUsage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(slots=True)
class StageUsage:
    """Usage and estimated cost of one LLM-backed stage."""

    stage: str
    model: str
    usage: TokenUsage | None
    cost_usd: float | None
