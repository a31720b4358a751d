"""Stage output models, their JSON Schemas and lenient parse boundaries."""

from __future__ import annotations

import math
from typing import Any

from pydantic import Field, field_validator

from portfolio_chat.config import MAX_QUERY_LIMIT
from portfolio_chat.llm.base import JsonSchema
from portfolio_chat.stream.events import WireModel
from portfolio_chat.types import RETRIEVAL_SOURCES, RetrievalSource


class RetrievalQuery(WireModel):
    source: RetrievalSource
    text: str | None = None
    limit: int | None = Field(default=None, ge=1, le=MAX_QUERY_LIMIT)


class RetrievalPlan(WireModel):
    thoughts: list[str] = Field(default_factory=list)
    queries: list[RetrievalQuery] = Field(default_factory=list)
    topic: str = ""
    use_profile_context: bool = False
    model: str | None = None
    effort: str | None = None
    duration_ms: float | None = None
    usage: dict[str, int] | None = None
    cost_usd: float | None = None
    degraded: bool = False


class RetrievalSummary(WireModel):
    source: RetrievalSource
    query_text: str
    requested_top_k: int
    effective_top_k: int
    num_results: int
    embedding_model: str | None = None


class RetrievedDocRef(WireModel):
    """What the trace may reveal about a retrieved document."""

    id: str
    source: RetrievalSource
    kind: str
    title: str
    score: float


class UiHints(WireModel):
    projects: list[str] = Field(default_factory=list)
    experiences: list[str] = Field(default_factory=list)
    education: list[str] = Field(default_factory=list)
    links: list[str] = Field(default_factory=list)

    @field_validator("projects", "experiences", "education", "links", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item) for item in value if isinstance(item, (str, int)) and str(item).strip()]

    def is_empty(self) -> bool:
        return not (self.projects or self.experiences or self.education or self.links)


class AnswerPayload(WireModel):
    thoughts: list[str] = Field(default_factory=list)
    ui_hints: UiHints = Field(default_factory=UiHints)
    message: str = Field(min_length=1)

    @field_validator("thoughts", mode="before")
    @classmethod
    def _coerce_thoughts(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]

    @field_validator("ui_hints", mode="before")
    @classmethod
    def _coerce_hints(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("message")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


PLANNER_SCHEMA = JsonSchema(
    name="retrieval_plan",
    schema={
        "type": "object",
        "additionalProperties": False,
        "required": ["thoughts", "queries", "topic", "useProfileContext"],
        "properties": {
            "thoughts": {"type": "array", "items": {"type": "string"}},
            "queries": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "required": ["source", "text", "limit"],
                    "properties": {
                        "source": {"type": "string", "enum": list(RETRIEVAL_SOURCES)},
                        "text": {"type": ["string", "null"]},
                        "limit": {"type": ["integer", "null"]},
                    },
                },
            },
            "topic": {"type": "string"},
            "useProfileContext": {"type": "boolean"},
        },
    },
)

_ID_LIST = {"type": "array", "items": {"type": "string"}}

ANSWER_SCHEMA = JsonSchema(
    name="answer_payload",
    schema={
        "type": "object",
        "additionalProperties": False,
        "required": ["message", "thoughts", "uiHints"],
        "properties": {
            "message": {"type": "string"},
            "thoughts": {"type": "array", "items": {"type": "string"}},
            "uiHints": {
                "type": "object",
                "additionalProperties": False,
                "required": ["projects", "experiences", "education", "links"],
                "properties": {
                    "projects": _ID_LIST,
                    "experiences": _ID_LIST,
                    "education": _ID_LIST,
                    "links": _ID_LIST,
                },
            },
        },
    },
)


def parse_planner_output(candidate: Any) -> RetrievalPlan:
    """Build a plan from untrusted model output, defaulting every missing field.

    Queries with an unknown source are dropped; nothing here raises.
    """
    if not isinstance(candidate, dict):
        return RetrievalPlan()

    thoughts = candidate.get("thoughts")
    raw_queries = candidate.get("queries")
    topic = candidate.get("topic")
    use_profile = candidate.get("useProfileContext", candidate.get("use_profile_context"))

    queries: list[RetrievalQuery] = []
    for item in raw_queries if isinstance(raw_queries, list) else []:
        if not isinstance(item, dict) or item.get("source") not in RETRIEVAL_SOURCES:
            continue
        text = item.get("text")
        queries.append(
            RetrievalQuery(
                source=item["source"],
                text=text if isinstance(text, str) else None,
                limit=_clamp_limit(item.get("limit")),
            )
        )

    return RetrievalPlan(
        thoughts=[t for t in thoughts if isinstance(t, str)] if isinstance(thoughts, list) else [],
        queries=queries,
        topic=topic if isinstance(topic, str) else "",
        use_profile_context=use_profile if isinstance(use_profile, bool) else False,
    )


def parse_answer_payload(candidate: Any) -> AnswerPayload:
    """Validate model output as an answer; raises `ValueError` without a message."""
    if not isinstance(candidate, dict):
        raise ValueError("answer payload is not a JSON object")
    return AnswerPayload.model_validate(candidate)


def _clamp_limit(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return max(1, min(MAX_QUERY_LIMIT, int(value)))
