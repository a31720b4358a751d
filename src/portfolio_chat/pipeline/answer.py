"""Answer stage: streamed grounded answer plus validated UI hints."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from portfolio_chat.config import PipelineConfig
from portfolio_chat.cost.pricing import estimate_cost_usd
from portfolio_chat.errors import LlmProviderError
from portfolio_chat.llm.base import LlmProviderClient, LlmStructuredPrompt
from portfolio_chat.obs.tracing import Timer
from portfolio_chat.pipeline.json_stream import MessageDeltaTracker, load_json_candidate
from portfolio_chat.pipeline.prompts import answer_system_prompt, build_answer_user_content
from portfolio_chat.retrieval.corpus import Corpus
from portfolio_chat.retrieval.engine import RetrievalResult
from portfolio_chat.schemas import ANSWER_SCHEMA, AnswerPayload, RetrievalPlan, UiHints, parse_answer_payload
from portfolio_chat.types import ChatMessage, StageUsage

logger = logging.getLogger(__name__)

README_PREVIEW_CHARS = 1200

_HINT_WARNING_CODES = {
    "projects": "UIHINT_INVALID_PROJECT_ID",
    "experiences": "UIHINT_INVALID_EXPERIENCE_ID",
    "education": "UIHINT_INVALID_EDUCATION_ID",
    "links": "UIHINT_INVALID_LINK",
}


@dataclass(slots=True)
class AnswerOutcome:
    payload: AnswerPayload
    ui: UiHints
    attachments: list[dict[str, Any]]
    usage: StageUsage
    duration_ms: float
    ui_hint_warnings: list[dict[str, Any]] = field(default_factory=list)


class AnswerStage:
    """Streams the answer `message` as deltas, then validates the final payload."""

    def __init__(self, client: LlmProviderClient, config: PipelineConfig | None = None) -> None:
        self.client = client
        self.config = config or PipelineConfig()

    async def answer(
        self,
        messages: list[ChatMessage],
        plan: RetrievalPlan,
        retrieval: RetrievalResult,
        corpus: Corpus,
        on_delta: Callable[[str], None],
        *,
        signal: asyncio.Event | None = None,
    ) -> AnswerOutcome:
        models = self.config.models
        prompt = LlmStructuredPrompt(
            system_prompt=answer_system_prompt(self.config.owner_name),
            user_content=build_answer_user_content(messages, plan, retrieval.documents, corpus.profile),
            json_schema=ANSWER_SCHEMA,
            model=models.answer_model,
            max_output_tokens=models.answer_max_output_tokens,
            temperature=models.answer_temperature,
            reasoning_effort=models.answer_effort,
            signal=signal,
        )
        tracker = MessageDeltaTracker()

        def _on_snapshot(snapshot: str) -> None:
            delta = tracker.update(snapshot)
            if delta:
                on_delta(delta)

        with Timer() as timer:
            result = await self.client.stream_structured_json(prompt, _on_snapshot)

        candidate = result.structured
        if candidate is None:
            candidate = load_json_candidate(result.raw_text)
        try:
            payload = parse_answer_payload(candidate)
        except ValueError as exc:
            raise LlmProviderError(
                self.client.provider, f"answer payload is malformed: {exc}"
            ) from exc

        for delta in tracker.finish(payload.message):
            on_delta(delta)

        ui, warnings = validate_ui_hints(
            payload.ui_hints,
            retrieval,
            corpus,
            had_queries=bool(plan.queries),
            max_items=self.config.max_display_items,
        )
        if warnings:
            logger.info("chat.pipeline.ui_hints_dropped warnings=%s", warnings)

        return AnswerOutcome(
            payload=payload,
            ui=ui,
            attachments=build_attachments(ui, corpus),
            usage=StageUsage(
                "answer",
                models.answer_model,
                result.usage,
                estimate_cost_usd(models.answer_model, result.usage),
            ),
            duration_ms=timer.elapsed_ms,
            ui_hint_warnings=warnings,
        )


def validate_ui_hints(
    hints: UiHints,
    retrieval: RetrievalResult,
    corpus: Corpus,
    *,
    had_queries: bool,
    max_items: int,
) -> tuple[UiHints, list[dict[str, Any]]]:
    """Keep only hints naming documents that were actually retrieved.

    Ids are matched case-insensitively and mapped back to their canonical form.
    """
    if not had_queries:
        return UiHints(), []

    allowed = {
        "projects": retrieval.ids_by_kind("project"),
        "experiences": retrieval.ids_by_kind("experience"),
        "education": retrieval.ids_by_kind("education"),
        "links": corpus.social_platforms(),
    }
    validated: dict[str, list[str]] = {}
    warnings: list[dict[str, Any]] = []

    for name, allowed_ids in allowed.items():
        lookup = {_normalize_id(item): item for item in allowed_ids}
        kept: list[str] = []
        invalid: list[str] = []
        for raw in getattr(hints, name):
            canonical = lookup.get(_normalize_id(raw))
            if canonical is None:
                invalid.append(raw)
            elif canonical not in kept:
                kept.append(canonical)
        validated[name] = kept[:max_items]
        if invalid:
            warnings.append(
                {
                    "code": _HINT_WARNING_CODES[name],
                    "invalidIds": invalid,
                    "retrievedIds": sorted(allowed_ids),
                }
            )

    return UiHints(**validated), warnings


def build_attachments(ui: UiHints, corpus: Corpus) -> list[dict[str, Any]]:
    attachments: list[dict[str, Any]] = []
    for project_id in ui.projects:
        document = corpus.projects.get(project_id)
        if document is None:
            continue
        data = dict(document.data)
        if isinstance(data.get("readme"), str):
            data["readme"] = data["readme"][:README_PREVIEW_CHARS]
        attachments.append({"type": "project", "id": project_id, "title": document.title, "data": data})

    for entry_id in [*ui.experiences, *ui.education]:
        document = corpus.resume.get(entry_id)
        if document is None:
            continue
        attachments.append(
            {
                "type": "document",
                "id": entry_id,
                "kind": document.kind,
                "title": document.title,
                "data": dict(document.data),
            }
        )
    return attachments


def _normalize_id(value: str) -> str:
    return value.strip().lower()
