"""Planner stage: one structured LLM call turning history into a retrieval plan."""

from __future__ import annotations

import asyncio
import logging
import re
from collections import OrderedDict

from portfolio_chat.config import PipelineConfig
from portfolio_chat.cost.pricing import estimate_cost_usd
from portfolio_chat.errors import LlmCancelledError
from portfolio_chat.llm.base import LlmProviderClient, LlmStructuredPrompt
from portfolio_chat.obs.tracing import Timer
from portfolio_chat.pipeline.json_stream import load_json_candidate
from portfolio_chat.pipeline.prompts import build_planner_user_content, planner_system_prompt
from portfolio_chat.schemas import (
    PLANNER_SCHEMA,
    RetrievalPlan,
    RetrievalQuery,
    parse_planner_output,
)
from portfolio_chat.types import ChatMessage, CorpusDocument, StageUsage

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


class PlannerStage:
    """Produces a `RetrievalPlan`; failures degrade to an empty plan.

    Plans are cached per planner window, so replaying the same conversation
    does not spend a second planner call.
    """

    def __init__(self, client: LlmProviderClient, config: PipelineConfig | None = None) -> None:
        self.client = client
        self.config = config or PipelineConfig()
        self._cache: OrderedDict[tuple[tuple[str, str], ...], RetrievalPlan] = OrderedDict()

    async def plan(
        self,
        messages: list[ChatMessage],
        *,
        profile: CorpusDocument | None = None,
        signal: asyncio.Event | None = None,
    ) -> tuple[RetrievalPlan, StageUsage]:
        models = self.config.models
        window = messages[-self.config.history.planner_message_limit :]
        cache_key = tuple((m.role, m.content) for m in window)
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._cache.move_to_end(cache_key)
            return cached.model_copy(deep=True), StageUsage("planner", models.planner_model, None, 0.0)

        prompt = LlmStructuredPrompt(
            system_prompt=planner_system_prompt(self.config.owner_name),
            user_content=build_planner_user_content(window, profile),
            json_schema=PLANNER_SCHEMA,
            model=models.planner_model,
            max_output_tokens=models.planner_max_output_tokens,
            reasoning_effort=models.planner_effort,
            signal=signal,
        )

        usage = None
        plan: RetrievalPlan | None = None
        with Timer() as timer:
            try:
                result = await self.client.create_structured_json(prompt)
                usage = result.usage
                candidate = result.structured
                if candidate is None:
                    candidate = load_json_candidate(result.raw_text)
                plan = normalize_plan(parse_planner_output(candidate), self.config.retrieval.default_top_k)
            except LlmCancelledError:
                raise
            except Exception as exc:
                logger.warning("chat.pipeline.planner_failed error=%s", exc)

        cost = estimate_cost_usd(models.planner_model, usage)
        stage_usage = StageUsage("planner", models.planner_model, usage, cost)
        meta = {
            "model": models.planner_model,
            "effort": models.planner_effort,
            "duration_ms": timer.elapsed_ms,
            "usage": usage.to_dict() if usage else None,
            "cost_usd": cost,
        }
        if plan is None:
            return RetrievalPlan(degraded=True, **meta), stage_usage

        plan = plan.model_copy(update=meta)
        self._remember(cache_key, plan)
        return plan, stage_usage

    def _remember(self, key: tuple[tuple[str, str], ...], plan: RetrievalPlan) -> None:
        if self.config.planner_cache_size <= 0:
            return
        self._cache[key] = plan.model_copy(deep=True)
        while len(self._cache) > self.config.planner_cache_size:
            self._cache.popitem(last=False)


def normalize_plan(plan: RetrievalPlan, default_top_k: int) -> RetrievalPlan:
    """Apply defaults and drop unusable or duplicate queries."""
    queries: list[RetrievalQuery] = []
    seen: set[tuple[str, str, int]] = set()
    topic = _WHITESPACE.sub(" ", plan.topic).strip()

    for query in plan.queries:
        limit = query.limit or default_top_k
        if query.source == "profile":
            text = None
        else:
            text = _WHITESPACE.sub(" ", query.text or "").strip() or topic
            if not text:
                continue
        key = (query.source, (text or "").lower(), limit)
        if key in seen:
            continue
        seen.add(key)
        queries.append(RetrievalQuery(source=query.source, text=text, limit=limit))

    return plan.model_copy(
        update={
            "thoughts": [t.strip() for t in plan.thoughts if t.strip()],
            "queries": queries,
            "topic": topic,
        }
    )
