"""Turn orchestration: plan -> retrieve -> answer, written to a turn emitter."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from portfolio_chat.config import PipelineConfig
from portfolio_chat.errors import ChatPipelineError, LlmTimeoutError, internal_error
from portfolio_chat.obs.reasoning import AnswerMeta, ReasoningTrace, ReasoningTraceAccumulator
from portfolio_chat.obs.tracing import Timer
from portfolio_chat.pipeline.answer import AnswerStage
from portfolio_chat.pipeline.history import apply_sliding_window
from portfolio_chat.pipeline.planner import PlannerStage
from portfolio_chat.retrieval.corpus import Corpus
from portfolio_chat.retrieval.engine import RetrievalEngine, RetrievalResult
from portfolio_chat.schemas import RetrievalPlan, UiHints
from portfolio_chat.stream.channel import TurnEmitter
from portfolio_chat.stream.events import ChatStreamError, ReasoningStage
from portfolio_chat.types import ChatMessage, StageUsage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnResult:
    """Everything a finished (or failed) turn produced."""

    plan: RetrievalPlan | None = None
    retrieval: RetrievalResult | None = None
    message: str = ""
    ui: UiHints = field(default_factory=UiHints)
    attachments: list[dict[str, Any]] = field(default_factory=list)
    trace: ReasoningTrace = field(default_factory=ReasoningTrace)
    stage_usage: list[StageUsage] = field(default_factory=list)
    ui_hint_warnings: list[dict[str, Any]] = field(default_factory=list)
    truncation_applied: bool = False
    duration_ms: float = 0.0
    error: ChatStreamError | None = None

    @property
    def total_cost_usd(self) -> float:
        return round(sum(usage.cost_usd or 0.0 for usage in self.stage_usage), 6)


class ChatPipeline:
    """Runs one chat turn and always finishes the stream with a single `done`.

    Planner failures degrade to an empty plan, per-source retrieval failures
    are dropped, and answer failures end the turn with an `error` event.
    """

    def __init__(
        self,
        *,
        planner: PlannerStage,
        retrieval: RetrievalEngine,
        answer: AnswerStage,
        corpus: Corpus,
        config: PipelineConfig | None = None,
    ) -> None:
        self.planner = planner
        self.retrieval = retrieval
        self.answer = answer
        self.corpus = corpus
        self.config = config or PipelineConfig()

    async def run(
        self,
        messages: list[ChatMessage],
        emitter: TurnEmitter,
        *,
        signal: asyncio.Event | None = None,
        result: TurnResult | None = None,
    ) -> TurnResult:
        """Run one turn into `result`.

        Stage usage lands on `result` as each stage finishes, so a caller that
        cancels the turn can still account for the stages that already ran.
        """
        result = result if result is not None else TurnResult()
        accumulator = ReasoningTraceAccumulator()
        stage: list[ReasoningStage] = ["planner"]

        with Timer() as timer:
            try:
                await asyncio.wait_for(
                    self._run_stages(messages, emitter, result, accumulator, stage, signal),
                    timeout=self.config.soft_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = LlmTimeoutError(
                    "pipeline",
                    f"The response took longer than {self.config.soft_timeout_seconds:.0f}s. Please try again.",
                )
                self._fail(result, accumulator, emitter, stage[0], error.to_stream_error())
            except ChatPipelineError as exc:
                self._fail(result, accumulator, emitter, stage[0], exc.to_stream_error())
            except Exception as exc:
                logger.exception("chat.pipeline.unexpected_error stage=%s", stage[0])
                self._fail(result, accumulator, emitter, stage[0], internal_error(exc))
            finally:
                result.trace = accumulator.trace

        result.duration_ms = timer.elapsed_ms
        emitter.done(
            total_duration_ms=round(result.duration_ms, 1),
            truncation_applied=result.truncation_applied,
        )
        logger.info(
            "chat.pipeline.summary topic=%s queries=%d documents=%d cost_usd=%.6f duration_ms=%.0f error=%s",
            result.plan.topic if result.plan else "",
            len(result.plan.queries) if result.plan else 0,
            len(result.retrieval.documents) if result.retrieval else 0,
            result.total_cost_usd,
            result.duration_ms,
            result.error.code if result.error else None,
        )
        return result

    async def _run_stages(
        self,
        messages: list[ChatMessage],
        emitter: TurnEmitter,
        result: TurnResult,
        accumulator: ReasoningTraceAccumulator,
        stage: list[ReasoningStage],
        signal: asyncio.Event | None,
    ) -> None:
        window = apply_sliding_window(messages, self.config.history)
        result.truncation_applied = window.truncation_applied

        emitter.declare(emitter.reasoning_item_id, "reasoning")
        emitter.declare(emitter.answer_item_id, "answer")

        stage[0] = "planner"
        emitter.stage("planner", "start")
        plan, planner_usage = await self.planner.plan(
            window.messages, profile=self.corpus.profile, signal=signal
        )
        result.plan = plan
        result.stage_usage.append(planner_usage)
        accumulator.set_plan(plan)
        emitter.reasoning("planner", accumulator.snapshot())
        emitter.stage("planner", "complete", plan.duration_ms)

        stage[0] = "retrieval"
        emitter.stage("retrieval", "start")
        with Timer() as retrieval_timer:
            retrieval = await self.retrieval.execute(plan.queries) if plan.queries else RetrievalResult()
        result.retrieval = retrieval
        accumulator.set_retrieval(retrieval.summaries, retrieval.doc_refs())
        emitter.reasoning("retrieval", accumulator.snapshot())
        emitter.stage("retrieval", "complete", retrieval_timer.elapsed_ms)

        stage[0] = "answer"
        emitter.stage("answer", "start")
        outcome = await self.answer.answer(
            window.messages,
            plan,
            retrieval,
            self.corpus,
            emitter.token,
            signal=signal,
        )
        result.message = outcome.payload.message
        result.ui = outcome.ui
        result.attachments = outcome.attachments
        result.ui_hint_warnings = outcome.ui_hint_warnings
        result.stage_usage.append(outcome.usage)

        for attachment in outcome.attachments:
            emitter.attachment(attachment)
        emitter.ui_actions(outcome.ui.to_wire())

        accumulator.set_answer(
            AnswerMeta(
                model=outcome.usage.model,
                thoughts=outcome.payload.thoughts,
                ui_hint_warnings=outcome.ui_hint_warnings,
                duration_ms=outcome.duration_ms,
                usage=outcome.usage.usage.to_dict() if outcome.usage.usage else None,
                cost_usd=outcome.usage.cost_usd,
            )
        )
        emitter.reasoning("answer", accumulator.snapshot())
        emitter.stage("answer", "complete", outcome.duration_ms)

    def _fail(
        self,
        result: TurnResult,
        accumulator: ReasoningTraceAccumulator,
        emitter: TurnEmitter,
        stage: ReasoningStage,
        error: ChatStreamError,
    ) -> None:
        logger.warning(
            "chat.pipeline.error stage=%s code=%s message=%s", stage, error.code, error.message
        )
        result.error = error
        accumulator.set_error(stage, error)
        emitter.reasoning(stage, accumulator.snapshot())
        emitter.error(error)
