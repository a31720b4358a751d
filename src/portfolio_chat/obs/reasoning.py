"""Per-turn reasoning trace: plan, retrieval, answer and error slots."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from portfolio_chat.schemas import RetrievalPlan, RetrievalSummary, RetrievedDocRef
from portfolio_chat.stream.events import ChatStreamError, WireModel


class AnswerMeta(WireModel):
    model: str
    thoughts: list[str] = Field(default_factory=list)
    ui_hint_warnings: list[dict[str, Any]] = Field(default_factory=list)
    duration_ms: float | None = None
    usage: dict[str, int] | None = None
    cost_usd: float | None = None


class ReasoningTraceError(WireModel):
    stage: str
    code: str
    message: str
    retryable: bool
    retry_after_ms: int | None = None


class ReasoningTrace(WireModel):
    plan: RetrievalPlan | None = None
    retrieval: list[RetrievalSummary] | None = None
    retrieval_docs: list[RetrievedDocRef] | None = None
    answer: AnswerMeta | None = None
    error: ReasoningTraceError | None = None


class ReasoningTraceAccumulator:
    """Fills trace slots in pipeline order; once `error` is set, later slots are refused.

    Each setter returns whether the slot was written.
    """

    def __init__(self) -> None:
        self._trace = ReasoningTrace()

    @property
    def trace(self) -> ReasoningTrace:
        return self._trace

    @property
    def failed(self) -> bool:
        return self._trace.error is not None

    def set_plan(self, plan: RetrievalPlan) -> bool:
        if self.failed:
            return False
        self._trace.plan = plan
        return True

    def set_retrieval(
        self,
        summaries: list[RetrievalSummary],
        docs: list[RetrievedDocRef],
    ) -> bool:
        if self.failed:
            return False
        if self._trace.plan is None:
            raise ValueError("retrieval recorded before plan")
        self._trace.retrieval = list(summaries)
        self._trace.retrieval_docs = list(docs)
        return True

    def set_answer(self, answer: AnswerMeta) -> bool:
        if self.failed:
            return False
        if self._trace.retrieval is None:
            raise ValueError("answer recorded before retrieval")
        self._trace.answer = answer
        return True

    def set_error(self, stage: str, error: ChatStreamError) -> None:
        if self.failed:
            return
        self._trace.error = ReasoningTraceError(
            stage=stage,
            code=error.code,
            message=error.message,
            retryable=error.retryable,
            retry_after_ms=error.retry_after_ms,
        )

    def snapshot(self) -> dict[str, Any]:
        """Wire form with every slot present (unset slots are null)."""
        return self._trace.model_dump(by_alias=True, mode="json")


def merge_traces(existing: dict[str, Any] | None, incoming: dict[str, Any]) -> dict[str, Any]:
    """Combine two partial traces: the incoming slot wins when set, else keep existing."""
    merged = dict(existing or {})
    for key, value in incoming.items():
        if value is not None or key not in merged:
            merged[key] = value
    return merged
