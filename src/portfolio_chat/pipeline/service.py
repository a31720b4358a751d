"""Chat turn service: admission, streaming, cost and trace recording."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from portfolio_chat.api.ratelimit import FixedWindowRateLimiter
from portfolio_chat.cost.budget import CostTracker
from portfolio_chat.errors import ChatErrorCode, ChatPipelineError
from portfolio_chat.obs.tracing import TurnTraceStore
from portfolio_chat.pipeline.moderation import ModerationGate
from portfolio_chat.pipeline.runtime import ChatPipeline, TurnResult
from portfolio_chat.stream.channel import EventChannel, TurnEmitter
from portfolio_chat.stream.events import DoneEvent, ErrorEvent, ItemEvent
from portfolio_chat.stream.sse import encode_channel, encode_sse
from portfolio_chat.types import ChatMessage

logger = logging.getLogger(__name__)


class ChatService:
    """Wraps the pipeline with the per-turn bookkeeping around it.

    Admission (rate limit, then budget, then input moderation) happens
    before any chat-model call. Spend and the turn record are written after
    the pipeline finishes, or on cancellation for the stages that already ran.
    """

    def __init__(
        self,
        pipeline: ChatPipeline,
        *,
        cost_tracker: CostTracker | None = None,
        trace_store: TurnTraceStore | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
        moderation: ModerationGate | None = None,
        cancel_grace_seconds: float = 5.0,
    ) -> None:
        self.pipeline = pipeline
        self.cost_tracker = cost_tracker
        self.trace_store = trace_store or TurnTraceStore()
        self.rate_limiter = rate_limiter
        self.moderation = moderation
        self.cancel_grace_seconds = cancel_grace_seconds

    def admit(self, client_id: str) -> None:
        """Raise `RateLimitedError` or `BudgetExceededError` when the turn must not run."""
        if self.rate_limiter is not None:
            self.rate_limiter.check(client_id)
        if self.cost_tracker is not None:
            self.cost_tracker.check_turn_allowed()

    async def admit_turn(self, client_id: str, messages: list[ChatMessage]) -> None:
        """Async admission for the HTTP path.

        The rate and budget checks read the cost store, so they run in a worker
        thread; moderation, when configured, runs last.
        """
        await asyncio.to_thread(self.admit, client_id)
        if self.moderation is not None:
            await self.moderation.check(messages)

    async def run_turn(
        self,
        messages: list[ChatMessage],
        emitter: TurnEmitter,
        *,
        signal: asyncio.Event | None = None,
    ) -> TurnResult:
        result = TurnResult()
        try:
            await self.pipeline.run(messages, emitter, signal=signal, result=result)
        except asyncio.CancelledError:
            logger.info(
                "chat.turn_cancelled stages=%d cost_usd=%.6f", len(result.stage_usage), result.total_cost_usd
            )
            await asyncio.shield(self._record_spend(result))
            self._record_trace(messages, result, ChatErrorCode.STREAM_INTERRUPTED.value)
            raise

        await self._record_spend(result)
        self._record_trace(messages, result, result.error.code if result.error else None)
        return result

    async def _record_spend(self, result: TurnResult) -> None:
        if self.cost_tracker is None or not result.stage_usage:
            return
        try:
            await asyncio.to_thread(self.cost_tracker.record_turn, result.total_cost_usd)
        except Exception as exc:
            logger.warning("cost.record_failed cost_usd=%.6f error=%s", result.total_cost_usd, exc)

    def _record_trace(self, messages: list[ChatMessage], result: TurnResult, error_code: str | None) -> None:
        self.trace_store.create_record(
            question=_latest_question(messages),
            topic=result.plan.topic if result.plan else "",
            answer=result.message,
            query_count=len(result.plan.queries) if result.plan else 0,
            document_count=len(result.retrieval.documents) if result.retrieval else 0,
            stage_usage=result.stage_usage,
            latency_ms=result.duration_ms,
            error_code=error_code,
            ui_hint_warnings=result.ui_hint_warnings,
        )

    async def stream_turn(
        self,
        messages: list[ChatMessage],
        *,
        anchor_id: str,
        reasoning_enabled: bool = True,
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Run one turn and yield its SSE frames.

        Closing the generator early (client gone) sets the turn's signal,
        cancels the pipeline task and waits briefly for it to settle its spend.
        """
        signal = signal or asyncio.Event()
        channel = EventChannel()
        emitter = TurnEmitter(channel, anchor_id, reasoning_enabled=reasoning_enabled)
        task = asyncio.create_task(self.run_turn(messages, emitter, signal=signal))
        task.add_done_callback(lambda _: channel.close())

        try:
            async for frame in encode_channel(channel):
                yield frame
            await task
        finally:
            if not task.done():
                logger.info("stream.client_disconnected anchor=%s", anchor_id)
                signal.set()
                task.cancel()
                await asyncio.wait({task}, timeout=self.cancel_grace_seconds)


def refusal_frames(error: ChatPipelineError, anchor_id: str) -> list[str]:
    """Frames for a turn refused before the pipeline started."""
    return [
        encode_sse(ItemEvent(item_id=anchor_id, anchor_id=anchor_id, kind="answer")),
        encode_sse(ErrorEvent(item_id=anchor_id, error=error.to_stream_error())),
        encode_sse(DoneEvent(anchor_id=anchor_id, total_duration_ms=0.0)),
    ]


def _latest_question(messages: list[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""
