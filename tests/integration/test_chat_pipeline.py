import asyncio
import threading
from datetime import datetime, timezone

import pytest

from portfolio_chat.config import BudgetConfig, PipelineConfig
from portfolio_chat.cost.budget import CostTracker, month_key
from portfolio_chat.cost.store import InMemoryCostStore
from portfolio_chat.errors import BudgetExceededError, LlmProviderError
from portfolio_chat.pipeline.answer import AnswerStage
from portfolio_chat.pipeline.planner import PlannerStage
from portfolio_chat.pipeline.runtime import ChatPipeline
from portfolio_chat.pipeline.service import ChatService
from portfolio_chat.retrieval.engine import RetrievalEngine
from portfolio_chat.stream.channel import EventChannel, TurnEmitter
from portfolio_chat.stream.sse import decode_sse
from portfolio_chat.types import ChatMessage, TokenUsage

QUESTION = [ChatMessage("user", "Tell me about your AI project")]

AI_PLAN = {
    "thoughts": ["Looking for AI projects"],
    "queries": [{"source": "projects", "text": "AI project", "limit": 5}],
    "topic": "AI projects",
    "useProfileContext": False,
}

AI_ANSWER = {
    "message": "My main AI project is Vision Lab, which tags photos with a fine-tuned model.",
    "thoughts": ["vision-lab is the AI project"],
    "uiHints": {"projects": ["vision-lab"], "experiences": [], "education": [], "links": []},
}


def _pipeline(client, corpus, embedder, config: PipelineConfig | None = None) -> ChatPipeline:
    config = config or PipelineConfig(owner_name="Sam Rivera")
    return ChatPipeline(
        planner=PlannerStage(client, config),
        retrieval=RetrievalEngine(corpus, embedder, config.retrieval),
        answer=AnswerStage(client, config),
        corpus=corpus,
        config=config,
    )


def _run(pipeline: ChatPipeline, messages=QUESTION):
    async def scenario():
        channel = EventChannel()
        emitter = TurnEmitter(channel, "turn-1")
        result = await pipeline.run(messages, emitter)
        events = [event async for event in channel]
        return result, events

    return asyncio.run(scenario())


def test_turn_plans_retrieves_and_streams_answer(scripted_client, corpus, embedder) -> None:
    client = scripted_client(plan=AI_PLAN, answer=AI_ANSWER, usage=TokenUsage.from_counts(1000, 200))

    result, events = _run(_pipeline(client, corpus, embedder))

    assert result.error is None
    assert [q.source for q in result.plan.queries] == ["projects"]
    assert result.plan.queries[0].text == "AI project"
    assert result.plan.queries[0].limit == 5
    assert result.retrieval.summaries[0].effective_top_k == 3
    assert result.message == AI_ANSWER["message"]
    assert [a["id"] for a in result.attachments] == ["vision-lab"]
    assert result.total_cost_usd > 0

    text = "".join(e.delta for e in events if e.type == "token")
    assert text == AI_ANSWER["message"]
    assert events[-1].type == "done"
    assert sum(1 for e in events if e.type == "done") == 1
    assert [e.stage for e in events if e.type == "stage" and e.status == "complete"] == [
        "planner",
        "retrieval",
        "answer",
    ]
    assert [e.item_id for e in events if e.type == "item"] == [
        "turn-1:reasoning",
        "turn-1",
        "turn-1:attachment:project:vision-lab",
    ]

    final_trace = [e for e in events if e.type == "reasoning"][-1].trace
    assert final_trace["plan"]["topic"] == "AI projects"
    assert final_trace["retrieval"][0]["source"] == "projects"
    assert final_trace["answer"]["thoughts"] == ["vision-lab is the AI project"]
    assert final_trace["error"] is None


def test_greeting_skips_retrieval_and_clears_hints(scripted_client, corpus, embedder) -> None:
    client = scripted_client(
        answer={"message": "Hi! Ask me anything.", "uiHints": {"projects": ["vision-lab"]}},
    )

    result, events = _run(_pipeline(client, corpus, embedder), [ChatMessage("user", "hi")])

    assert result.plan.queries == []
    assert result.retrieval.documents == []
    assert result.ui.is_empty()
    assert not any(e.type == "attachment" for e in events)
    assert "Sam Rivera" in client.prompts[1].user_content


def test_planner_failure_degrades_to_empty_plan(scripted_client, corpus, embedder) -> None:
    client = scripted_client(plan_error=LlmProviderError("scripted", "planner down"))

    result, events = _run(_pipeline(client, corpus, embedder))

    assert result.error is None
    assert result.plan.queries == []
    assert result.message == "Hello!"
    assert events[-1].type == "done"


def test_answer_failure_emits_error_then_done(scripted_client, corpus, embedder) -> None:
    client = scripted_client(plan=AI_PLAN, answer_error=LlmProviderError("scripted", "503 overloaded"))

    result, events = _run(_pipeline(client, corpus, embedder))

    assert result.error is not None and result.error.code == "llm_error"
    assert [e.type for e in events][-2:] == ["error", "done"]
    trace = [e for e in events if e.type == "reasoning"][-1].trace
    assert trace["error"]["stage"] == "answer"
    assert trace["plan"] is not None
    assert trace["answer"] is None


def test_soft_timeout_ends_turn_with_llm_timeout(scripted_client, corpus, embedder) -> None:
    class SlowClient(scripted_client):
        async def stream_structured_json(self, prompt, on_snapshot):
            await asyncio.sleep(5)
            return await super().stream_structured_json(prompt, on_snapshot)

    pipeline = _pipeline(SlowClient(), corpus, embedder, PipelineConfig(soft_timeout_seconds=0.1))
    result, events = _run(pipeline)

    assert result.error is not None and result.error.code == "llm_timeout"
    assert result.error.retryable is True
    assert [e.type for e in events][-2:] == ["error", "done"]


def test_budget_refusal_happens_before_any_provider_call(scripted_client, corpus, embedder) -> None:
    client = scripted_client(plan=AI_PLAN, answer=AI_ANSWER)
    store = InMemoryCostStore()
    store.seed(month_key(datetime.now(timezone.utc)), 9.8, 40)
    tracker = CostTracker(store, BudgetConfig(budget_usd=10.0))
    service = ChatService(_pipeline(client, corpus, embedder), cost_tracker=tracker)

    with pytest.raises(BudgetExceededError) as exc_info:
        service.admit("127.0.0.1")

    assert exc_info.value.to_stream_error().code == "budget_exceeded"
    assert client.calls == 0
    assert tracker.current_state().level.value == "critical"


def test_async_admission_reads_budget_off_the_event_loop(scripted_client, corpus, embedder) -> None:
    class RecordingStore(InMemoryCostStore):
        def __init__(self) -> None:
            super().__init__()
            self.read_threads: list[int] = []

        def read(self, month_key: str):
            self.read_threads.append(threading.get_ident())
            return super().read(month_key)

    store = RecordingStore()
    service = ChatService(
        _pipeline(scripted_client(), corpus, embedder),
        cost_tracker=CostTracker(store, BudgetConfig(budget_usd=10.0)),
    )

    async def scenario() -> int:
        await service.admit_turn("127.0.0.1", QUESTION)
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())

    assert len(store.read_threads) == 1
    assert store.read_threads[0] != loop_thread


def test_service_records_spend_and_trace(scripted_client, corpus, embedder) -> None:
    client = scripted_client(plan=AI_PLAN, answer=AI_ANSWER, usage=TokenUsage.from_counts(1000, 200))
    tracker = CostTracker(InMemoryCostStore(), BudgetConfig(budget_usd=10.0))
    service = ChatService(_pipeline(client, corpus, embedder), cost_tracker=tracker)

    async def scenario() -> list[str]:
        return [frame async for frame in service.stream_turn(QUESTION, anchor_id="turn-9")]

    frames = asyncio.run(scenario())

    assert decode_sse(frames[-1]).type == "done"
    state = tracker.current_state()
    assert state.turn_count == 1
    assert state.spend_usd > 0
    [record] = service.trace_store.list_recent()
    assert record.question == "Tell me about your AI project"
    assert record.topic == "AI projects"
    assert record.input_tokens == 2000
    assert record.error_code is None


def _hanging_answer_client(scripted_client):
    class HangingAnswerClient(scripted_client):
        answer_cancelled = False

        async def stream_structured_json(self, prompt, on_snapshot):
            self.prompts.append(prompt)
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.answer_cancelled = True
                raise

    return HangingAnswerClient(plan=AI_PLAN, usage=TokenUsage.from_counts(100_000, 10_000))


async def _close_after_answer_starts(service: ChatService, signal: asyncio.Event) -> list[str]:
    frames: list[str] = []
    stream = service.stream_turn(QUESTION, anchor_id="turn-5", signal=signal)
    async for frame in stream:
        frames.append(frame)
        event = decode_sse(frame)
        if event.type == "stage" and event.stage == "answer" and event.status == "start":
            break
    await stream.aclose()
    return frames


def test_disconnect_mid_answer_still_records_planner_spend(scripted_client, corpus, embedder) -> None:
    client = _hanging_answer_client(scripted_client)
    tracker = CostTracker(InMemoryCostStore(), BudgetConfig(budget_usd=10.0))
    service = ChatService(_pipeline(client, corpus, embedder), cost_tracker=tracker)

    frames = asyncio.run(_close_after_answer_starts(service, asyncio.Event()))

    assert decode_sse(frames[-1]).type == "stage"
    state = tracker.current_state()
    assert state.turn_count == 1
    assert state.spend_usd == pytest.approx(0.045)
    [record] = service.trace_store.list_recent()
    assert record.error_code == "stream_interrupted"
    assert record.topic == "AI projects"


def test_closing_stream_sets_signal_and_cancels_provider_call(scripted_client, corpus, embedder) -> None:
    client = _hanging_answer_client(scripted_client)
    service = ChatService(_pipeline(client, corpus, embedder))
    signal = asyncio.Event()

    asyncio.run(_close_after_answer_starts(service, signal))

    assert signal.is_set()
    assert client.answer_cancelled is True
    assert client.calls == 2
