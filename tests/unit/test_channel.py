import asyncio

from portfolio_chat.stream.channel import EventChannel, TurnEmitter
from portfolio_chat.stream.events import ChatStreamError


async def _drain(channel: EventChannel) -> list:
    return [event async for event in channel]


def test_emitter_declares_items_once_and_closes_on_done() -> None:
    async def scenario() -> list:
        channel = EventChannel()
        emitter = TurnEmitter(channel, "t1")
        emitter.stage("planner", "start")
        emitter.reasoning("planner", {"plan": None})
        emitter.token("Hi")
        emitter.token("")
        emitter.token(" there")
        emitter.attachment({"type": "project", "id": "p1"})
        emitter.done(total_duration_ms=5.0)
        emitter.token("late")
        emitter.done()
        return await _drain(channel)

    events = asyncio.run(scenario())

    assert [e.type for e in events] == [
        "item",
        "stage",
        "reasoning",
        "item",
        "token",
        "token",
        "item",
        "attachment",
        "done",
    ]
    items = [e.item_id for e in events if e.type == "item"]
    assert items == ["t1:reasoning", "t1", "t1:attachment:project:p1"]
    assert sum(1 for e in events if e.type == "done") == 1


def test_reasoning_can_be_disabled() -> None:
    async def scenario() -> list:
        channel = EventChannel()
        emitter = TurnEmitter(channel, "t2", reasoning_enabled=False)
        emitter.reasoning("planner", {"plan": None})
        emitter.stage("planner", "complete", 3.0)
        emitter.error(ChatStreamError(code="llm_error", message="boom", retryable=True))
        emitter.done()
        return await _drain(channel)

    events = asyncio.run(scenario())

    assert [e.type for e in events] == ["item", "stage", "item", "error", "done"]
    assert events[-1].anchor_id == "t2"


def test_channel_ignores_sends_after_close() -> None:
    async def scenario() -> list:
        channel = EventChannel()
        emitter = TurnEmitter(channel, "t3")
        channel.close()
        channel.close()
        emitter.token("ignored")
        return await _drain(channel)

    assert asyncio.run(scenario()) == []
