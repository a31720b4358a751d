import asyncio

import httpx

from portfolio_chat.api.main import create_app
from portfolio_chat.client.http import ChatStreamClient
from portfolio_chat.client.reassembler import AttachmentPart, ReasoningPart, TextPart
from portfolio_chat.config import Settings
from portfolio_chat.context import build_context
from portfolio_chat.cost.store import InMemoryCostStore
from portfolio_chat.types import ChatMessage

PLAN = {
    "thoughts": [],
    "queries": [{"source": "projects", "text": "AI project", "limit": 3}],
    "topic": "AI projects",
    "useProfileContext": False,
}
ANSWER = {
    "message": "Vision Lab is an AI photo tagger I built.",
    "thoughts": ["one AI project"],
    "uiHints": {"projects": ["vision-lab"], "experiences": [], "education": [], "links": []},
}


def _collect(app, **kwargs):
    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http_client:
            async with ChatStreamClient(http_client=http_client) as client:
                return await client.collect_turn(
                    [ChatMessage("user", "Tell me about your AI project")], **kwargs
                )

    return asyncio.run(scenario())


def _app(scripted_client, corpus, embedder, **settings):
    context = build_context(
        Settings(openai_api_key="", cost_alert_webhook_url="", **settings),
        corpus=corpus,
        embedder=embedder,
        provider_client=scripted_client(plan=PLAN, answer=ANSWER),
        cost_store=InMemoryCostStore(),
    )
    return create_app(context)


def test_client_reassembles_turn_in_item_order(scripted_client, corpus, embedder) -> None:
    message = _collect(_app(scripted_client, corpus, embedder), anchor_id="anchor-7")

    assert message.done is True
    assert message.error is None
    assert message.anchor_id == "anchor-7"
    assert message.text == ANSWER["message"]
    assert [type(part) for part in message.parts] == [ReasoningPart, TextPart, AttachmentPart]
    assert [part.item_id for part in message.parts] == [
        "anchor-7:reasoning",
        "anchor-7",
        "anchor-7:attachment:project:vision-lab",
    ]
    assert message.reasoning["answer"]["thoughts"] == ["one AI project"]
    assert message.ui["projects"] == ["vision-lab"]
    assert set(message.stages) == {"planner", "retrieval", "answer"}


def test_client_reads_refusal_stream(scripted_client, corpus, embedder) -> None:
    app = _app(scripted_client, corpus, embedder, chat_monthly_budget_usd=1.0)
    app.state.context.cost_tracker.record_turn(2.0)

    message = _collect(app)

    assert message.done is True
    assert message.error is not None and message.error.code == "budget_exceeded"
    assert message.parts == []
