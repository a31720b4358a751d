"""HTTP client for the streaming chat endpoint."""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import ValidationError

from portfolio_chat.client.reassembler import AssistantMessage, StreamReassembler
from portfolio_chat.stream.events import ChatStreamEvent, parse_event
from portfolio_chat.stream.sse import SseDecoder
from portfolio_chat.types import ChatMessage

logger = logging.getLogger(__name__)


class ChatStreamClient:
    """Posts one chat turn and reads back its event stream.

    Refused turns (rate limit, budget) still answer with an event stream, so
    4xx/5xx responses are only raised when they are not `text/event-stream`.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 90.0,
        chat_path: str = "/chat",
    ) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self.chat_path = chat_path

    async def __aenter__(self) -> "ChatStreamClient":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def stream_turn(
        self,
        messages: list[ChatMessage],
        *,
        anchor_id: str | None = None,
        reasoning_enabled: bool = True,
    ) -> AsyncIterator[ChatStreamEvent]:
        body: dict[str, Any] = {
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "responseAnchorId": anchor_id or uuid.uuid4().hex,
            "reasoningEnabled": reasoning_enabled,
        }
        async with self._client.stream(
            "POST",
            self.chat_path,
            json=body,
            headers={"Accept": "text/event-stream"},
        ) as response:
            content_type = response.headers.get("content-type", "")
            if response.status_code >= 400 and not content_type.startswith("text/event-stream"):
                await response.aread()
                response.raise_for_status()

            decoder = SseDecoder()
            async for chunk in response.aiter_text():
                for payload in decoder.feed(chunk):
                    event = _parse(payload)
                    if event is not None:
                        yield event
            for payload in decoder.flush():
                event = _parse(payload)
                if event is not None:
                    yield event

    async def collect_turn(
        self,
        messages: list[ChatMessage],
        *,
        anchor_id: str | None = None,
        reasoning_enabled: bool = True,
    ) -> AssistantMessage:
        reassembler = StreamReassembler()
        async for event in self.stream_turn(
            messages, anchor_id=anchor_id, reasoning_enabled=reasoning_enabled
        ):
            reassembler.apply(event)
        if not reassembler.message.done:
            logger.warning("stream.ended_without_done anchor=%s", reassembler.message.anchor_id)
        return reassembler.message


def _parse(payload: dict[str, Any]) -> ChatStreamEvent | None:
    try:
        return parse_event(payload)
    except ValidationError as exc:
        logger.warning("stream.event_invalid type=%s errors=%d", payload.get("type"), exc.error_count())
        return None
