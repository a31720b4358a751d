"""Event channel between the pipeline and the SSE encoder."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from portfolio_chat.stream.events import (
    AttachmentEvent,
    ChatStreamError,
    ChatStreamEvent,
    DoneEvent,
    ErrorEvent,
    ItemEvent,
    ReasoningEvent,
    ReasoningStage,
    StageEvent,
    TokenEvent,
    UiActionsEvent,
)

logger = logging.getLogger(__name__)

_STREAM_END = object()


class EventChannel:
    """Unbounded FIFO of typed events, closed exactly once."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: ChatStreamEvent) -> None:
        if self._closed:
            logger.warning("stream.send_after_close type=%s", event.type)
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_STREAM_END)

    async def __aiter__(self) -> AsyncIterator[ChatStreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _STREAM_END:
                return
            yield item


class TurnEmitter:
    """Writes one turn's events, declaring items and sending `done` once.

    The answer text uses the anchor id as its item id; the reasoning trace and
    stage markers share a `:reasoning` item; each attachment is its own item.
    """

    def __init__(
        self,
        channel: EventChannel,
        anchor_id: str,
        *,
        reasoning_enabled: bool = True,
    ) -> None:
        self.channel = channel
        self.anchor_id = anchor_id
        self.answer_item_id = anchor_id
        self.reasoning_item_id = f"{anchor_id}:reasoning"
        self.reasoning_enabled = reasoning_enabled
        self._declared: list[str] = []
        self._done = False

    @property
    def done_sent(self) -> bool:
        return self._done

    @property
    def declared_items(self) -> list[str]:
        return list(self._declared)

    def declare(self, item_id: str, kind: str) -> None:
        if item_id in self._declared:
            return
        self._declared.append(item_id)
        self._send(ItemEvent(item_id=item_id, anchor_id=self.anchor_id, kind=kind))

    def stage(self, stage: str, status: str, duration_ms: float | None = None) -> None:
        self.declare(self.reasoning_item_id, "reasoning")
        self._send(
            StageEvent(
                item_id=self.reasoning_item_id,
                stage=stage,
                status=status,  # type: ignore[arg-type]
                duration_ms=duration_ms,
            )
        )

    def reasoning(self, stage: ReasoningStage, trace: dict[str, Any]) -> None:
        if not self.reasoning_enabled:
            return
        self.declare(self.reasoning_item_id, "reasoning")
        self._send(ReasoningEvent(item_id=self.reasoning_item_id, stage=stage, trace=trace))

    def token(self, delta: str) -> None:
        if not delta:
            return
        self.declare(self.answer_item_id, "answer")
        self._send(TokenEvent(item_id=self.answer_item_id, delta=delta))

    def attachment(self, attachment: dict[str, Any]) -> None:
        item_id = f"{self.anchor_id}:attachment:{attachment['type']}:{attachment['id']}"
        self.declare(item_id, "attachment")
        self._send(AttachmentEvent(item_id=item_id, attachment=attachment))

    def ui_actions(self, ui: dict[str, Any]) -> None:
        self.declare(self.answer_item_id, "answer")
        self._send(UiActionsEvent(item_id=self.answer_item_id, ui=ui))

    def error(self, error: ChatStreamError) -> None:
        self.declare(self.answer_item_id, "answer")
        self._send(ErrorEvent(item_id=self.answer_item_id, error=error))

    def done(
        self,
        *,
        total_duration_ms: float | None = None,
        truncation_applied: bool | None = None,
    ) -> None:
        self._send(
            DoneEvent(
                anchor_id=self.anchor_id,
                total_duration_ms=total_duration_ms,
                truncation_applied=truncation_applied,
            )
        )
        self._done = True
        self.channel.close()

    def _send(self, event: ChatStreamEvent) -> None:
        if self._done:
            logger.warning("stream.event_after_done type=%s anchor=%s", event.type, self.anchor_id)
            return
        self.channel.send(event)
