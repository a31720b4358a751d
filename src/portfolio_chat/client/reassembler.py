"""Client-side reassembly of a multiplexed chat stream into one assistant message."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import ValidationError

from portfolio_chat.obs.reasoning import merge_traces
from portfolio_chat.stream.events import (
    AttachmentEvent,
    ChatStreamError,
    ChatStreamEvent,
    DoneEvent,
    ErrorEvent,
    ItemEvent,
    ReasoningEvent,
    StageEvent,
    TokenEvent,
    UiActionsEvent,
    parse_event,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TextPart:
    item_id: str | None
    text: str = ""


@dataclass(slots=True)
class AttachmentPart:
    item_id: str | None
    attachment: dict[str, Any]


@dataclass(slots=True)
class ReasoningPart:
    item_id: str | None
    trace: dict[str, Any]
    stage: str | None = None


MessagePart = Union[TextPart, AttachmentPart, ReasoningPart]


@dataclass(slots=True)
class AssistantMessage:
    """An assistant message as rendered by a client."""

    anchor_id: str | None = None
    parts: list[MessagePart] = field(default_factory=list)
    ui: dict[str, Any] | None = None
    error: ChatStreamError | None = None
    stages: dict[str, dict[str, Any]] = field(default_factory=dict)
    done: bool = False
    total_duration_ms: float | None = None
    truncation_applied: bool | None = None

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def attachments(self) -> list[dict[str, Any]]:
        return [part.attachment for part in self.parts if isinstance(part, AttachmentPart)]

    @property
    def reasoning(self) -> dict[str, Any] | None:
        for part in self.parts:
            if isinstance(part, ReasoningPart):
                return part.trace
        return None


class StreamReassembler:
    """Applies stream events to an `AssistantMessage`.

    Parts are ordered by when their item was first seen, not by when their
    frames arrive: a part is inserted before the first part whose item was
    registered later. Items first seen together keep their call order.
    """

    def __init__(self) -> None:
        self.message = AssistantMessage()
        self.item_order: list[str] = []
        self._positions: dict[str, int] = {}
        self.ignored_after_done = 0

    def register(self, item_id: str) -> int:
        position = self._positions.get(item_id)
        if position is None:
            position = len(self.item_order)
            self.item_order.append(item_id)
            self._positions[item_id] = position
        return position

    def apply_payload(self, payload: dict[str, Any]) -> bool:
        """Apply a decoded frame; invalid events are logged and skipped."""
        try:
            event = parse_event(payload)
        except ValidationError as exc:
            logger.warning("stream.event_invalid type=%s errors=%d", payload.get("type"), exc.error_count())
            return False
        return self.apply(event)

    def apply(self, event: ChatStreamEvent) -> bool:
        if self.message.done:
            self.ignored_after_done += 1
            logger.warning("stream.frame_after_done type=%s", event.type)
            return False

        if isinstance(event, DoneEvent):
            self.message.done = True
            self.message.anchor_id = event.anchor_id or self.message.anchor_id
            self.message.total_duration_ms = event.total_duration_ms
            self.message.truncation_applied = event.truncation_applied
            return True

        if isinstance(event, ItemEvent):
            self.message.anchor_id = self.message.anchor_id or event.anchor_id
            if event.item_id:
                self.register(event.item_id)
        elif isinstance(event, TokenEvent):
            self._apply_token(event)
        elif isinstance(event, AttachmentEvent):
            self._replace_part(AttachmentPart(item_id=event.item_id or None, attachment=event.attachment))
        elif isinstance(event, ReasoningEvent):
            existing = self._find_part(event.item_id or None, ReasoningPart)
            previous = self.message.parts[existing].trace if existing is not None else None
            self._replace_part(
                ReasoningPart(
                    item_id=event.item_id or None,
                    trace=merge_traces(previous, event.trace),
                    stage=event.stage,
                )
            )
        elif isinstance(event, StageEvent):
            self.message.stages[event.stage] = {"status": event.status, "durationMs": event.duration_ms}
        elif isinstance(event, UiActionsEvent):
            self.message.ui = event.ui
        elif isinstance(event, ErrorEvent):
            self.message.error = event.error
        return True

    def _apply_token(self, event: TokenEvent) -> None:
        item_id = event.item_id or None
        index = self._find_part(item_id, TextPart)
        if index is None:
            part = TextPart(item_id=item_id)
            self._insert(part)
        else:
            part = self.message.parts[index]  # type: ignore[assignment]
        if event.delta is not None:
            part.text += event.delta
        elif event.token is not None:
            part.text = event.token

    def _replace_part(self, part: MessagePart) -> None:
        index = self._find_part(part.item_id, type(part))
        if index is None:
            self._insert(part)
        else:
            self.message.parts[index] = part

    def _insert(self, part: MessagePart) -> None:
        parts = self.message.parts
        if part.item_id is None:
            parts.append(part)
            return
        position = self.register(part.item_id)
        for index, existing in enumerate(parts):
            if existing.item_id is None:
                continue
            if self._positions[existing.item_id] > position:
                parts.insert(index, part)
                return
        parts.append(part)

    def _find_part(self, item_id: str | None, part_type: type) -> int | None:
        parts = self.message.parts
        if item_id is None:
            # Untagged text extends the trailing untagged part; untagged reasoning is global.
            if part_type is TextPart:
                if parts and isinstance(parts[-1], TextPart) and parts[-1].item_id is None:
                    return len(parts) - 1
                return None
            if part_type is ReasoningPart:
                for index, part in enumerate(parts):
                    if part.item_id is None and isinstance(part, ReasoningPart):
                        return index
            return None
        for index, part in enumerate(self.message.parts):
            if part.item_id == item_id and isinstance(part, part_type):
                return index
        return None
