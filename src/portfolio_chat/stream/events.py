"""Typed chat stream events and their JSON wire shape."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

ReasoningStage = Literal["planner", "retrieval", "answer"]


class WireModel(BaseModel):
    """Base for models serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        # Only top-level optionals are dropped; nested payloads keep their nulls.
        data = self.model_dump(by_alias=True, mode="json")
        return {key: value for key, value in data.items() if value is not None}


class ChatStreamError(WireModel):
    code: str
    message: str
    retryable: bool
    retry_after_ms: int | None = None


class ItemEvent(WireModel):
    """Declares an item; events without `itemId` belong to the message as a whole."""

    type: Literal["item"] = "item"
    item_id: str
    anchor_id: str
    kind: str | None = None


class StageEvent(WireModel):
    type: Literal["stage"] = "stage"
    item_id: str | None = None
    stage: str
    status: Literal["start", "complete"]
    duration_ms: float | None = None


class ReasoningEvent(WireModel):
    type: Literal["reasoning"] = "reasoning"
    item_id: str | None = None
    stage: ReasoningStage
    trace: dict[str, Any]


class TokenEvent(WireModel):
    """Incremental text; `token` carries full text for providers without deltas."""

    type: Literal["token"] = "token"
    item_id: str | None = None
    delta: str | None = None
    token: str | None = None


class AttachmentEvent(WireModel):
    type: Literal["attachment"] = "attachment"
    item_id: str | None = None
    attachment: dict[str, Any]


class UiActionsEvent(WireModel):
    type: Literal["ui_actions"] = "ui_actions"
    item_id: str | None = None
    ui: dict[str, Any]


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    item_id: str | None = None
    error: ChatStreamError


class DoneEvent(WireModel):
    type: Literal["done"] = "done"
    anchor_id: str | None = None
    total_duration_ms: float | None = None
    truncation_applied: bool | None = None


ChatStreamEvent = Annotated[
    Union[
        ItemEvent,
        StageEvent,
        ReasoningEvent,
        TokenEvent,
        AttachmentEvent,
        UiActionsEvent,
        ErrorEvent,
        DoneEvent,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[ChatStreamEvent] = TypeAdapter(ChatStreamEvent)


def parse_event(payload: dict[str, Any]) -> ChatStreamEvent:
    """Validate a decoded JSON object into its event model."""
    return _EVENT_ADAPTER.validate_python(payload)
