"""Server-Sent-Events framing for chat stream events."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from portfolio_chat.stream.channel import EventChannel
from portfolio_chat.stream.events import ChatStreamEvent, WireModel, parse_event

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_sse(event: WireModel) -> str:
    """Serialise one event as a `data: <json>` frame."""
    payload = json.dumps(event.to_wire(), ensure_ascii=False, separators=(",", ":"))
    return f"data: {payload}\n\n"


def decode_sse(frame: str) -> ChatStreamEvent:
    """Decode a single encoded frame back into its event model."""
    payload = decode_frame(frame)
    if payload is None:
        raise ValueError("frame carries no JSON payload")
    return parse_event(payload)


async def encode_channel(channel: EventChannel) -> AsyncIterator[str]:
    """Drain a channel into SSE frames until it is closed."""
    async for event in channel:
        yield encode_sse(event)


class SseDecoder:
    """Incremental parser for `text/event-stream` bodies.

    Chunks may split frames (and lines) at arbitrary points; only complete
    frames are returned from `feed`.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[dict[str, Any]]:
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        payloads: list[dict[str, Any]] = []
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            payload = decode_frame(raw)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[dict[str, Any]]:
        raw, self._buffer = self._buffer, ""
        if not raw.strip():
            return []
        payload = decode_frame(raw)
        return [payload] if payload is not None else []


def decode_frame(raw: str) -> dict[str, Any] | None:
    data_lines: list[str] = []
    for line in raw.split("\n"):
        line = line.rstrip("\r")
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)

    if not data_lines:
        return None
    data = "\n".join(data_lines).strip()
    if not data:
        logger.debug("stream.blank_frame")
        return None
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        logger.warning("stream.frame_parse_failed error=%s frame=%.120s", exc, data)
        return None
    if not isinstance(payload, dict):
        logger.warning("stream.frame_not_object frame=%.120s", data)
        return None
    return payload
