"""Parsing helpers for partial and final JSON model output."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_MESSAGE_KEY = re.compile(r'"message"\s*:\s*"')
_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}


def extract_first_json_block(raw: str) -> str | None:
    """First balanced `{...}` block, respecting strings; None when unbalanced."""
    start = raw.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape = False
    for index in range(start, len(raw)):
        char = raw[index]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return raw[start : index + 1]
    return None


def repair_json_snapshot(raw: str) -> str | None:
    """Close an in-progress JSON object so it parses.

    Drops a trailing comma, closes an open string and balances braces and
    brackets. The result may still be invalid (e.g. a dangling key).
    """
    start = raw.find("{")
    value = (raw if start == -1 else raw[start:]).rstrip()
    if not value:
        return None

    stack: list[str] = []
    in_string = False
    escape = False
    for char in value:
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack:
            stack.pop()

    if escape:
        value = value[:-1]
    if in_string:
        value += '"'
    elif value.endswith(","):
        value = value[:-1].rstrip()
    return value + "".join(reversed(stack))


def parse_streaming_candidate(snapshot: str) -> Any | None:
    block = extract_first_json_block(snapshot) or snapshot
    for candidate in (block, repair_json_snapshot(block)):
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def extract_streaming_message(snapshot: str) -> str | None:
    """The `message` string as written so far, or None before it starts."""
    parsed = parse_streaming_candidate(snapshot)
    if isinstance(parsed, dict) and isinstance(parsed.get("message"), str):
        return parsed["message"]
    return _scan_partial_message(snapshot)


def load_json_candidate(raw: str) -> Any | None:
    """Final-output parse: the whole text, else its first JSON block."""
    text = raw.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    block = extract_first_json_block(text)
    if block is None:
        return None
    try:
        return json.loads(block)
    except json.JSONDecodeError:
        logger.debug("json.block_unparseable length=%d", len(block))
        return None


def chunk_text(text: str, size: int = 120) -> list[str]:
    if not text.strip():
        return []
    return [text[i : i + size] for i in range(0, len(text), size)]


class MessageDeltaTracker:
    """Turns cumulative snapshots into `message` deltas.

    Only growth that extends what was already emitted is forwarded; shrinking
    or diverging snapshots emit nothing.
    """

    def __init__(self) -> None:
        self.emitted = ""

    def update(self, snapshot: str) -> str:
        message = extract_streaming_message(snapshot)
        if message is None:
            return ""
        return self._advance(message)

    def finish(self, final_message: str) -> list[str]:
        """Deltas still owed once the final message is known."""
        if not self.emitted:
            chunks = chunk_text(final_message)
            self.emitted = final_message
            return chunks
        if final_message.startswith(self.emitted):
            rest = final_message[len(self.emitted) :]
            self.emitted = final_message
            return [rest] if rest else []
        logger.warning(
            "answer.stream_diverged emitted=%d final=%d", len(self.emitted), len(final_message)
        )
        return []

    def _advance(self, message: str) -> str:
        if len(message) <= len(self.emitted) or not message.startswith(self.emitted):
            return ""
        delta = message[len(self.emitted) :]
        self.emitted = message
        return delta


def _scan_partial_message(snapshot: str) -> str | None:
    match = _MESSAGE_KEY.search(snapshot)
    if match is None:
        return None
    chars: list[str] = []
    index = match.end()
    while index < len(snapshot):
        char = snapshot[index]
        if char == '"':
            break
        if char != "\\":
            chars.append(char)
            index += 1
            continue
        if index + 1 >= len(snapshot):
            break
        code = snapshot[index + 1]
        if code == "u":
            digits = snapshot[index + 2 : index + 6]
            if len(digits) < 4:
                break
            try:
                chars.append(chr(int(digits, 16)))
            except ValueError:
                break
            index += 6
            continue
        chars.append(_ESCAPES.get(code, code))
        index += 2
    return "".join(chars)
