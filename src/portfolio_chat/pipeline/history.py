"""Sliding-window trimming of conversation history."""

from __future__ import annotations

from dataclasses import dataclass

from portfolio_chat.config import HistoryConfig
from portfolio_chat.errors import MessageTooLongError
from portfolio_chat.obs.tracing import estimate_token_count
from portfolio_chat.types import ChatMessage


@dataclass(slots=True)
class HistoryWindow:
    messages: list[ChatMessage]
    token_count: int
    truncation_applied: bool

    @property
    def latest_user_message(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""

    def tail(self, limit: int) -> list[ChatMessage]:
        return self.messages[-limit:]


def apply_sliding_window(
    messages: list[ChatMessage],
    config: HistoryConfig | None = None,
) -> HistoryWindow:
    """Keep the most recent turns that fit the token limit.

    A turn is a user message plus the assistant replies after it. At least
    `min_recent_turns` turns are kept even when they exceed the limit.
    """
    config = config or HistoryConfig()
    latest_user = next((m for m in reversed(messages) if m.role == "user"), None)
    if latest_user is None:
        raise ValueError("conversation has no user message")

    latest_tokens = estimate_token_count(latest_user.content)
    if latest_tokens > config.max_user_message_tokens:
        raise MessageTooLongError(
            f"Message is too long ({latest_tokens} tokens, limit "
            f"{config.max_user_message_tokens}). Please shorten it."
        )

    kept: list[list[ChatMessage]] = []
    total = 0
    for turn in reversed(_group_turns(messages)):
        tokens = sum(estimate_token_count(m.content) for m in turn)
        if len(kept) >= config.min_recent_turns and total + tokens > config.max_conversation_tokens:
            break
        kept.append(turn)
        total += tokens
    kept.reverse()

    window = [message for turn in kept for message in turn]
    return HistoryWindow(
        messages=window,
        token_count=total,
        truncation_applied=len(window) < len(messages),
    )


def format_conversation(messages: list[ChatMessage]) -> str:
    return "\n".join(
        f"{'User' if m.role == 'user' else 'Assistant'}: {m.content.strip()}" for m in messages
    )


def _group_turns(messages: list[ChatMessage]) -> list[list[ChatMessage]]:
    turns: list[list[ChatMessage]] = []
    for message in messages:
        if message.role == "user" or not turns:
            turns.append([message])
        else:
            turns[-1].append(message)
    return turns
