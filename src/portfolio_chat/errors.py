"""Error taxonomy shared by the pipeline, the stream encoder and the API."""

from __future__ import annotations

from enum import Enum

from portfolio_chat.stream.events import ChatStreamError


class ChatErrorCode(str, Enum):
    LLM_TIMEOUT = "llm_timeout"
    LLM_ERROR = "llm_error"
    RETRIEVAL_ERROR = "retrieval_error"
    INTERNAL_ERROR = "internal_error"
    STREAM_INTERRUPTED = "stream_interrupted"
    RATE_LIMITED = "rate_limited"
    BUDGET_EXCEEDED = "budget_exceeded"
    INPUT_MODERATED = "input_moderated"


class ChatPipelineError(Exception):
    """Base error carrying the wire code and retry hints."""

    code: ChatErrorCode = ChatErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        self.retry_after_ms = retry_after_ms

    def to_stream_error(self) -> ChatStreamError:
        return ChatStreamError(
            code=self.code.value,
            message=self.message,
            retryable=self.retryable,
            retry_after_ms=self.retry_after_ms,
        )


class LlmProviderError(ChatPipelineError):
    """A provider call was rejected, failed or exited non-zero."""

    code = ChatErrorCode.LLM_ERROR
    retryable = True

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        retryable: bool | None = None,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(
            f"[{provider}] {message}",
            retryable=retryable,
            retry_after_ms=retry_after_ms,
        )
        self.provider = provider


class LlmTimeoutError(LlmProviderError):
    code = ChatErrorCode.LLM_TIMEOUT


class LlmCancelledError(LlmProviderError):
    """The turn's cancellation signal fired while a provider call was running."""

    code = ChatErrorCode.STREAM_INTERRUPTED


class RetrievalError(ChatPipelineError):
    code = ChatErrorCode.RETRIEVAL_ERROR
    retryable = True


class BudgetExceededError(ChatPipelineError):
    code = ChatErrorCode.BUDGET_EXCEEDED


class RateLimitedError(ChatPipelineError):
    code = ChatErrorCode.RATE_LIMITED
    retryable = True


class InputModeratedError(ChatPipelineError):
    """The latest user message was flagged by input moderation."""

    code = ChatErrorCode.INPUT_MODERATED

    def __init__(self, message: str, *, categories: list[str] | None = None) -> None:
        super().__init__(message)
        self.categories = list(categories or [])


class MessageTooLongError(ChatPipelineError):
    """The latest user message is over the per-message token limit."""

    code = ChatErrorCode.INTERNAL_ERROR


def internal_error(exc: BaseException) -> ChatStreamError:
    """Wire error for an unexpected exception."""
    return ChatStreamError(
        code=ChatErrorCode.INTERNAL_ERROR.value,
        message=f"Unexpected error: {type(exc).__name__}",
        retryable=False,
    )
