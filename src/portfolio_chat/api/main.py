"""FastAPI application for the streaming chat, trace, cost and search endpoints."""

from __future__ import annotations

import math
import uuid
from dataclasses import asdict
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import Field

from portfolio_chat.config import MAX_QUERY_LIMIT
from portfolio_chat.context import AppContext
from portfolio_chat.errors import (
    BudgetExceededError,
    ChatPipelineError,
    InputModeratedError,
    LlmProviderError,
    RateLimitedError,
    RetrievalError,
)
from portfolio_chat.pipeline.service import refusal_frames
from portfolio_chat.schemas import RetrievalQuery
from portfolio_chat.stream.events import WireModel
from portfolio_chat.stream.sse import SSE_HEADERS
from portfolio_chat.types import ChatMessage, RetrievalSource


class ChatMessageIn(WireModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(WireModel):
    messages: list[ChatMessageIn] = Field(min_length=1)
    response_anchor_id: str | None = None
    conversation_id: str | None = None
    reasoning_enabled: bool = True


class SourceSearchRequest(WireModel):
    query: str = ""
    source: RetrievalSource = "projects"
    top_k: int = Field(default=5, ge=1, le=MAX_QUERY_LIMIT)


def create_app(context: AppContext) -> FastAPI:
    app = FastAPI(title="Portfolio Chat", version="0.1.0")
    app.state.context = context
    service = context.service

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "provider": context.providers.default_name,
            "embedding_model": context.embedder.model_name,
            "projects": len(context.corpus.projects.documents),
            "resume_entries": len(context.corpus.resume.documents),
            "profile_loaded": context.corpus.profile is not None,
            "trace_count": len(context.trace_store),
        }

    @app.post("/chat")
    async def chat(payload: ChatRequest, request: Request) -> StreamingResponse:
        anchor_id = payload.response_anchor_id or uuid.uuid4().hex
        client_id = request.client.host if request.client else "anonymous"
        messages = [ChatMessage(role=m.role, content=m.content) for m in payload.messages]
        try:
            await service.admit_turn(client_id, messages)
        except RateLimitedError as exc:
            return _refusal(exc, anchor_id, status_code=429)
        except BudgetExceededError as exc:
            return _refusal(exc, anchor_id, status_code=503)
        except InputModeratedError as exc:
            return _refusal(exc, anchor_id, status_code=200)
        except LlmProviderError as exc:
            return _refusal(exc, anchor_id, status_code=503)

        return StreamingResponse(
            service.stream_turn(
                messages,
                anchor_id=anchor_id,
                reasoning_enabled=payload.reasoning_enabled,
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/sources/search")
    async def source_search(payload: SourceSearchRequest) -> JSONResponse:
        if payload.source != "profile" and not payload.query.strip():
            raise HTTPException(status_code=422, detail="query must not be empty")
        query = RetrievalQuery(source=payload.source, text=payload.query or None, limit=payload.top_k)
        try:
            outcome = await context.retrieval.retrieve(query)
        except ChatPipelineError as exc:
            return _error_response(exc)
        except Exception as exc:
            return _error_response(RetrievalError(f"Search failed: {exc}"))

        return JSONResponse(
            {
                "summary": outcome.summary.to_wire(),
                "items": [
                    {
                        "id": hit.document.doc_id,
                        "kind": hit.document.kind,
                        "title": hit.document.title,
                        "score": hit.score,
                        "rank": hit.rank,
                    }
                    for hit in outcome.documents
                ],
            }
        )

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        records = [asdict(record) for record in context.trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = context.trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return context.trace_store.summary()

    @app.get("/cost")
    def cost() -> dict[str, Any]:
        return context.cost_tracker.current_state().to_wire()

    return app


def _refusal(error: ChatPipelineError, anchor_id: str, *, status_code: int) -> StreamingResponse:
    headers = dict(SSE_HEADERS)
    if error.retry_after_ms is not None:
        headers["Retry-After"] = str(max(1, math.ceil(error.retry_after_ms / 1000)))
    return StreamingResponse(
        iter(refusal_frames(error, anchor_id)),
        status_code=status_code,
        media_type="text/event-stream",
        headers=headers,
    )


def _error_response(error: ChatPipelineError) -> JSONResponse:
    return JSONResponse({"error": error.to_stream_error().to_wire()}, status_code=502)
