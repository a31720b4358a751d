"""Turn tracing, timing and token estimation."""

from __future__ import annotations

import math
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from portfolio_chat.types import StageUsage

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class TurnRecord:
    trace_id: str
    timestamp_utc: str
    question: str
    topic: str
    answer_preview: str
    query_count: int
    document_count: int
    stage_usage: list[StageUsage]
    input_tokens: int
    output_tokens: int
    estimated_cost_usd: float
    latency_ms: float
    error_code: str | None = None
    ui_hint_warnings: list[dict[str, object]] = field(default_factory=list)


class TurnTraceStore:
    """In-memory record of completed turns for API-level observability."""

    def __init__(self, *, max_records: int = 500) -> None:
        self._records: dict[str, TurnRecord] = {}
        self._max_records = max_records

    def create_record(
        self,
        *,
        question: str,
        topic: str,
        answer: str,
        query_count: int,
        document_count: int,
        stage_usage: list[StageUsage],
        latency_ms: float,
        error_code: str | None = None,
        ui_hint_warnings: list[dict[str, object]] | None = None,
    ) -> TurnRecord:
        input_tokens = sum(s.usage.prompt_tokens for s in stage_usage if s.usage)
        output_tokens = sum(s.usage.completion_tokens for s in stage_usage if s.usage)
        record = TurnRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            question=question,
            topic=topic,
            answer_preview=answer[:320],
            query_count=query_count,
            document_count=document_count,
            stage_usage=stage_usage,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost_usd=round(sum(s.cost_usd or 0.0 for s in stage_usage), 6),
            latency_ms=latency_ms,
            error_code=error_code,
            ui_hint_warnings=ui_hint_warnings or [],
        )
        self._records[record.trace_id] = record
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))
        return record

    def get(self, trace_id: str) -> TurnRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TurnRecord]:
        return list(self._records.values())[-limit:]

    def __len__(self) -> int:
        return len(self._records)

    def summary(self) -> dict[str, object]:
        """Turn counts, latency percentiles, tokens and spend over the stored turns."""
        records = list(self._records.values())
        latencies = sorted(record.latency_ms for record in records)
        errors: dict[str, int] = {}
        stage_cost: dict[str, float] = {}
        for record in records:
            if record.error_code:
                errors[record.error_code] = errors.get(record.error_code, 0) + 1
            for usage in record.stage_usage:
                stage_cost[usage.stage] = stage_cost.get(usage.stage, 0.0) + (usage.cost_usd or 0.0)

        return {
            "total_turns": len(records),
            "failed_turns": sum(errors.values()),
            "errors_by_code": errors,
            "p50_latency_ms": _percentile(latencies, 0.50),
            "p95_latency_ms": _percentile(latencies, 0.95),
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_estimated_cost_usd": round(sum(stage_cost.values()), 6),
            "cost_by_stage_usd": {stage: round(cost, 6) for stage, cost in stage_cost.items()},
        }


def _percentile(sorted_values: list[float], fraction: float) -> float:
    if not sorted_values:
        return 0.0
    index = min(len(sorted_values) - 1, max(0, math.ceil(fraction * len(sorted_values)) - 1))
    return round(sorted_values[index], 1)


class Timer:
    """Wall-clock timer for one stage; `elapsed_ms` is set on exit."""

    def __init__(self) -> None:
        self.started_at = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self.started_at = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self.started_at) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
