"""Run tracing and cost accounting."""

from __future__ import annotations

import math
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from kb_agent.types import TokenUsage, ToolTrace


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    timestamp_utc: str
    question: str
    answer: str
    tool_traces: list[ToolTrace]
    input_tokens: int | None
    output_tokens: int | None
    total_tokens: int | None
    estimated_cost_usd: float
    latency_ms: float
    turns: int
    cancelled: bool


@dataclass(slots=True, frozen=True)
class CostModel:
    """USD price per 1K input and output tokens; unreported counts cost nothing."""

    input_per_1k: float = 0.005
    output_per_1k: float = 0.015

    def estimate_cost(self, usage: TokenUsage) -> float:
        input_cost = (usage.input_tokens or 0) * self.input_per_1k
        output_cost = (usage.output_tokens or 0) * self.output_per_1k
        return (input_cost + output_cost) / 1000.0


def _percentile(sorted_values: list[float], fraction: float) -> float:
    # nearest-rank
    rank = max(1, math.ceil(fraction * len(sorted_values)))
    return sorted_values[rank - 1]


class TraceStore:
    """Keeps the most recent `max_records` run traces in memory."""

    def __init__(
        self, *, cost_model: CostModel | None = None, max_records: int = 1000
    ) -> None:
        self.cost_model = cost_model or CostModel()
        self.max_records = max_records
        self._by_id: OrderedDict[str, TraceRecord] = OrderedDict()
        self._lock = threading.Lock()

    def create_record(
        self,
        *,
        question: str,
        answer: str,
        tool_traces: list[ToolTrace],
        usage: TokenUsage,
        latency_ms: float,
        turns: int,
        cancelled: bool = False,
    ) -> TraceRecord:
        record = TraceRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            question=question,
            answer=answer,
            tool_traces=list(tool_traces),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            estimated_cost_usd=self.cost_model.estimate_cost(usage),
            latency_ms=latency_ms,
            turns=turns,
            cancelled=cancelled,
        )
        with self._lock:
            self._by_id[record.trace_id] = record
            while len(self._by_id) > self.max_records:
                self._by_id.popitem(last=False)
        return record

    def get(self, trace_id: str) -> TraceRecord:
        with self._lock:
            found = self._by_id.get(trace_id)
        if found is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return found

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        """Newest last, at most `limit` records."""
        if limit <= 0:
            return []
        with self._lock:
            snapshot = list(self._by_id.values())
        return snapshot[-limit:]

    def __len__(self) -> int:
        return len(self._by_id)

    def summary(self) -> dict[str, float | int]:
        with self._lock:
            snapshot = list(self._by_id.values())

        count = len(snapshot)
        tool_calls = [trace for record in snapshot for trace in record.tool_traces]
        latencies = sorted(record.latency_ms for record in snapshot)
        return {
            "total_requests": count,
            "avg_latency_ms": sum(latencies) / count if count else 0.0,
            "p95_latency_ms": _percentile(latencies, 0.95) if count else 0.0,
            "avg_turns": sum(record.turns for record in snapshot) / count if count else 0.0,
            "total_tool_calls": len(tool_calls),
            "tool_error_count": sum(1 for trace in tool_calls if trace.error),
            "cancelled_requests": sum(1 for record in snapshot if record.cancelled),
            "total_input_tokens": sum(record.input_tokens or 0 for record in snapshot),
            "total_output_tokens": sum(record.output_tokens or 0 for record in snapshot),
            "total_estimated_cost_usd": sum(
                record.estimated_cost_usd for record in snapshot
            ),
        }


@dataclass(slots=True)
class Timer:
    """Context manager exposing wall time in milliseconds as `elapsed_ms`."""

    elapsed_ms: float = 0.0
    _started: float = field(default=0.0, repr=False)

    def __enter__(self) -> Timer:
        self._started = time.perf_counter()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.elapsed_ms = 1000.0 * (time.perf_counter() - self._started)
