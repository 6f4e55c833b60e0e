"""Bounded tool-calling loop between a chat model and a set of tools."""

from __future__ import annotations

import contextvars
import json
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Any, Protocol

import structlog

from kb_agent.agent.registry import ToolSpec
from kb_agent.config import AgentConfig
from kb_agent.errors import (
    GuardrailRejected,
    ModelInvocationError,
    RunCancelled,
    ToolArgumentError,
)
from kb_agent.obs.hooks import InstrumentationHooks, span
from kb_agent.types import (
    InferenceResult,
    Message,
    ModelTurn,
    Role,
    TokenUsage,
    ToolCallRequest,
    ToolExecutionResult,
    ToolTrace,
    merge_usage,
)

logger = structlog.get_logger(__name__)

ToolExecutor = Callable[[str, dict[str, Any]], str]
Guardrail = Callable[[str], bool]
ToolTraceObserver = Callable[[ToolTrace], None]


class ModelInvoker(Protocol):
    """Performs one model call over the transcript with the given tools."""

    def __call__(
        self, transcript: Sequence[Message], tool_specs: Sequence[ToolSpec]
    ) -> ModelTurn: ...


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def parse_arguments(raw: str | None) -> dict[str, Any]:
    """Decode tool arguments; blank text means no arguments."""

    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolArgumentError(f"Failed to parse tool arguments JSON: {raw}") from exc
    if not isinstance(parsed, dict):
        raise ToolArgumentError(f"Tool arguments must be a JSON object: {raw}")
    return parsed


class ToolWorkerPool:
    """Bounded thread pool that retires itself once stuck tools fill it.

    A tool abandoned after its timeout keeps its worker thread until it
    returns. When every worker of the current executor is held by such a
    tool, a fresh executor takes over and `generation` is bumped; calls still
    queued on the retired executor must be resubmitted by their owner.
    """

    def __init__(self, max_workers: int) -> None:
        self.max_workers = max_workers
        self.generation = 0
        self._stuck = 0
        self._lock = threading.Lock()
        self._executor = self._spawn()

    def _spawn(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="kb-agent-tool"
        )

    def submit(self, fn: Callable[..., Any], /, *args: Any) -> tuple[Future[Any], int]:
        with self._lock:
            return self._executor.submit(fn, *args), self.generation

    def abandon(self, future: Future[Any], generation: int) -> None:
        retired: ThreadPoolExecutor | None = None
        with self._lock:
            if generation != self.generation:
                return
            self._stuck += 1
            if self._stuck >= self.max_workers:
                retired = self._executor
                self._executor = self._spawn()
                self.generation += 1
                self._stuck = 0

        if retired is None:
            future.add_done_callback(lambda _: self._release(generation))
            return
        logger.warning(
            "tool_pool_saturated",
            stuck_workers=self.max_workers,
            generation=self.generation,
        )
        retired.shutdown(wait=False)

    def _release(self, generation: int) -> None:
        with self._lock:
            if generation == self.generation and self._stuck > 0:
                self._stuck -= 1

    def shutdown(self) -> None:
        with self._lock:
            executor = self._executor
        executor.shutdown(wait=False, cancel_futures=True)


@dataclass(slots=True)
class _PendingCall:
    request: ToolCallRequest
    future: Future[ToolExecutionResult] | None = None
    generation: int = 0
    started_at: float | None = None
    result: ToolExecutionResult | None = None


class ToolCallingLoop:
    """Drives model turns until the model stops asking for tools.

    Each turn:
    1. Call the model with the transcript so far and the tool specs.
    2. Append the assistant message (even when it has no text).
    3. Collect non-blank text into the final answer.
    4. Merge token usage; absent counts stay absent.
    5. Stop if no tools were requested.
    6. Otherwise run every requested tool and append one tool message per
       request, in request order. Tool failures, argument errors and timeouts
       become `ERROR:` results that the model sees on the next turn.

    Running out of turns is not an error: the accumulated output is returned
    even though the last turn still had tool requests pending.

    Tools within a turn run concurrently on a bounded worker pool. Each call's
    timeout is measured from the moment a worker starts it, so time spent
    queued does not count. A timed-out tool keeps its worker thread until it
    returns; the loop does not wait for it.
    """

    poll_interval_seconds = 0.05

    def __init__(
        self,
        config: AgentConfig | None = None,
        *,
        hooks: InstrumentationHooks | None = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.hooks = hooks
        self._pool = ToolWorkerPool(self.config.tool_workers)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True
        self._pool.shutdown()

    def __enter__(self) -> "ToolCallingLoop":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def run(
        self,
        initial_messages: Sequence[Message],
        tool_specs: Sequence[ToolSpec],
        tool_executor: ToolExecutor,
        model_callback: ModelInvoker,
        max_turns: int | None = None,
        *,
        guardrail: Guardrail | None = None,
        cancel_token: CancellationToken | None = None,
        discard_on_cancel: bool = False,
        on_tool_trace: ToolTraceObserver | None = None,
    ) -> InferenceResult:
        limit = self.config.max_turns if max_turns is None else max_turns
        if limit < 1:
            raise ValueError("max_turns must be at least 1")
        if self._closed:
            raise RuntimeError("Tool-calling loop is closed")

        transcript = list(initial_messages)
        with structlog.contextvars.bound_contextvars(run_id=uuid.uuid4().hex[:12]):
            if guardrail is not None:
                self._check_guardrail(guardrail, transcript)

            with span(self.hooks, "agent.run", max_turns=limit) as attrs:
                result = self._drive(
                    transcript,
                    list(tool_specs),
                    tool_executor,
                    model_callback,
                    limit,
                    cancel_token,
                    on_tool_trace,
                )
                attrs["turns"] = result.turns
                attrs["cancelled"] = result.cancelled

        if result.cancelled and discard_on_cancel:
            raise RunCancelled(f"Run cancelled after {result.turns} turns")
        return result

    def _check_guardrail(self, guardrail: Guardrail, transcript: list[Message]) -> None:
        first_user = next(
            (message.content for message in transcript if message.role is Role.USER), ""
        )
        if not guardrail(first_user):
            logger.warning("guardrail_rejected", prompt_chars=len(first_user))
            raise GuardrailRejected()

    def _drive(
        self,
        transcript: list[Message],
        tool_specs: list[ToolSpec],
        tool_executor: ToolExecutor,
        model_callback: ModelInvoker,
        limit: int,
        cancel_token: CancellationToken | None,
        on_tool_trace: ToolTraceObserver | None,
    ) -> InferenceResult:
        segments: list[str] = []
        usage: TokenUsage | None = None
        tool_results: list[ToolExecutionResult] = []
        turns = 0
        cancelled = False

        logger.info(
            "run_started",
            messages=len(transcript),
            tools=[spec.name for spec in tool_specs],
            max_turns=limit,
        )
        for turn in range(limit):
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                break

            model_turn = self._invoke_model(model_callback, transcript, tool_specs, turn)
            turns += 1

            message = model_turn.message
            if message.tool_calls != model_turn.tool_calls:
                message = replace(message, tool_calls=tuple(model_turn.tool_calls))
            transcript.append(message)

            if message.content and message.content.strip():
                segments.append(message.content)
            usage = merge_usage(usage, model_turn.usage)

            if not model_turn.tool_calls:
                logger.info("run_finished", turns=turns)
                break

            logger.info(
                "tool_requests",
                turn=turns,
                tools=[request.tool_name for request in model_turn.tool_calls],
            )
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                break
            results = self._execute_tool_calls(
                model_turn.tool_calls, tool_executor, cancel_token, on_tool_trace
            )
            for item in results:
                transcript.append(Message.tool(item.request_id, item.text))
            tool_results.extend(results)

            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                break
        else:
            logger.info("max_turns_exhausted", turns=turns)

        if cancelled:
            logger.info("run_cancelled", turns=turns)

        total = usage or TokenUsage()
        return InferenceResult(
            text="\n".join(segments),
            usage_summary=total.summary(),
            usage=total,
            turns=turns,
            transcript=tuple(transcript),
            tool_results=tuple(tool_results),
            cancelled=cancelled,
        )

    def _invoke_model(
        self,
        model_callback: ModelInvoker,
        transcript: list[Message],
        tool_specs: list[ToolSpec],
        turn: int,
    ) -> ModelTurn:
        with span(self.hooks, "model.invoke", turn=turn + 1):
            try:
                return model_callback(tuple(transcript), tool_specs)
            except Exception as exc:
                logger.error("model_invocation_failed", turn=turn + 1, error=str(exc))
                raise ModelInvocationError(
                    f"Model invocation failed on turn {turn + 1}: {exc}"
                ) from exc

    def _execute_tool_calls(
        self,
        requests: Sequence[ToolCallRequest],
        tool_executor: ToolExecutor,
        cancel_token: CancellationToken | None,
        on_tool_trace: ToolTraceObserver | None,
    ) -> list[ToolExecutionResult]:
        timeout = self.config.tool_timeout_seconds
        calls = [_PendingCall(request=request) for request in requests]
        for call in calls:
            self._submit(call, tool_executor, on_tool_trace)

        unresolved = list(calls)
        while unresolved:
            now = time.monotonic()
            wake_at = now + self.poll_interval_seconds
            for call in unresolved:
                assert call.future is not None
                if call.future.done():
                    call.result = self._collect(call)
                elif call.started_at is not None:
                    deadline = call.started_at + timeout
                    if now >= deadline:
                        call.result = self._abandon(call, timeout)
                    else:
                        wake_at = min(wake_at, deadline)
                elif cancel_token is not None and cancel_token.cancelled:
                    if call.future.cancel():
                        call.result = _error_result(
                            call.request, f"tool '{call.request.tool_name}' cancelled"
                        )
                elif call.generation != self._pool.generation and call.future.cancel():
                    # queued on a retired executor whose workers are all stuck
                    self._submit(call, tool_executor, on_tool_trace)

            unresolved = [call for call in unresolved if call.result is None]
            if unresolved:
                wait(
                    [call.future for call in unresolved if call.future is not None],
                    timeout=max(0.0, wake_at - time.monotonic()),
                    return_when=FIRST_COMPLETED,
                )

        return [call.result for call in calls if call.result is not None]

    def _submit(
        self,
        call: _PendingCall,
        tool_executor: ToolExecutor,
        on_tool_trace: ToolTraceObserver | None,
    ) -> None:
        context = contextvars.copy_context()
        call.future, call.generation = self._pool.submit(
            context.run, self._start_tool, call, tool_executor, on_tool_trace
        )

    def _start_tool(
        self,
        call: _PendingCall,
        tool_executor: ToolExecutor,
        on_tool_trace: ToolTraceObserver | None,
    ) -> ToolExecutionResult:
        call.started_at = time.monotonic()
        return self._run_tool(call.request, tool_executor, on_tool_trace)

    def _collect(self, call: _PendingCall) -> ToolExecutionResult:
        assert call.future is not None
        if call.future.cancelled():
            return _error_result(call.request, f"tool '{call.request.tool_name}' cancelled")
        error = call.future.exception()
        if error is not None:
            return _error_result(call.request, str(error))
        return call.future.result()

    def _abandon(self, call: _PendingCall, timeout: float) -> ToolExecutionResult:
        assert call.future is not None
        logger.warning(
            "tool_timed_out", tool=call.request.tool_name, timeout_seconds=timeout
        )
        self._pool.abandon(call.future, call.generation)
        return _error_result(
            call.request, f"tool '{call.request.tool_name}' timed out after {timeout:g}s"
        )

    def _run_tool(
        self,
        request: ToolCallRequest,
        tool_executor: ToolExecutor,
        on_tool_trace: ToolTraceObserver | None,
    ) -> ToolExecutionResult:
        start = time.perf_counter()
        args: dict[str, Any] = {}
        error = False
        with span(self.hooks, "tool.execute", tool=request.tool_name, request_id=request.id):
            try:
                args = parse_arguments(request.arguments_json)
                output = tool_executor(request.tool_name, args)
                text = "" if output is None else str(output)
            except Exception as exc:
                error = True
                text = f"ERROR: {exc}"
                logger.warning(
                    "tool_execution_failed", tool=request.tool_name, error=str(exc)
                )
        latency_ms = (time.perf_counter() - start) * 1000.0
        if not error:
            logger.info(
                "tool_executed",
                tool=request.tool_name,
                latency_ms=round(latency_ms, 2),
                result_chars=len(text),
            )

        if on_tool_trace is not None:
            trace = ToolTrace(
                name=request.tool_name,
                input_payload=args,
                output_preview=text[:320],
                latency_ms=latency_ms,
                error=error,
            )
            try:
                on_tool_trace(trace)
            except Exception as exc:
                logger.warning(
                    "tool_trace_observer_failed", tool=request.tool_name, error=str(exc)
                )
        return ToolExecutionResult(
            request_id=request.id, tool_name=request.tool_name, text=text
        )


def _error_result(request: ToolCallRequest, message: str) -> ToolExecutionResult:
    return ToolExecutionResult(
        request_id=request.id, tool_name=request.tool_name, text=f"ERROR: {message}"
    )
