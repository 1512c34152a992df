"""Bounded, token-budgeted log of completed tool calls and executions."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from toolrelay.compaction import (
    MAX_FIELD_CHARS,
    MAX_RESULT_CHARS,
    CharRatioEstimator,
    HeuristicSummarizer,
    Summarizer,
    TokenEstimator,
    compact_code,
    compact_value,
)
from toolrelay.schemas import ExecutionInput, ExecutionOutput, HistoryStatus, ToolCallRecord

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_CAP = 60_000
DEFAULT_MAX_TOOL_CALLS = 10
DEFAULT_MAX_EXECUTIONS = 3

# Upper bound on cleanup passes per insertion
MAX_CLEANUP_PASSES = 8


@dataclass
class _Entry:
    record: BaseModel
    tokens: int


class HistoryLog:
    """Capped buffers of compacted records with a running token estimate.

    Tool calls and execution inputs/outputs live in separate buffers, each
    evicting its oldest entry on overflow. When the running estimate passes
    ``token_cap``, every buffer is cut to its newest half and re-compacted.
    """

    def __init__(
        self,
        token_cap: int = DEFAULT_TOKEN_CAP,
        max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
        max_executions: int = DEFAULT_MAX_EXECUTIONS,
        estimator: TokenEstimator | None = None,
        summarizer: Summarizer | None = None,
    ):
        """Initialize the log.

        Args:
            token_cap: Estimate above which aggressive cleanup runs
            max_tool_calls: Capacity of the tool-call buffer
            max_executions: Capacity of each execution buffer
            estimator: Token estimation strategy
            summarizer: Text summary strategy used by compaction
        """
        self.token_cap = token_cap
        self.max_tool_calls = max_tool_calls
        self.max_executions = max_executions
        self.estimator = estimator or CharRatioEstimator()
        self.summarizer = summarizer or HeuristicSummarizer()
        self._tool_calls: deque[_Entry] = deque()
        self._inputs: deque[_Entry] = deque()
        self._outputs: deque[_Entry] = deque()
        self._token_count = 0
        self._cleanups = 0
        self._lock = threading.Lock()

    # --- recording ---

    def record_tool_call(
        self,
        provider: str,
        tool: str,
        args: Any,
        result: Any,
    ) -> ToolCallRecord:
        """Record a completed provider tool call."""
        record = ToolCallRecord(
            provider=provider,
            tool=tool,
            args_summary=self._compact(args),
            result_summary=self._compact(result),
        )
        with self._lock:
            self._append(self._tool_calls, record, self.max_tool_calls)
            self._recompute()
            self._enforce_budget()
        return record

    def record_execution(
        self,
        code: str,
        runtime: str,
        success: bool,
        output: Any,
    ) -> tuple[ExecutionInput, ExecutionOutput]:
        """Record a finished execution as an input/output pair."""
        input_record = ExecutionInput(code_summary=compact_code(code), runtime=runtime)
        output_record = ExecutionOutput(output_summary=self._compact(output), success=success)
        with self._lock:
            self._append(self._inputs, input_record, self.max_executions)
            self._append(self._outputs, output_record, self.max_executions)
            self._recompute()
            self._enforce_budget()
        return input_record, output_record

    # --- reads ---

    def status(self) -> HistoryStatus:
        """Current buffer sizes and token estimate. Never mutates state."""
        with self._lock:
            return HistoryStatus(
                tool_calls=len(self._tool_calls),
                execution_inputs=len(self._inputs),
                execution_outputs=len(self._outputs),
                estimated_tokens=self._token_count,
                token_cap=self.token_cap,
            )

    @property
    def estimated_tokens(self) -> int:
        return self._token_count

    @property
    def cleanup_count(self) -> int:
        """Number of aggressive cleanup passes run so far."""
        return self._cleanups

    def tool_calls(self) -> list[ToolCallRecord]:
        with self._lock:
            return [entry.record for entry in self._tool_calls]  # type: ignore[misc]

    def executions(self) -> list[tuple[ExecutionInput, ExecutionOutput]]:
        with self._lock:
            return [
                (i.record, o.record)  # type: ignore[misc]
                for i, o in zip(self._inputs, self._outputs)
            ]

    def clear(self) -> None:
        with self._lock:
            self._tool_calls.clear()
            self._inputs.clear()
            self._outputs.clear()
            self._recompute()

    # --- internals ---

    def _compact(self, value: Any, max_chars: int = MAX_RESULT_CHARS) -> Any:
        return compact_value(value, self.summarizer, max_chars, MAX_FIELD_CHARS)

    def _estimate(self, record: BaseModel) -> int:
        return self.estimator.estimate(record.model_dump(mode="json"))

    def _append(self, buffer: deque[_Entry], record: BaseModel, cap: int) -> None:
        buffer.append(_Entry(record, self._estimate(record)))
        while len(buffer) > cap:
            removed = buffer.popleft()
            self._token_count -= removed.tokens

    def _recompute(self) -> None:
        self._token_count = sum(
            entry.tokens
            for buffer in (self._tool_calls, self._inputs, self._outputs)
            for entry in buffer
        )

    def _entry_count(self) -> int:
        return len(self._tool_calls) + len(self._inputs) + len(self._outputs)

    def _enforce_budget(self) -> None:
        passes = 0
        while (
            self._token_count > self.token_cap
            and self._entry_count() > 0
            and passes < MAX_CLEANUP_PASSES
        ):
            self._aggressive_cleanup()
            passes += 1
        if self._token_count > self.token_cap:
            logger.warning(
                f"History still over budget after {passes} cleanup passes "
                f"({self._token_count}/{self.token_cap} tokens)"
            )

    def _aggressive_cleanup(self) -> None:
        before = self._token_count
        for buffer in (self._tool_calls, self._inputs, self._outputs):
            keep = len(buffer) // 2
            while len(buffer) > keep:
                buffer.popleft()

        for entry in self._tool_calls:
            record = entry.record
            entry.record = record.model_copy(
                update={
                    "args_summary": self._compact(record.args_summary, MAX_FIELD_CHARS),
                    "result_summary": self._compact(record.result_summary, MAX_FIELD_CHARS),
                }
            )
        for entry in self._outputs:
            record = entry.record
            entry.record = record.model_copy(
                update={"output_summary": self._compact(record.output_summary, MAX_FIELD_CHARS)}
            )
        for entry in (*self._tool_calls, *self._inputs, *self._outputs):
            entry.tokens = self._estimate(entry.record)

        self._recompute()
        self._cleanups += 1
        logger.info(
            f"History over {self.token_cap} tokens, aggressive cleanup: "
            f"{before} -> {self._token_count} tokens"
        )
