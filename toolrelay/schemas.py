"""Pydantic schemas for toolrelay tool, execution and history contracts."""

from __future__ import annotations

import time
from typing import Any

from mcp import types
from pydantic import BaseModel, ConfigDict, Field

from toolrelay.errors import ExecutionTimeoutError

# Defaults shared by the sandbox and the execute tool contract
DEFAULT_EXECUTE_TIMEOUT_MS = 240_000
DEFAULT_RUNTIME = "auto"

# Core tool names
EXECUTE_TOOL = "execute"
STATUS_TOOL = "status"
KILL_TOOL = "kill"

# JSON-RPC error codes
METHOD_NOT_FOUND = types.METHOD_NOT_FOUND
INTERNAL_ERROR = types.INTERNAL_ERROR


def _empty_object_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


# --- Tool Catalog ---


class ToolDescriptor(BaseModel):
    """A tool as published in the aggregated catalog."""

    model_config = ConfigDict(frozen=True)

    qualified_name: str
    provider_name: str | None = Field(
        default=None,
        description="Owning provider, or None for core tools",
    )
    short_name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=_empty_object_schema)

    def to_wire(self) -> dict[str, Any]:
        """Render as the MCP tool shape ``{name, description, inputSchema}``."""
        tool = types.Tool(
            name=self.qualified_name,
            description=self.description,
            inputSchema=self.input_schema,
        )
        return tool.model_dump(mode="json", by_alias=True, exclude_none=True)


# --- Tool Arguments ---


class ExecuteArguments(BaseModel):
    """Input contract of the ``execute`` tool."""

    code: str
    runtime: str = DEFAULT_RUNTIME
    timeout: int = Field(default=DEFAULT_EXECUTE_TIMEOUT_MS, gt=0, description="Timeout in ms")


class KillArguments(BaseModel):
    """Input contract of the ``kill`` tool."""

    model_config = ConfigDict(populate_by_name=True)

    exec_id: str = Field(..., alias="execId", min_length=1)


# --- Execution ---


class ExecutionResult(BaseModel):
    """Outcome of a finished (or timed out) execution."""

    exec_id: str
    runtime: str
    output: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    duration_ms: int = 0

    def raise_for_timeout(self) -> None:
        """Raise ExecutionTimeoutError if this run hit its deadline."""
        if self.timed_out:
            raise ExecutionTimeoutError(
                f"Execution {self.exec_id} timed out",
                stdout=self.stdout,
                stderr=self.stderr,
                runtime=self.runtime,
            )


# --- History ---


class ToolCallRecord(BaseModel):
    """Compacted record of a completed provider tool call."""

    provider: str
    tool: str
    args_summary: Any = None
    result_summary: Any = None
    timestamp: float = Field(default_factory=time.time)


class ExecutionInput(BaseModel):
    """Input half of an execution record."""

    code_summary: str
    runtime: str
    timestamp: float = Field(default_factory=time.time)


class ExecutionOutput(BaseModel):
    """Output half of an execution record."""

    output_summary: Any = None
    success: bool
    timestamp: float = Field(default_factory=time.time)


class HistoryStatus(BaseModel):
    """Read-only snapshot of the history buffers."""

    tool_calls: int = 0
    execution_inputs: int = 0
    execution_outputs: int = 0
    estimated_tokens: int = 0
    token_cap: int = 0


# --- JSON-RPC envelopes ---


def rpc_result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    """Build a JSON-RPC success response."""
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    """Build a JSON-RPC error response."""
    error = types.ErrorData(code=code, message=message)
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": error.model_dump(mode="json", exclude_none=True),
    }


def tool_result(
    text: str,
    is_error: bool = False,
    structured: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a ``tools/call`` result with a single text content block."""
    result = types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
        structuredContent=structured,
    )
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)
