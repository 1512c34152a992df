"""Front dispatcher: answers the client's JSON-RPC requests.

Core tools (``execute``, ``status``, ``kill``) are served locally; every other
tool name is routed to the provider that owns it. Tool failures come back as
``isError`` results, transport failures as JSON-RPC error envelopes.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from mcp import types
from pydantic import ValidationError as PydanticValidationError

from toolrelay import __version__
from toolrelay.context import AppContext
from toolrelay.errors import ExecutionError, ProviderError, ValidationError
from toolrelay.providers.supervisor import PROTOCOL_VERSION
from toolrelay.schemas import (
    EXECUTE_TOOL,
    INTERNAL_ERROR,
    KILL_TOOL,
    METHOD_NOT_FOUND,
    STATUS_TOOL,
    ExecuteArguments,
    KillArguments,
    rpc_error,
    rpc_result,
    tool_result,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "toolrelay"

Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class FrontDispatcher:
    """Maps JSON-RPC methods onto the application context."""

    def __init__(self, context: AppContext):
        self.context = context
        self._handlers: dict[str, Handler] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
        }

    async def handle_line(self, line: str | bytes) -> dict[str, Any] | None:
        """Parse one inbound line and produce its response, if any."""
        try:
            message = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Unparsable request: {e}")
            return rpc_error(None, INTERNAL_ERROR, f"Parse error: {e}")

        if not isinstance(message, dict):
            return rpc_error(None, INTERNAL_ERROR, "Invalid request: expected a JSON object")
        return await self.handle_request(message)

    async def handle_request(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Dispatch a decoded request. Notifications return None."""
        is_notification = "id" not in message
        request_id = message.get("id")
        method = message.get("method")

        handler = self._handlers.get(method) if isinstance(method, str) else None
        if handler is None:
            if is_notification:
                logger.debug(f"Ignoring notification {method}")
                return None
            return rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        params = message.get("params") or {}
        try:
            result = await handler(params)
        except Exception as e:
            logger.error(f"Unhandled exception in {method}: {e}", exc_info=True)
            if is_notification:
                return None
            return rpc_error(request_id, INTERNAL_ERROR, f"Internal error: {e}")

        if is_notification:
            return None
        return rpc_result(request_id, result)

    # --- methods ---

    async def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        requested = params.get("protocolVersion")
        result = types.InitializeResult(
            protocolVersion=requested if isinstance(requested, str) else PROTOCOL_VERSION,
            capabilities=types.ServerCapabilities(tools=types.ToolsCapability(listChanged=False)),
            serverInfo=types.Implementation(name=SERVER_NAME, version=__version__),
        )
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def _ping(self, params: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def _tools_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"tools": self.context.catalog.list_tools()}

    async def _tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not name:
            return tool_result("Tool name is required", is_error=True)
        if not isinstance(arguments, dict):
            return tool_result("Tool arguments must be an object", is_error=True)

        if name == EXECUTE_TOOL:
            return await self._execute(arguments)
        if name == STATUS_TOOL:
            return self._status()
        if name == KILL_TOOL:
            return self._kill(arguments)
        return await self._call_provider(name, arguments)

    # --- core tools ---

    async def _execute(self, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            args = ExecuteArguments.model_validate(arguments)
        except PydanticValidationError as e:
            return tool_result(f"Invalid arguments for execute: {e}", is_error=True)

        # Omitted timeout falls back to the sandbox's configured default
        timeout_ms = args.timeout if "timeout" in args.model_fields_set else None
        history = self.context.history
        try:
            result = await self.context.sandbox.execute(args.code, args.runtime, timeout_ms)
        except ValidationError as e:
            return tool_result(f"Error: {e}", is_error=True)
        except ExecutionError as e:
            history.record_execution(
                args.code, e.runtime or args.runtime, False, e.output or str(e)
            )
            return tool_result(f"Error: {e}", is_error=True)

        history.record_execution(args.code, result.runtime, not result.timed_out, result.output)
        return tool_result(result.output, structured=result.model_dump(mode="json"))

    def _status(self) -> dict[str, Any]:
        """Build the status report without touching any state."""
        supervisor = self.context.supervisor
        catalog = self.context.catalog
        history = self.context.history.status()
        running = self.context.sandbox.running()
        counts = catalog.counts_by_provider()
        providers = {name: counts.get(name, 0) for name in supervisor.providers}

        lines = [f"Providers: {len(providers)}"]
        lines.extend(f"  - {name}: {count} tools" for name, count in providers.items())
        lines.append(f"Total tools available: {len(catalog)}")
        lines.append(f"Running executions: {len(running)}")
        lines.extend(
            f"  - {job['exec_id']} ({job['runtime']}, {job['elapsed_seconds']}s)" for job in running
        )
        lines.append(
            f"History: {history.tool_calls} tool calls, {history.execution_inputs} executions"
        )
        lines.append(f"Estimated tokens: {history.estimated_tokens}/{history.token_cap}")

        structured = {
            "providers": providers,
            "total_tools": len(catalog),
            "running": running,
            "history": history.model_dump(mode="json"),
        }
        return tool_result("\n".join(lines), structured=structured)

    def _kill(self, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            args = KillArguments.model_validate(arguments)
        except PydanticValidationError as e:
            return tool_result(f"Invalid arguments for kill: {e}", is_error=True)

        if self.context.sandbox.kill(args.exec_id):
            return tool_result(f"Execution {args.exec_id} killed")
        return tool_result(f"Execution {args.exec_id} not found", is_error=True)

    # --- provider tools ---

    async def _call_provider(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self.context.call_provider_tool(name, arguments)
        except ValidationError as e:
            return tool_result(str(e), is_error=True)
        except ProviderError as e:
            logger.warning(f"Tool {name} failed: {e}")
            return tool_result(f"Error calling {name}: {e}", is_error=True)
