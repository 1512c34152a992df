"""Aggregated tool catalog: core tools plus namespaced provider tools."""

from __future__ import annotations

import logging
from typing import Any

from toolrelay.schemas import (
    DEFAULT_EXECUTE_TIMEOUT_MS,
    EXECUTE_TOOL,
    KILL_TOOL,
    STATUS_TOOL,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)

EXECUTE_DESCRIPTOR = ToolDescriptor(
    qualified_name=EXECUTE_TOOL,
    short_name=EXECUTE_TOOL,
    description=(
        "Execute code in a sandboxed child process. The runtime is detected from the "
        "code unless given (python, bash, nodejs, typescript, deno, bun, go, rust, c, cpp). "
        "Returns stdout; on timeout returns the partial output."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "code": {"type": "string", "description": "Source code to execute"},
            "runtime": {
                "type": "string",
                "description": "Runtime to use, or 'auto' to detect",
                "default": "auto",
            },
            "timeout": {
                "type": "integer",
                "description": "Timeout in milliseconds",
                "default": DEFAULT_EXECUTE_TIMEOUT_MS,
            },
        },
        "required": ["code"],
    },
)

STATUS_DESCRIPTOR = ToolDescriptor(
    qualified_name=STATUS_TOOL,
    short_name=STATUS_TOOL,
    description="Show relay status: providers, tool counts, running executions and history usage",
    input_schema={"type": "object", "properties": {}},
)

KILL_DESCRIPTOR = ToolDescriptor(
    qualified_name=KILL_TOOL,
    short_name=KILL_TOOL,
    description="Kill a running execution",
    input_schema={
        "type": "object",
        "properties": {
            "execId": {"type": "string", "description": "Execution ID to kill"},
        },
        "required": ["execId"],
    },
)


def qualify(provider_name: str, tool_name: str) -> str:
    """Namespace a provider tool as ``{provider}_{tool}``."""
    return f"{provider_name}_{tool_name}"


def split_qualified(name: str) -> tuple[str, str] | None:
    """Split a qualified name on its first underscore.

    Returns:
        (provider, tool), or None if the name has no namespace
    """
    provider_name, sep, tool_name = name.partition("_")
    if not sep or not provider_name or not tool_name:
        return None
    return provider_name, tool_name


def _provider_descriptor(provider_name: str, tool: dict[str, Any]) -> ToolDescriptor:
    input_schema = tool.get("inputSchema")
    if not isinstance(input_schema, dict):
        input_schema = {"type": "object", "properties": {}}
    return ToolDescriptor(
        qualified_name=qualify(provider_name, tool["name"]),
        provider_name=provider_name,
        short_name=tool["name"],
        description=f"[{provider_name}] {tool.get('description') or ''}".rstrip(),
        input_schema=input_schema,
    )


class ToolCatalog:
    """De-duplicated union of core tools and every provider's tools."""

    def __init__(self, provider_tools: dict[str, list[dict[str, Any]]] | None = None):
        self._descriptors: dict[str, ToolDescriptor] = {}
        self.rebuild(provider_tools or {})

    def rebuild(self, provider_tools: dict[str, list[dict[str, Any]]]) -> None:
        """Recompute the catalog from the providers' published tool lists."""
        descriptors: dict[str, ToolDescriptor] = {EXECUTE_TOOL: EXECUTE_DESCRIPTOR}

        for provider_name, tools in provider_tools.items():
            if "_" in provider_name:
                logger.warning(
                    f"Provider name '{provider_name}' contains '_'; "
                    "its tools are only reachable through the catalog"
                )
            for tool in tools:
                descriptor = _provider_descriptor(provider_name, tool)
                name = descriptor.qualified_name
                if name in descriptors:
                    logger.warning(f"Duplicate tool name {name} from {provider_name}, skipping")
                    continue
                descriptors[name] = descriptor

        descriptors[STATUS_TOOL] = STATUS_DESCRIPTOR
        descriptors[KILL_TOOL] = KILL_DESCRIPTOR
        self._descriptors = descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def get(self, name: str) -> ToolDescriptor | None:
        return self._descriptors.get(name)

    def descriptors(self) -> list[ToolDescriptor]:
        return list(self._descriptors.values())

    def list_tools(self) -> list[dict[str, Any]]:
        """Return the ``tools/list`` payload entries."""
        return [descriptor.to_wire() for descriptor in self._descriptors.values()]

    def counts_by_provider(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for descriptor in self._descriptors.values():
            if descriptor.provider_name is not None:
                counts[descriptor.provider_name] = counts.get(descriptor.provider_name, 0) + 1
        return counts
