"""Application context: the long-lived components shared by every request."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from toolrelay.catalog import ToolCatalog, split_qualified
from toolrelay.compaction import extract_text
from toolrelay.config import RelayConfig
from toolrelay.errors import ValidationError
from toolrelay.history import HistoryLog
from toolrelay.providers import ProviderSupervisor
from toolrelay.sandbox import ExecutionSandbox
from toolrelay.schemas import tool_result

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Explicitly passed owner of providers, catalog, sandbox and history."""

    config: RelayConfig
    supervisor: ProviderSupervisor
    catalog: ToolCatalog
    sandbox: ExecutionSandbox
    history: HistoryLog = field(default_factory=HistoryLog)

    def refresh_catalog(self) -> None:
        self.catalog.rebuild(self.supervisor.all_tools())
        logger.info(f"Catalog rebuilt with {len(self.catalog)} tools")

    def resolve_tool(self, name: str) -> tuple[str, str]:
        """Map a tool name to its (provider, tool) pair.

        Raises:
            ValidationError: If the name is neither cataloged nor namespaced
        """
        descriptor = self.catalog.get(name)
        if descriptor is not None and descriptor.provider_name is not None:
            return descriptor.provider_name, descriptor.short_name
        parts = split_qualified(name)
        if parts is None:
            raise ValidationError(f"Unknown tool: {name}")
        return parts

    async def call_provider_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Route a provider tool call and record it in the history.

        Raises:
            ValidationError: If the tool name cannot be resolved
            ProviderError: If the provider is missing, times out or fails
        """
        provider_name, tool_name = self.resolve_tool(name)
        result = await self.supervisor.call_tool(provider_name, tool_name, arguments)
        if not isinstance(result, dict):
            result = tool_result(json.dumps(result, default=str))
        self.history.record_tool_call(provider_name, tool_name, arguments, extract_text(result))
        return result

    def tool_listing(self) -> dict[str, str]:
        """Provider tools callable from executed code, with descriptions."""
        return {
            descriptor.qualified_name: descriptor.description
            for descriptor in self.catalog.descriptors()
            if descriptor.provider_name is not None
        }

    async def close(self) -> None:
        """Kill running executions and stop every provider."""
        for job in self.sandbox.running():
            self.sandbox.kill(job["exec_id"])
        await self.supervisor.shutdown()


async def build_context(config: RelayConfig) -> AppContext:
    """Start the configured providers and assemble the context.

    Raises:
        ConfigError: If no provider could be started
    """
    supervisor = ProviderSupervisor.from_config(config)
    await supervisor.start_all(config)
    catalog = ToolCatalog(supervisor.all_tools())
    logger.info(f"Catalog ready with {len(catalog)} tools")
    context = AppContext(
        config=config,
        supervisor=supervisor,
        catalog=catalog,
        sandbox=ExecutionSandbox(default_timeout_ms=config.execute_timeout_ms),
    )
    context.sandbox.tool_handler = context.call_provider_tool
    context.sandbox.tool_listing = context.tool_listing
    supervisor.exit_listeners.append(lambda name: context.refresh_catalog())
    return context
