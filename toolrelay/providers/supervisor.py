"""Provider supervisor: starts providers, runs the handshake, routes requests."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

from toolrelay import __version__
from toolrelay.config import (
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_STARTUP_TIMEOUT,
    ProviderConfig,
    RelayConfig,
)
from toolrelay.errors import ConfigError, ProviderError, ProviderStartError
from toolrelay.providers.process import ProviderProcess

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolrelay", "version": __version__}


class ProviderSupervisor:
    """Owns one child process per started provider."""

    def __init__(
        self,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        cwd: Path | str | None = None,
    ):
        self.request_timeout = request_timeout
        self.startup_timeout = startup_timeout
        self.cwd = cwd
        self.providers: dict[str, ProviderProcess] = {}
        self.exit_listeners: list[Callable[[str], None]] = []

    @classmethod
    def from_config(cls, config: RelayConfig) -> "ProviderSupervisor":
        return cls(
            request_timeout=config.request_timeout,
            startup_timeout=config.startup_timeout,
        )

    async def _handshake(self, provider: ProviderProcess) -> list[dict[str, Any]]:
        await provider.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )
        await provider.notify("notifications/initialized")
        result = await provider.request("tools/list", {})
        tools = result.get("tools") if isinstance(result, dict) else None
        if not isinstance(tools, list):
            raise ProviderStartError(f"{provider.name} returned no tools: {result!r}"[:300])
        usable = [
            tool for tool in tools
            if isinstance(tool, dict) and isinstance(tool.get("name"), str) and tool["name"]
        ]
        if not usable:
            raise ProviderStartError(f"{provider.name} returned no tools: {result!r}"[:300])
        return usable

    async def _handshake_or_exit(self, provider: ProviderProcess) -> list[dict[str, Any]]:
        """Run the handshake, failing early if the child exits first."""
        handshake = asyncio.create_task(self._handshake(provider))
        exited = asyncio.create_task(provider.wait_exited())
        try:
            done, _ = await asyncio.wait({handshake, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (handshake, exited):
                if not task.done():
                    task.cancel()
        if handshake in done:
            return handshake.result()
        raise ProviderStartError(f"process exited with code {exited.result()}")

    async def start_provider(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> ProviderProcess:
        """Spawn a provider and complete its handshake.

        Args:
            name: Provider name used as the tool namespace
            command: Executable to run
            args: Command arguments
            env: Extra environment variables

        Returns:
            The ready ProviderProcess

        Raises:
            ProviderStartError: If spawning or the handshake fails
        """
        if name in self.providers:
            raise ProviderStartError(f"Provider {name} is already running")

        provider = ProviderProcess(
            name,
            command,
            args,
            env=env,
            cwd=self.cwd,
            request_timeout=self.request_timeout,
            on_exit=self._handle_exit,
        )
        try:
            await provider.spawn()
        except OSError as e:
            raise ProviderStartError(f"{name} failed to spawn '{command}': {e}") from e

        try:
            tools = await asyncio.wait_for(
                self._handshake_or_exit(provider),
                timeout=self.startup_timeout,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            await provider.close()
            reason = str(e) or f"handshake did not complete within {self.startup_timeout}s"
            stderr = provider.stderr_tail()
            if stderr:
                reason = f"{reason} (stderr: {stderr[:200]})"
            raise ProviderStartError(f"{name} initialization failed: {reason}") from e

        provider.tools = tools
        self.providers[name] = provider
        tool_names = ", ".join(tool["name"] for tool in tools)
        logger.info(f"[{name}] Ready with {len(tools)} tools: {tool_names[:200]}")
        return provider

    async def _try_start(self, name: str, provider_config: ProviderConfig) -> bool:
        try:
            await self.start_provider(
                name,
                provider_config.command,
                provider_config.args,
                env=provider_config.env,
            )
            return True
        except ProviderStartError as e:
            logger.error(f"Skipping provider {name}: {e}")
            return False

    async def start_all(self, config: RelayConfig) -> list[str]:
        """Start every configured provider concurrently.

        Failed providers are logged and skipped.

        Returns:
            Names of the providers that started

        Raises:
            ConfigError: If nothing is configured or no provider started
        """
        if not config.providers:
            raise ConfigError("No providers configured")

        names = list(config.providers)
        logger.info(f"Starting {len(names)} configured providers: {', '.join(names)}")
        outcomes = await asyncio.gather(
            *(self._try_start(name, config.providers[name]) for name in names)
        )
        started = [name for name, ok in zip(names, outcomes) if ok]
        failed = [name for name, ok in zip(names, outcomes) if not ok]

        if not started:
            raise ConfigError(f"No provider could be started (failed: {', '.join(failed)})")
        if failed:
            logger.warning(f"Failed providers: {', '.join(failed)}")
        logger.info(f"Ready - {len(started)} of {len(names)} providers initialized")
        return started

    def _handle_exit(self, provider: ProviderProcess, returncode: int | None) -> None:
        """Forget a provider whose process died while it was serving."""
        if self.providers.get(provider.name) is not provider:
            # Still starting up; start_provider reports the failure
            return
        del self.providers[provider.name]
        logger.error(
            f"Removed provider {provider.name} after unexpected exit (code {returncode}); "
            f"{len(self.providers)} provider(s) remain"
        )
        for listener in list(self.exit_listeners):
            listener(provider.name)

    def get(self, name: str) -> ProviderProcess:
        provider = self.providers.get(name)
        if provider is None:
            raise ProviderError(f"Provider {name} not found")
        return provider

    async def send_request(
        self,
        provider_name: str,
        method: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a correlated request to a provider."""
        return await self.get(provider_name).request(method, params)

    async def call_tool(self, provider_name: str, tool_name: str, arguments: dict[str, Any]) -> Any:
        """Invoke a tool on a provider and return its raw ``tools/call`` result."""
        return await self.send_request(
            provider_name,
            "tools/call",
            {"name": tool_name, "arguments": arguments},
        )

    def all_tools(self) -> dict[str, list[dict[str, Any]]]:
        return {name: list(provider.tools) for name, provider in self.providers.items()}

    async def shutdown(self) -> None:
        """Terminate every provider and forget them."""
        providers = list(self.providers.items())
        self.providers.clear()
        for name, provider in providers:
            logger.info(f"Shutting down {name}")
            try:
                await provider.close()
            except OSError as e:
                logger.warning(f"Error shutting down {name}: {e}")
