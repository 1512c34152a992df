"""Tests for the provider process and its request correlator."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from toolrelay.errors import ProviderError, ProviderRPCError, RPCTimeoutError
from toolrelay.providers.process import ProviderProcess


def _provider(name: str = "fake") -> ProviderProcess:
    """A provider whose writes are captured instead of sent."""
    provider = ProviderProcess(name, "unused", request_timeout=1.0)
    provider._write = AsyncMock()
    return provider


def _sent_ids(provider: ProviderProcess) -> list[int]:
    return [call.args[0]["id"] for call in provider._write.call_args_list]


class TestCorrelation:
    """Test request id allocation and response matching."""

    @pytest.mark.asyncio
    async def test_ids_are_unique_and_increasing(self):
        """Each request gets a fresh id."""
        provider = _provider()
        tasks = [asyncio.create_task(provider.request("ping", timeout=1.0)) for _ in range(5)]
        await asyncio.sleep(0)

        ids = _sent_ids(provider)
        assert ids == [0, 1, 2, 3, 4]

        for request_id in ids:
            provider._dispatch_line(json.dumps({"jsonrpc": "2.0", "id": request_id, "result": {"n": request_id}}))
        results = await asyncio.gather(*tasks)
        assert results == [{"n": i} for i in range(5)]
        assert provider.pending_count == 0

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self):
        """Responses are matched by id, not arrival order."""
        provider = _provider()
        first = asyncio.create_task(provider.request("a", timeout=1.0))
        second = asyncio.create_task(provider.request("b", timeout=1.0))
        await asyncio.sleep(0)

        provider._dispatch_line(json.dumps({"id": 1, "result": "second"}))
        provider._dispatch_line(json.dumps({"id": 0, "result": "first"}))
        assert await first == "first"
        assert await second == "second"

    @pytest.mark.asyncio
    async def test_duplicate_response_dropped(self):
        """A second response for a settled id is ignored."""
        provider = _provider()
        task = asyncio.create_task(provider.request("a", timeout=1.0))
        await asyncio.sleep(0)

        provider._dispatch_line(json.dumps({"id": 0, "result": 1}))
        provider._dispatch_line(json.dumps({"id": 0, "result": 2}))
        assert await task == 1

    @pytest.mark.asyncio
    async def test_error_response_rejects(self):
        """An error response raises ProviderRPCError with its code."""
        provider = _provider()
        task = asyncio.create_task(provider.request("tools/call", timeout=1.0))
        await asyncio.sleep(0)

        provider._dispatch_line(json.dumps({"id": 0, "error": {"code": -32601, "message": "nope"}}))
        with pytest.raises(ProviderRPCError, match="nope") as exc_info:
            await task
        assert exc_info.value.code == -32601

    @pytest.mark.asyncio
    async def test_notifications_and_garbage_ignored(self):
        """Notifications, requests and non-JSON lines don't settle anything."""
        provider = _provider()
        task = asyncio.create_task(provider.request("a", timeout=1.0))
        await asyncio.sleep(0)

        provider._dispatch_line("not json")
        provider._dispatch_line(json.dumps({"method": "notifications/progress"}))
        provider._dispatch_line(json.dumps({"id": 0, "method": "sampling/createMessage"}))
        assert not task.done()

        provider._dispatch_line(json.dumps({"id": 0, "result": "ok"}))
        assert await task == "ok"

    @pytest.mark.asyncio
    async def test_timeout_then_late_response_dropped(self):
        """A timed-out request is forgotten; its late response is dropped."""
        provider = _provider()
        with pytest.raises(RPCTimeoutError):
            await provider.request("slow", timeout=0.05)
        assert provider.pending_count == 0

        # Late arrival must not raise or resurrect anything
        provider._dispatch_line(json.dumps({"id": 0, "result": "late"}))
        assert provider.pending_count == 0

        task = asyncio.create_task(provider.request("next", timeout=1.0))
        await asyncio.sleep(0)
        assert _sent_ids(provider) == [0, 1]
        provider._dispatch_line(json.dumps({"id": 1, "result": "fresh"}))
        assert await task == "fresh"

    @pytest.mark.asyncio
    async def test_write_failure_is_provider_error(self):
        """A broken pipe surfaces as ProviderError and clears the pending entry."""
        provider = _provider()
        provider._write.side_effect = BrokenPipeError("pipe closed")
        with pytest.raises(ProviderError, match="pipe closed"):
            await provider.request("a", timeout=1.0)
        assert provider.pending_count == 0

    @pytest.mark.asyncio
    async def test_not_running_is_provider_error(self):
        """Requests to a provider that was never spawned fail fast."""
        provider = ProviderProcess("idle", "unused")
        with pytest.raises(ProviderError, match="not running"):
            await provider.request("a", timeout=1.0)


class TestLiveProcess:
    """Test against the fake provider script."""

    @pytest.mark.asyncio
    async def test_round_trip(self, provider_command):
        """Initialize and list tools over real pipes."""
        command, args = provider_command()
        provider = ProviderProcess("fake", command, args, request_timeout=5.0)
        await provider.spawn()
        try:
            init = await provider.request("initialize", {"protocolVersion": "2024-11-05"})
            assert init["serverInfo"]["name"] == "fake"
            tools = await provider.request("tools/list", {})
            assert "add" in [tool["name"] for tool in tools["tools"]]
        finally:
            await provider.close()
        assert not provider.is_running

    @pytest.mark.asyncio
    async def test_concurrent_calls_on_one_provider(self, provider_command):
        """A slow call doesn't block a fast one."""
        command, args = provider_command()
        provider = ProviderProcess("fake", command, args, request_timeout=5.0)
        await provider.spawn()
        try:
            slow = asyncio.create_task(
                provider.request("tools/call", {"name": "sleep", "arguments": {"seconds": 0.5}})
            )
            fast = await provider.request("tools/call", {"name": "echo", "arguments": {"text": "hi"}})
            assert fast["content"][0]["text"] == "hi"
            assert not slow.done()
            assert (await slow)["content"][0]["text"] == "slept 0.5"
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_noisy_output_is_tolerated(self, provider_command):
        """Notifications and junk lines on stdout don't break correlation."""
        command, args = provider_command("--noisy")
        provider = ProviderProcess("fake", command, args, request_timeout=5.0)
        await provider.spawn()
        try:
            result = await provider.request("tools/call", {"name": "add", "arguments": {"a": 1, "b": 2}})
            assert result["content"][0]["text"] == "3"
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_stderr_is_captured(self, provider_command):
        """Stderr lines are kept for diagnostics."""
        command, args = provider_command("--crash")
        provider = ProviderProcess("fake", command, args)
        await provider.spawn()
        assert await provider.wait_exited() == 3
        assert "crashed on startup" in provider.stderr_tail()
        await provider.close()
