"""Tests for the stdio front server loop."""

import asyncio
import io
import json

import pytest

from mcp_toolrelay.server import StdioServer
from toolrelay.catalog import ToolCatalog
from toolrelay.config import RelayConfig
from toolrelay.context import AppContext
from toolrelay.dispatcher import FrontDispatcher
from toolrelay.providers import ProviderSupervisor
from toolrelay.sandbox import ExecutionSandbox


def _server(output: io.BytesIO) -> StdioServer:
    context = AppContext(
        config=RelayConfig(),
        supervisor=ProviderSupervisor(),
        catalog=ToolCatalog(),
        sandbox=ExecutionSandbox(),
    )
    return StdioServer(FrontDispatcher(context), output=output)


def _responses(output: io.BytesIO) -> list[dict]:
    return [json.loads(line) for line in output.getvalue().splitlines()]


class TestStdioServer:
    """Test line framing and concurrent handling."""

    @pytest.mark.asyncio
    async def test_one_response_line_per_request(self):
        """Requests are answered as whole lines; blanks and notifications are silent."""
        reader = asyncio.StreamReader()
        reader.feed_data(b'{"jsonrpc": "2.0", "id": 1, "method": "ping"}\n')
        reader.feed_data(b"\n")
        reader.feed_data(b'{"jsonrpc": "2.0", "method": "notifications/initialized"}\n')
        reader.feed_data(b"{bad json\n")
        reader.feed_eof()

        output = io.BytesIO()
        await _server(output).serve(reader)

        responses = _responses(output)
        assert len(responses) == 2
        by_id = {response["id"]: response for response in responses}
        assert by_id[1]["result"] == {}
        assert by_id[None]["error"]["code"] == -32603

    @pytest.mark.asyncio
    async def test_slow_call_does_not_block(self):
        """A fast request is answered before an earlier slow one."""
        reader = asyncio.StreamReader()
        slow = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "tools/call",
            "params": {
                "name": "execute",
                "arguments": {"code": "import time\ntime.sleep(1)\nprint('slow')", "runtime": "python"},
            },
        }
        fast = {"jsonrpc": "2.0", "id": 2, "method": "ping"}
        reader.feed_data((json.dumps(slow) + "\n" + json.dumps(fast) + "\n").encode())
        reader.feed_eof()

        output = io.BytesIO()
        await _server(output).serve(reader)

        ids = [response["id"] for response in _responses(output)]
        assert ids == [2, 1]
