"""Stdio server exposing the relay's aggregated tools to an MCP client.

Requests arrive as newline-delimited JSON-RPC on stdin; each is handled in its
own task so long executions don't block other calls. Responses are written to
stdout as whole lines. Logging goes to stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, BinaryIO

from toolrelay.config import load_config
from toolrelay.context import build_context
from toolrelay.dispatcher import FrontDispatcher
from toolrelay.schemas import INTERNAL_ERROR, rpc_error

logger = logging.getLogger(__name__)

# Max bytes per inbound line
LINE_LIMIT = 16 * 1024 * 1024

# Seconds to let in-flight requests finish after stdin closes
DRAIN_TIMEOUT = 5.0


async def open_stdin() -> asyncio.StreamReader:
    """Wrap the process stdin in an asyncio StreamReader."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=LINE_LIMIT)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


class StdioServer:
    """Reads request lines, dispatches them concurrently, writes responses."""

    def __init__(self, dispatcher: FrontDispatcher, output: BinaryIO | None = None):
        self.dispatcher = dispatcher
        self.output = output if output is not None else sys.stdout.buffer
        self._tasks: set[asyncio.Task] = set()

    def write(self, message: dict[str, Any]) -> None:
        data = json.dumps(message, ensure_ascii=False).encode("utf-8") + b"\n"
        try:
            self.output.write(data)
            self.output.flush()
        except (BrokenPipeError, ValueError) as e:
            logger.warning(f"Failed to write response: {e}")

    async def _handle(self, line: bytes) -> None:
        response = await self.dispatcher.handle_line(line)
        if response is not None:
            self.write(response)

    async def serve(self, reader: asyncio.StreamReader) -> None:
        """Serve until the reader hits EOF."""
        while True:
            try:
                line = await reader.readline()
            except ValueError as e:
                logger.warning(f"Dropping oversized request line: {e}")
                self.write(rpc_error(None, INTERNAL_ERROR, "Request line too long"))
                continue
            if not line:
                logger.info("Client closed stdin")
                break
            if not line.strip():
                continue
            task = asyncio.create_task(self._handle(line))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()


async def serve(config_path: Path | str) -> None:
    """Load config, start providers, and serve stdio until EOF or a signal.

    Raises:
        ConfigError: If the config is invalid or no provider starts
    """
    config = load_config(config_path)
    context = await build_context(config)
    server = StdioServer(FrontDispatcher(context))

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        reader = await open_stdin()
        serving = asyncio.create_task(server.serve(reader))
        stopping = asyncio.create_task(stop.wait())
        await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
        if serving.done():
            stopping.cancel()
            serving.result()
        else:
            logger.info("Received shutdown signal")
            serving.cancel()
    finally:
        await context.close()
        logger.info("Shutdown complete")


def run(config_path: Path | str) -> None:
    asyncio.run(serve(config_path))
