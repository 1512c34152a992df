"""One provider child process and its JSON-RPC request correlator."""

from __future__ import annotations

import asyncio
import collections
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from toolrelay.config import DEFAULT_REQUEST_TIMEOUT
from toolrelay.errors import ProviderError, ProviderRPCError, RPCTimeoutError

logger = logging.getLogger(__name__)

# Max lines of provider stderr kept for diagnostics
STDERR_BUFFER_SIZE = 200

# Provider responses can be large (tool results with file contents)
STREAM_LIMIT = 16 * 1024 * 1024

# Seconds between SIGTERM and SIGKILL on shutdown
TERMINATE_GRACE_SECONDS = 2.0

# Seconds to let the output readers finish after the child exits
READER_GRACE_SECONDS = 1.0


@dataclass
class PendingRequest:
    """An in-flight request awaiting its response."""

    request_id: int
    method: str
    future: asyncio.Future
    sent_at: float = field(default_factory=time.monotonic)


class ProviderProcess:
    """A spawned provider speaking newline-delimited JSON-RPC over stdio.

    Owns the child process, the stdout line reader, the stderr drain, the
    pending-request table and the request-id counter. All state is touched
    only from the event loop, so no locking is needed.
    """

    def __init__(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        cwd: Path | str | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        on_exit: Callable[[ProviderProcess, int | None], None] | None = None,
    ):
        self.name = name
        self.command = command
        self.args = list(args or [])
        self.env = env
        self.cwd = str(cwd) if cwd else None
        self.request_timeout = request_timeout
        self.on_exit = on_exit
        self.tools: list[dict[str, Any]] = []
        self.proc: asyncio.subprocess.Process | None = None
        self._next_id = 0
        self._pending: dict[int, PendingRequest] = {}
        self._stderr_buffer: collections.deque[str] = collections.deque(maxlen=STDERR_BUFFER_SIZE)
        self._stdout_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._closing = False

    # --- lifecycle ---

    async def spawn(self) -> None:
        """Start the child process and its reader tasks."""
        env = None
        if self.env:
            env = {**os.environ, **self.env}

        logger.info(f"[{self.name}] Starting: {self.command} {' '.join(self.args)}")
        self.proc = await asyncio.create_subprocess_exec(
            self.command,
            *self.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
            limit=STREAM_LIMIT,
        )
        self._stdout_task = asyncio.create_task(self._read_stdout(), name=f"{self.name}-stdout")
        self._stderr_task = asyncio.create_task(self._drain_stderr(), name=f"{self.name}-stderr")

    @property
    def is_running(self) -> bool:
        return self.proc is not None and self.proc.returncode is None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def wait_exited(self) -> int | None:
        """Wait for the child to exit and its stderr to be drained."""
        if self.proc is None:
            return None
        returncode = await self.proc.wait()
        if self._stderr_task is not None:
            await asyncio.wait({self._stderr_task}, timeout=1.0)
        return returncode

    def stderr_tail(self, lines: int = 10) -> str:
        """Return the last lines the provider wrote to stderr."""
        return "\n".join(list(self._stderr_buffer)[-lines:])

    async def close(self) -> None:
        """Terminate the child and abandon every pending request."""
        self._closing = True
        for pending in self._pending.values():
            if not pending.future.done():
                pending.future.cancel()
        self._pending.clear()

        proc = self.proc
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning(f"[{self.name}] Did not exit after SIGTERM, killing")
                proc.kill()
                await proc.wait()

        readers = [
            task for task in (self._stdout_task, self._stderr_task)
            if task is not None and not task.done()
        ]
        if readers:
            # Let the readers drain what the child wrote before it exited
            _, still_running = await asyncio.wait(readers, timeout=READER_GRACE_SECONDS)
            for task in still_running:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    # --- requests ---

    def _allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    async def _write(self, message: dict[str, Any]) -> None:
        if self.proc is None or self.proc.stdin is None or self.proc.returncode is not None:
            raise ProviderError(f"Provider {self.name} is not running")
        self.proc.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
        await self.proc.stdin.drain()

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for the response with the matching id.

        Args:
            method: JSON-RPC method name
            params: Optional request parameters
            timeout: Seconds to wait (defaults to ``request_timeout``)

        Returns:
            The ``result`` member of the response

        Raises:
            RPCTimeoutError: If no response arrives in time
            ProviderRPCError: If the provider answers with an error
            ProviderError: If the request cannot be written
        """
        timeout = self.request_timeout if timeout is None else timeout
        request_id = self._allocate_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, method, future)

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            try:
                await self._write(message)
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
                raise ProviderError(f"Failed to send request to {self.name}: {e}") from e

            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"[{self.name}] {method} (id {request_id}) timed out after {timeout}s")
                raise RPCTimeoutError(
                    f"Request timeout ({timeout}s) for {self.name}: {method}"
                ) from None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification (no id, no response)."""
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._write(message)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            raise ProviderError(f"Failed to notify {self.name}: {e}") from e

    # --- readers ---

    def _dispatch_line(self, line: str) -> None:
        """Settle the pending request a response line belongs to."""
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"[{self.name}] Ignoring non-JSON line: {line[:200]}")
            return

        if not isinstance(message, dict) or "id" not in message or "method" in message:
            # Notifications and provider-initiated requests are not correlated
            return

        pending = self._pending.pop(message["id"], None)
        if pending is None:
            logger.debug(f"[{self.name}] Dropping response for unknown id {message['id']!r}")
            return
        if pending.future.done():
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                pending.future.set_exception(
                    ProviderRPCError(error.get("message") or "Provider error", code=error.get("code"))
                )
            else:
                pending.future.set_exception(ProviderRPCError(str(error)))
        else:
            pending.future.set_result(message.get("result"))

    async def _read_stdout(self) -> None:
        assert self.proc is not None and self.proc.stdout is not None
        stream = self.proc.stdout
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError as e:
                    # Line longer than STREAM_LIMIT
                    logger.warning(f"[{self.name}] Dropping oversized line: {e}")
                    continue
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    self._dispatch_line(line)
        finally:
            if not self._closing:
                returncode = await self.proc.wait()
                logger.warning(
                    f"[{self.name}] Provider exited unexpectedly (code {returncode}); "
                    f"{len(self._pending)} pending request(s) will time out"
                )
                if self.on_exit is not None:
                    self.on_exit(self, returncode)

    async def _drain_stderr(self) -> None:
        assert self.proc is not None and self.proc.stderr is not None
        stream = self.proc.stderr
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line:
                self._stderr_buffer.append(line)
                logger.debug(f"[{self.name}-stderr] {line}")
