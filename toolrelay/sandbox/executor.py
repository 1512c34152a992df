"""Execution sandbox: run code in a chosen language as a child process."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import signal
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from toolrelay.errors import ExecutionError, RelayError, ValidationError, combine_output
from toolrelay.sandbox.runtimes import file_extension, resolve_runtime
from toolrelay.schemas import (
    DEFAULT_EXECUTE_TIMEOUT_MS,
    DEFAULT_RUNTIME,
    INTERNAL_ERROR,
    ExecutionResult,
    rpc_error,
    rpc_result,
)

logger = logging.getLogger(__name__)

IS_POSIX = os.name == "posix"

TEMP_PREFIX = "toolrelay-"
READ_CHUNK_SIZE = 4096

# Seconds to wait for output pipes to close after the child exits
READER_GRACE_SECONDS = 2.0

# Substrings that are never executed
BLOCKED_SUBSTRINGS = ["pkill"]

# Environment variable holding the JSON map of callable tools and their descriptions
TOOLS_ENV = "TOOLRELAY_TOOLS"

OutputCallback = Callable[[str, str, str], None]
ToolHandler = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]
ToolListing = Callable[[], dict[str, str]]


@dataclass
class ExecutionJob:
    """A tracked, in-flight execution."""

    exec_id: str
    temp_path: Path
    runtime: str
    timeout_ms: int
    process: asyncio.subprocess.Process | None = None
    started_at: float = field(default_factory=time.monotonic)
    killed: bool = False


@dataclass
class _ProcessOutcome:
    stdout: str
    stderr: str
    returncode: int | None
    timed_out: bool = False


def _log_output(exec_id: str, channel: str, text: str) -> None:
    for line in text.splitlines():
        logger.debug(f"[{exec_id} {channel}] {line}")


def _remove(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")


def _kill_process(proc: asyncio.subprocess.Process) -> None:
    """Force-kill a child and, on POSIX, its whole process group."""
    if proc.returncode is not None:
        return
    try:
        if IS_POSIX:
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()


class ExecutionSandbox:
    """Writes code to a temp file and runs it under a deadline.

    Jobs are tracked by id while they run so ``kill`` can stop them.

    With a ``tool_handler`` the running code can call relay tools: a
    ``tools/call`` JSON-RPC request printed as one stdout line is answered
    on the child's stdin instead of being captured as output.
    """

    def __init__(
        self,
        default_timeout_ms: int = DEFAULT_EXECUTE_TIMEOUT_MS,
        work_dir: Path | str | None = None,
        temp_dir: Path | str | None = None,
        on_output: OutputCallback | None = None,
        tool_handler: ToolHandler | None = None,
        tool_listing: ToolListing | None = None,
    ):
        self.default_timeout_ms = default_timeout_ms
        self.work_dir = str(work_dir) if work_dir else None
        self.temp_dir = str(temp_dir) if temp_dir else None
        self.on_output = on_output or _log_output
        self.tool_handler = tool_handler
        self.tool_listing = tool_listing
        self._jobs: dict[str, ExecutionJob] = {}
        self._next_id = 0

    # --- public API ---

    def running(self) -> list[dict[str, object]]:
        """Snapshot of tracked executions."""
        now = time.monotonic()
        return [
            {
                "exec_id": job.exec_id,
                "runtime": job.runtime,
                "pid": job.process.pid if job.process else None,
                "elapsed_seconds": round(now - job.started_at, 1),
            }
            for job in self._jobs.values()
        ]

    def kill(self, exec_id: str) -> bool:
        """Force-kill a tracked execution and stop tracking it.

        Returns:
            True if the execution was found
        """
        job = self._jobs.pop(exec_id, None)
        if job is None:
            return False
        job.killed = True
        if job.process is not None:
            _kill_process(job.process)
        logger.info(f"Execution {exec_id} killed")
        return True

    async def execute(
        self,
        code: str,
        runtime: str = DEFAULT_RUNTIME,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Run code and return its output.

        Args:
            code: Source code to run
            runtime: Runtime name or alias, or ``auto`` to detect
            timeout_ms: Deadline covering compile and run

        Returns:
            ExecutionResult; ``timed_out`` is set when the deadline fired and
            ``output`` then holds the partial output

        Raises:
            ValidationError: If the code is empty, blocked, or the runtime unknown
            ExecutionError: If the code fails to compile, exits nonzero,
                cannot be started, or is killed
        """
        if not code or not code.strip():
            raise ValidationError("Code is required for execution")
        for blocked in BLOCKED_SUBSTRINGS:
            if blocked in code:
                raise ValidationError(f"Execution rejected: {blocked} is not allowed")

        timeout_ms = timeout_ms or self.default_timeout_ms
        if timeout_ms <= 0:
            raise ValidationError("Timeout must be a positive number of milliseconds")

        resolved = resolve_runtime(runtime, code)
        exec_id = f"exec_{self._next_id}"
        self._next_id += 1

        fd, path = tempfile.mkstemp(
            prefix=TEMP_PREFIX,
            suffix=file_extension(resolved, code),
            dir=self.temp_dir,
        )
        temp_path = Path(path)
        job = ExecutionJob(exec_id, temp_path, resolved.name, timeout_ms)
        self._jobs[exec_id] = job
        artifact: Path | None = None
        logger.info(f"Starting execution {exec_id} ({resolved.name}, timeout {timeout_ms}ms)")

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(code)

            invocation = resolved.build(temp_path)
            artifact = invocation.artifact
            deadline = job.started_at + timeout_ms / 1000

            if invocation.compile:
                compiled = await self._run(job, invocation.compile, deadline, allow_tools=False)
                if compiled.timed_out:
                    return self._timeout_result(job, compiled)
                if compiled.returncode != 0:
                    raise ExecutionError(
                        f"Compilation failed with code {compiled.returncode}: "
                        f"{compiled.stderr or compiled.stdout}",
                        stdout=compiled.stdout,
                        stderr=compiled.stderr,
                        exit_code=compiled.returncode,
                        runtime=job.runtime,
                    )

            outcome = await self._run(job, invocation.run, deadline)
            if outcome.timed_out:
                return self._timeout_result(job, outcome)
            return self._finish(job, outcome)
        finally:
            self._jobs.pop(exec_id, None)
            _remove(temp_path)
            if artifact is not None:
                _remove(artifact)

    # --- internals ---

    def _elapsed_ms(self, job: ExecutionJob) -> int:
        return int((time.monotonic() - job.started_at) * 1000)

    def _timeout_result(self, job: ExecutionJob, outcome: _ProcessOutcome) -> ExecutionResult:
        partial = combine_output(outcome.stdout, outcome.stderr)
        notice = f"[Execution timed out after {job.timeout_ms}ms; process killed]"
        logger.warning(f"Execution {job.exec_id} timed out after {job.timeout_ms}ms")
        return ExecutionResult(
            exec_id=job.exec_id,
            runtime=job.runtime,
            output=f"{partial}\n\n{notice}" if partial else notice,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            exit_code=None,
            timed_out=True,
            duration_ms=self._elapsed_ms(job),
        )

    def _finish(self, job: ExecutionJob, outcome: _ProcessOutcome) -> ExecutionResult:
        duration_ms = self._elapsed_ms(job)
        logger.info(
            f"Execution {job.exec_id} exited with code {outcome.returncode} in {duration_ms}ms"
        )
        if job.killed:
            raise ExecutionError(
                f"Execution {job.exec_id} killed",
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                exit_code=outcome.returncode,
                runtime=job.runtime,
            )
        if outcome.returncode != 0:
            raise ExecutionError(
                f"Execution failed with code {outcome.returncode}: "
                f"{outcome.stderr or outcome.stdout}",
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                exit_code=outcome.returncode,
                runtime=job.runtime,
            )

        if outcome.stdout.strip():
            output = outcome.stdout.rstrip("\r\n")
        elif outcome.stderr:
            output = f"Warning: {outcome.stderr}"
        else:
            output = "Execution completed successfully"
        return ExecutionResult(
            exec_id=job.exec_id,
            runtime=job.runtime,
            output=output,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            exit_code=outcome.returncode,
            duration_ms=duration_ms,
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        chunks: list[str],
        exec_id: str,
        channel: str,
        bridge: _ToolBridge | None = None,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending_line = ""
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            text = decoder.decode(data, final=not data)
            if bridge is not None:
                # Only whole lines can carry a tool request
                *lines, pending_line = (pending_line + text).split("\n")
                text = "".join(f"{line}\n" for line in lines if not bridge.intercept(line))
                if not data and pending_line and not bridge.intercept(pending_line):
                    text += pending_line
            if text:
                chunks.append(text)
                self.on_output(exec_id, channel, text)
            if not data:
                break

    def _child_env(self) -> dict[str, str] | None:
        if self.tool_listing is None:
            return None
        return {**os.environ, TOOLS_ENV: json.dumps(self.tool_listing())}

    async def _run(
        self,
        job: ExecutionJob,
        argv: list[str],
        deadline: float,
        allow_tools: bool = True,
    ) -> _ProcessOutcome:
        if job.killed:
            raise ExecutionError(f"Execution {job.exec_id} killed", runtime=job.runtime)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return _ProcessOutcome("", "", None, timed_out=True)

        interactive = allow_tools and self.tool_handler is not None
        logger.debug(f"[{job.exec_id}] Spawning {argv}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if interactive else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.work_dir,
                env=self._child_env() if interactive else None,
                start_new_session=IS_POSIX,
            )
        except OSError as e:
            raise ExecutionError(f"Failed to start {argv[0]}: {e}", runtime=job.runtime) from e
        job.process = proc

        bridge = _ToolBridge(job.exec_id, proc, self.tool_handler) if interactive else None
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = [
            asyncio.create_task(
                self._pump(proc.stdout, stdout_chunks, job.exec_id, "stdout", bridge)
            ),
            asyncio.create_task(self._pump(proc.stderr, stderr_chunks, job.exec_id, "stderr")),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            timed_out = True
            _kill_process(proc)
            await proc.wait()
        except asyncio.CancelledError:
            _kill_process(proc)
            for reader in readers:
                reader.cancel()
            if bridge is not None:
                bridge.cancel()
            raise

        # Orphaned grandchildren can hold the pipes open; don't wait on them forever
        _, pending = await asyncio.wait(readers, timeout=READER_GRACE_SECONDS)
        for reader in pending:
            reader.cancel()
        if bridge is not None:
            bridge.cancel()

        return _ProcessOutcome(
            stdout="".join(stdout_chunks),
            stderr="".join(stderr_chunks),
            returncode=proc.returncode,
            timed_out=timed_out,
        )


class _ToolBridge:
    """Answers ``tools/call`` requests a running child prints on stdout."""

    def __init__(
        self,
        exec_id: str,
        proc: asyncio.subprocess.Process,
        handler: ToolHandler,
    ):
        self.exec_id = exec_id
        self.proc = proc
        self.handler = handler
        self._calls: set[asyncio.Task] = set()

    def intercept(self, line: str) -> bool:
        """Start answering ``line`` if it is a tool request.

        Returns:
            True if the line was consumed and is not output
        """
        stripped = line.strip()
        if not stripped.startswith("{"):
            return False
        try:
            message = json.loads(stripped)
        except json.JSONDecodeError:
            return False
        if (
            not isinstance(message, dict)
            or message.get("jsonrpc") != "2.0"
            or message.get("method") != "tools/call"
            or "id" not in message
        ):
            return False

        task = asyncio.create_task(self._answer(message))
        self._calls.add(task)
        task.add_done_callback(self._calls.discard)
        return True

    async def _answer(self, message: dict[str, Any]) -> None:
        request_id = message["id"]
        params = message.get("params")
        try:
            if not isinstance(params, dict) or not isinstance(params.get("name"), str):
                raise ValidationError("tools/call requires a tool name")
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                raise ValidationError("Tool arguments must be an object")
            logger.info(f"[{self.exec_id}] Child called tool {params['name']}")
            reply = rpc_result(request_id, await self.handler(params["name"], arguments))
        except RelayError as e:
            logger.warning(f"[{self.exec_id}] Tool call from child failed: {e}")
            reply = rpc_error(request_id, INTERNAL_ERROR, str(e))

        stdin = self.proc.stdin
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.write((json.dumps(reply) + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"[{self.exec_id}] Child closed stdin before the reply: {e}")

    def cancel(self) -> None:
        for task in list(self._calls):
            task.cancel()
