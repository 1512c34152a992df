"""Tests for the execution sandbox."""

import asyncio
import json
import shutil
from unittest.mock import patch

import pytest

from toolrelay.errors import ExecutionError, ExecutionTimeoutError, ProviderError, ValidationError
from toolrelay.sandbox import ExecutionSandbox

requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")


def _leftovers(directory):
    return list(directory.glob("toolrelay-*"))


class TestValidation:
    """Test input rejection before anything is spawned."""

    @pytest.mark.asyncio
    async def test_empty_code_never_spawns(self):
        """Empty code fails fast without a child process."""
        sandbox = ExecutionSandbox()
        with patch("asyncio.create_subprocess_exec") as mock_exec:
            with pytest.raises(ValidationError, match="Code is required"):
                await sandbox.execute("")
            with pytest.raises(ValidationError):
                await sandbox.execute("   \n\t")
        mock_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_pkill_rejected(self):
        """Code mentioning pkill is refused."""
        sandbox = ExecutionSandbox()
        with patch("asyncio.create_subprocess_exec") as mock_exec:
            with pytest.raises(ValidationError, match="pkill"):
                await sandbox.execute("pkill -f node", runtime="bash")
        mock_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_runtime(self, tmp_path):
        """An unknown runtime is a ValidationError and leaves no temp file."""
        sandbox = ExecutionSandbox(temp_dir=tmp_path)
        with pytest.raises(ValidationError, match="Invalid runtime"):
            await sandbox.execute("print(1)", runtime="cobol")
        assert _leftovers(tmp_path) == []


class TestExecute:
    """Test running code to completion."""

    @pytest.mark.asyncio
    async def test_python_auto_detected(self, tmp_path):
        """print(1+1) runs under the host python and returns 2."""
        sandbox = ExecutionSandbox(temp_dir=tmp_path)
        result = await sandbox.execute("print(1+1)")
        assert result.output == "2"
        assert result.runtime == "python"
        assert result.exit_code == 0
        assert result.timed_out is False
        assert _leftovers(tmp_path) == []

    @pytest.mark.asyncio
    async def test_stderr_only_is_warning(self):
        """Successful runs with only stderr report a warning."""
        sandbox = ExecutionSandbox()
        code = "import sys\nsys.stderr.write('careful')"
        result = await sandbox.execute(code, runtime="python")
        assert result.output == "Warning: careful"

    @pytest.mark.asyncio
    async def test_no_output(self):
        """Silent successful runs say so."""
        sandbox = ExecutionSandbox()
        result = await sandbox.execute("x = 1", runtime="python")
        assert result.output == "Execution completed successfully"

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path):
        """A nonzero exit raises ExecutionError with both streams."""
        sandbox = ExecutionSandbox(temp_dir=tmp_path)
        code = "import sys\nprint('partial')\nprint('boom', file=sys.stderr)\nsys.exit(2)"
        with pytest.raises(ExecutionError, match="code 2") as exc_info:
            await sandbox.execute(code)
        assert exc_info.value.exit_code == 2
        assert "partial" in exc_info.value.stdout
        assert "boom" in exc_info.value.stderr
        assert "STDERR:" in exc_info.value.output
        assert exc_info.value.runtime == "python"
        assert _leftovers(tmp_path) == []

    @pytest.mark.asyncio
    async def test_stderr_only_failure_output(self):
        """A failure with only stderr is labelled the same way as a timeout's partial output."""
        code = "import sys\nprint('boom', file=sys.stderr)\nsys.exit(1)"
        with pytest.raises(ExecutionError) as exc_info:
            await ExecutionSandbox().execute(code)
        assert exc_info.value.output == "STDERR:\nboom\n"
        assert ExecutionError("failed", stderr="boom").output == "STDERR:\nboom"

    @pytest.mark.asyncio
    async def test_stdin_is_closed(self):
        """Children never block waiting on stdin."""
        sandbox = ExecutionSandbox()
        code = "import sys\nprint(repr(sys.stdin.read()))"
        result = await sandbox.execute(code, timeout_ms=10_000)
        assert result.output == "''"

    @pytest.mark.asyncio
    async def test_output_streamed_to_callback(self):
        """Output chunks reach the callback as they arrive."""
        chunks = []
        sandbox = ExecutionSandbox(on_output=lambda exec_id, channel, text: chunks.append((exec_id, channel, text)))
        result = await sandbox.execute("print('hello')")
        assert "".join(text for _, channel, text in chunks if channel == "stdout") == "hello\n"
        assert all(exec_id == result.exec_id for exec_id, _, _ in chunks)

    @pytest.mark.asyncio
    async def test_exec_ids_increment(self):
        """Each execution gets a fresh id."""
        sandbox = ExecutionSandbox()
        first = await sandbox.execute("print(1)")
        second = await sandbox.execute("print(2)")
        assert (first.exec_id, second.exec_id) == ("exec_0", "exec_1")

    @pytest.mark.asyncio
    async def test_spawn_failure_cleans_up(self, tmp_path):
        """A missing interpreter is an ExecutionError and the temp file goes away."""
        sandbox = ExecutionSandbox(temp_dir=tmp_path)
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("no such file")):
            with pytest.raises(ExecutionError, match="Failed to start"):
                await sandbox.execute("print(1)")
        assert _leftovers(tmp_path) == []
        assert sandbox.running() == []


class TestTimeout:
    """Test deadline enforcement."""

    @requires_bash
    @pytest.mark.asyncio
    async def test_sleep_times_out(self, tmp_path):
        """sleep 5 with a 100ms deadline resolves as timed out."""
        sandbox = ExecutionSandbox(temp_dir=tmp_path)
        result = await sandbox.execute("sleep 5", runtime="bash", timeout_ms=100)
        assert result.timed_out is True
        assert result.exit_code is None
        assert "timed out after 100ms" in result.output
        assert result.duration_ms < 5000
        assert _leftovers(tmp_path) == []
        assert sandbox.running() == []

    @pytest.mark.asyncio
    async def test_partial_output_kept(self):
        """Output written before the deadline is returned."""
        sandbox = ExecutionSandbox()
        code = "import time\nprint('started', flush=True)\ntime.sleep(10)"
        result = await sandbox.execute(code, timeout_ms=1500)
        assert result.timed_out is True
        assert result.stdout == "started\n"
        assert result.output.startswith("started")

    @pytest.mark.asyncio
    async def test_raise_for_timeout(self):
        """Callers can turn a timeout into an exception."""
        sandbox = ExecutionSandbox()
        result = await sandbox.execute("import time\nprint('x')\ntime.sleep(10)", timeout_ms=200)
        with pytest.raises(ExecutionTimeoutError):
            result.raise_for_timeout()


class TestKill:
    """Test killing a running execution."""

    @pytest.mark.asyncio
    async def test_kill_running_job(self):
        """A killed job fails its execute call and is untracked at once."""
        sandbox = ExecutionSandbox()
        task = asyncio.create_task(
            sandbox.execute("import time\nprint('waiting')\ntime.sleep(30)", timeout_ms=60_000)
        )
        for _ in range(100):
            running = sandbox.running()
            if running and running[0]["pid"] is not None:
                break
            await asyncio.sleep(0.05)
        else:
            pytest.fail("execution never started")

        exec_id = running[0]["exec_id"]
        assert sandbox.kill(exec_id) is True
        assert sandbox.running() == []

        with pytest.raises(ExecutionError, match="killed"):
            await asyncio.wait_for(task, timeout=10)

    def test_kill_unknown(self):
        """Unknown ids report not found."""
        assert ExecutionSandbox().kill("exec_99") is False


class TestToolCallsFromCode:
    """Test tools/call requests printed by the running child."""

    @staticmethod
    def _sandbox(calls: list):
        async def handler(name, arguments):
            calls.append((name, arguments))
            if name == "calc_fail":
                raise ProviderError("calc failed")
            return {"content": [{"type": "text", "text": str(arguments["a"] + arguments["b"])}]}

        return ExecutionSandbox(tool_handler=handler, tool_listing=lambda: {"calc_add": "[calc] Add"})

    @pytest.mark.asyncio
    async def test_request_answered_on_stdin(self):
        """The request line is consumed and the reply arrives on stdin."""
        calls = []
        code = (
            "import json, sys\n"
            "print('before', flush=True)\n"
            "print(json.dumps({'jsonrpc': '2.0', 'id': 9, 'method': 'tools/call',"
            " 'params': {'name': 'calc_add', 'arguments': {'a': 2, 'b': 3}}}), flush=True)\n"
            "reply = json.loads(sys.stdin.readline())\n"
            "print(reply['id'], reply['result']['content'][0]['text'])\n"
        )
        result = await self._sandbox(calls).execute(code, timeout_ms=10_000)
        assert result.stdout == "before\n9 5\n"
        assert calls == [("calc_add", {"a": 2, "b": 3})]

    @pytest.mark.asyncio
    async def test_handler_error_is_rpc_error(self):
        """A failing call is answered with -32603 and the error message."""
        code = (
            "import json, sys\n"
            "print(json.dumps({'jsonrpc': '2.0', 'id': 'x', 'method': 'tools/call',"
            " 'params': {'name': 'calc_fail'}}), flush=True)\n"
            "print(sys.stdin.readline().strip())\n"
        )
        result = await self._sandbox([]).execute(code, timeout_ms=10_000)
        reply = json.loads(result.output)
        assert reply == {
            "jsonrpc": "2.0",
            "id": "x",
            "error": {"code": -32603, "message": "calc failed"},
        }

    @pytest.mark.asyncio
    async def test_other_json_lines_stay_output(self):
        """JSON that isn't a tools/call request is ordinary output."""
        calls = []
        code = (
            "import json\n"
            "print(json.dumps({'jsonrpc': '2.0', 'method': 'tools/call'}))\n"
            "print(json.dumps({'jsonrpc': '2.0', 'id': 1, 'method': 'ping'}))\n"
            "print('{not json')\n"
        )
        result = await self._sandbox(calls).execute(code, timeout_ms=10_000)
        assert result.stdout.splitlines() == [
            '{"jsonrpc": "2.0", "method": "tools/call"}',
            '{"jsonrpc": "2.0", "id": 1, "method": "ping"}',
            "{not json",
        ]
        assert calls == []

    @pytest.mark.asyncio
    async def test_listing_exported(self):
        """The tool listing is exported as JSON in the child's environment."""
        code = "import os\nprint(os.environ['TOOLRELAY_TOOLS'])"
        result = await self._sandbox([]).execute(code, timeout_ms=10_000)
        assert json.loads(result.output) == {"calc_add": "[calc] Add"}
