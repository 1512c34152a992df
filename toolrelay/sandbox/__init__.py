"""Multi-language code execution sandbox."""

from toolrelay.sandbox.executor import ExecutionJob, ExecutionSandbox
from toolrelay.sandbox.runtimes import RUNTIMES, detect_runtime, resolve_runtime

__all__ = ["ExecutionJob", "ExecutionSandbox", "RUNTIMES", "detect_runtime", "resolve_runtime"]
