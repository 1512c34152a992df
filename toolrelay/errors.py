"""Error taxonomy for toolrelay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all toolrelay errors."""

    pass


class ConfigError(RelayError):
    """Raised when no usable provider configuration exists."""

    pass


class ProviderError(RelayError):
    """Raised when a provider cannot be reached or misbehaves."""

    pass


class ProviderStartError(ProviderError):
    """Raised when a provider's startup handshake fails."""

    pass


class RPCTimeoutError(ProviderError):
    """Raised when a provider does not answer a request in time."""

    pass


class ProviderRPCError(ProviderError):
    """Raised when a provider answers a request with a JSON-RPC error."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class ValidationError(RelayError):
    """Raised for malformed or empty tool input."""

    pass


def combine_output(stdout: str, stderr: str) -> str:
    """Join captured streams, marking where stderr begins."""
    if stderr:
        return f"{stdout}\nSTDERR:\n{stderr}" if stdout else f"STDERR:\n{stderr}"
    return stdout


class ExecutionError(RelayError):
    """Raised when executed code exits nonzero or fails to compile."""

    def __init__(
        self,
        message: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
        runtime: str | None = None,
    ):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.runtime = runtime

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        return combine_output(self.stdout, self.stderr)


class ExecutionTimeoutError(ExecutionError):
    """Marks an execution that ran past its deadline.

    The sandbox resolves such runs with a timeout-flagged result instead of
    raising; callers that want to treat a timeout as a failure can raise this
    from ``ExecutionResult.raise_for_timeout``.
    """

    pass
