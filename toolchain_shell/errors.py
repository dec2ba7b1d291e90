"""Exception types for toolchain-shell."""

from __future__ import annotations

from typing import Optional


class ToolchainShellError(Exception):
    """Base exception for toolchain-shell."""


class ConfigurationError(ToolchainShellError):
    """Raised when a tool path or the settings file is missing or unreadable."""


class ProcessSpawnError(ToolchainShellError):
    """Raised when the interactive shell process could not be started."""


class ExtensionMismatchError(ToolchainShellError):
    """Raised when a tool is asked to process a file of the wrong type."""

    def __init__(self, tool: str, path: str, expected: str) -> None:
        self.tool = tool
        self.path = path
        self.expected = expected
        super().__init__(f"{tool} expects a {expected} file, got {path!r}")


class DispatchOnStoppedSessionError(ToolchainShellError):
    """Raised when a command is dispatched to a session that is not running."""


class ProcessExitedError(ToolchainShellError):
    """Raised on pending completions when the shell process goes away."""

    def __init__(self, exit_code: Optional[int]) -> None:
        self.exit_code = exit_code
        super().__init__(f"shell process exited with code {exit_code}")


class PreconditionError(ToolchainShellError):
    """Raised when a build action has no open file or workspace."""


class StepFailedError(ToolchainShellError):
    """Raised when a tracked pipeline step reports a non-zero exit status."""

    def __init__(self, tool: str, exit_code: int) -> None:
        self.tool = tool
        self.exit_code = exit_code
        super().__init__(f"{tool} step failed with exit status {exit_code}")
