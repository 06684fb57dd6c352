"""Exception types raised inside the build pipeline."""

from __future__ import annotations


class BranchRunnerError(RuntimeError):
    """Base class for pipeline errors."""


class ToolUnavailableError(BranchRunnerError):
    """Raised when a required external binary is missing from ``PATH``."""

    def __init__(self, tool: str, hint: str = "") -> None:
        self.tool = tool
        self.hint = hint
        message = f"{tool} not found in PATH"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class CommandTimeoutError(BranchRunnerError):
    """Raised when a step exceeds its deadline and the step cannot continue."""

    def __init__(self, command: str, timeout_ms: int) -> None:
        self.command = command
        self.timeout_ms = timeout_ms
        super().__init__(f"`{command}` timed out after {timeout_ms}ms")


class CommandFailedError(BranchRunnerError):
    """Raised by retryable operations when a command exits non-zero."""


class GitError(BranchRunnerError):
    """Raised when a git command that must succeed exits non-zero."""


class GitRecoveryExhaustedError(BranchRunnerError):
    """Raised when fetch retries and reset recovery have both been used up."""


class CloneError(BranchRunnerError):
    """Raised when a repository cannot be cloned into the working area."""


class ProfileAbort(BranchRunnerError):
    """Raised by a hard profile step; the message becomes the run error."""


class ProfileNotImplementedError(ProfileAbort):
    """Raised by placeholder profiles."""
