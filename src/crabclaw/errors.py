"""
Error taxonomy for the runtime.

Every error raised by crabclaw derives from CrabClawError and carries a
short machine-readable `kind`. The agent loop uses the class hierarchy to
decide what happens next:

- ToolError: converted into a tool-role tape entry so the model can react.
- LLMError: Auth aborts the turn; the rest end the turn with the error
  recorded on the tape.
- ConfigError: fatal at startup.
- ParseError: malformed commands fail fast; malformed tape lines are skipped.
"""

from typing import Any


class CrabClawError(Exception):
    """Base class for all runtime errors."""

    kind = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Structured form used in tape entries and failure envelopes."""
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ConfigError(CrabClawError):
    """Invalid or missing configuration."""

    kind = "config"


# =========================================================================
# Provider errors
# =========================================================================


class LLMError(CrabClawError):
    """Error from the model provider boundary."""

    kind = "provider"


class NetworkError(LLMError):
    """Connection failure, timeout, or a broken stream."""

    kind = "network"


class AuthError(LLMError):
    """HTTP 401/403. Retrying cannot fix it."""

    kind = "auth"


class RateLimitError(LLMError):
    """HTTP 429."""

    kind = "rate_limit"

    def __init__(self, message: str, retry_after: float | None = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.retry_after = retry_after


class ProviderApiError(LLMError):
    """5xx, unexpected 4xx, or an error payload embedded in a 200 response."""

    kind = "provider_api"


# =========================================================================
# Tool errors
# =========================================================================


class ToolError(CrabClawError):
    """Base class for errors raised while resolving or running a tool."""

    kind = "tool"


class ToolNotFoundError(ToolError):
    kind = "tool_not_found"

    def __init__(self, name: str) -> None:
        super().__init__(f"tool not found: {name}", name=name)
        self.name = name


class ToolCancelledError(ToolError):
    """The turn was cancelled before this call ran."""

    kind = "cancelled"

    def __init__(self, name: str) -> None:
        super().__init__(f"cancelled before running {name}", name=name)


class ToolExecutionError(ToolError):
    kind = "tool_execution"


class SandboxViolationError(ToolExecutionError):
    """A path resolved outside the workspace root."""

    kind = "sandbox_violation"


class ShellTimeoutError(ToolExecutionError):
    kind = "shell_timeout"


class PathNotFoundError(ToolExecutionError):
    kind = "path_not_found"


class EmptyInputError(ToolExecutionError):
    kind = "empty_input"


class EditTargetNotFoundError(ToolExecutionError):
    """file.edit could not find the text it was asked to replace."""

    kind = "edit_target_not_found"


class InvalidToolArgumentsError(ToolExecutionError):
    kind = "invalid_arguments"


# =========================================================================
# Parse errors
# =========================================================================


class ParseError(CrabClawError):
    kind = "parse"


class CommandParseError(ParseError):
    """Malformed command line (empty name, unbalanced quotes)."""

    kind = "command_parse"

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(message, raw=raw)
        self.raw = raw


class TapeParseError(ParseError):
    kind = "tape_parse"
