"""
Configuration for the runtime.

All configuration is loaded from environment variables. This keeps the
system flexible across providers (OpenAI-compatible endpoints, Anthropic)
without hardcoding any specific values.

The iteration cap and the context window are configurable but always
enforced: they are what keeps a turn bounded.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from crabclaw.errors import ConfigError

DEFAULT_MODEL = "openai:gpt-4o-mini"
DEFAULT_MAX_ITERATIONS = 5
DEFAULT_MAX_WINDOW = 50
DEFAULT_SHELL_TIMEOUT = 30.0
DEFAULT_MAX_READ_CHARS = 50_000
DEFAULT_WEB_TIMEOUT = 20.0
DEFAULT_MAX_FETCH_BYTES = 1_000_000


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


@dataclass
class LLMConfig:
    """Configuration for the provider client.

    `model` carries the provider as a prefix: `openai:<model>` or
    `anthropic:<model>`.
    """
    model: str = DEFAULT_MODEL
    api_key: str = ""
    api_base: str = ""
    temperature: float | None = None
    max_tokens: int = 4096
    request_timeout: float = 60.0
    max_retries: int = 3
    retry_delay: float = 1.0

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        temperature = os.getenv("CRABCLAW_TEMPERATURE")
        return cls(
            model=os.getenv("CRABCLAW_MODEL", DEFAULT_MODEL),
            api_key=os.getenv("CRABCLAW_API_KEY", ""),
            api_base=os.getenv("CRABCLAW_API_BASE", ""),
            temperature=_env_float("CRABCLAW_TEMPERATURE", 0.0) if temperature else None,
            max_tokens=_env_int("CRABCLAW_MAX_TOKENS", 4096),
            request_timeout=_env_float("CRABCLAW_REQUEST_TIMEOUT", 60.0),
            max_retries=_env_int("CRABCLAW_MAX_RETRIES", 3),
        )


@dataclass
class ContextConfig:
    """
    Configuration for context reconstruction.

    max_window is the number of most recent messages (after the last
    anchor) sent to the model. Older messages are dropped and the model is
    told so.
    """
    max_window: int = DEFAULT_MAX_WINDOW
    system_prompt: str | None = None

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            max_window=_env_int("CRABCLAW_MAX_CONTEXT_MESSAGES", DEFAULT_MAX_WINDOW),
            system_prompt=os.getenv("CRABCLAW_SYSTEM_PROMPT") or None,
        )


@dataclass
class LoopConfig:
    """
    Configuration for the agent loop.

    max_iterations caps tool-calling rounds per turn. Reaching it is a
    defined terminal state, not an error.
    """
    max_iterations: int = DEFAULT_MAX_ITERATIONS

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            max_iterations=_env_int("CRABCLAW_MAX_TOOL_ITERATIONS", DEFAULT_MAX_ITERATIONS),
        )


@dataclass
class ToolConfig:
    """Limits applied by the built-in tools."""
    shell_timeout: float = DEFAULT_SHELL_TIMEOUT
    max_read_chars: int = DEFAULT_MAX_READ_CHARS
    max_list_entries: int = 500
    max_search_matches: int = 200
    web_timeout: float = DEFAULT_WEB_TIMEOUT
    max_fetch_bytes: int = DEFAULT_MAX_FETCH_BYTES

    @classmethod
    def from_env(cls) -> "ToolConfig":
        """Load configuration from environment variables."""
        return cls(
            shell_timeout=_env_float("CRABCLAW_SHELL_TIMEOUT", DEFAULT_SHELL_TIMEOUT),
            max_read_chars=_env_int("CRABCLAW_MAX_READ_CHARS", DEFAULT_MAX_READ_CHARS),
            web_timeout=_env_float("CRABCLAW_WEB_TIMEOUT", DEFAULT_WEB_TIMEOUT),
            max_fetch_bytes=_env_int("CRABCLAW_MAX_FETCH_BYTES", DEFAULT_MAX_FETCH_BYTES),
        )


@dataclass
class AppConfig:
    """Combined configuration for the entire runtime."""
    workspace: Path
    llm: LLMConfig = field(default_factory=LLMConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    tape_dir: Path | None = None

    def __post_init__(self) -> None:
        self.workspace = Path(self.workspace).expanduser().resolve()
        if self.tape_dir is None:
            self.tape_dir = self.workspace / ".crabclaw" / "tapes"
        else:
            self.tape_dir = Path(self.tape_dir).expanduser()

    @classmethod
    def from_env(cls, workspace: str | Path | None = None) -> "AppConfig":
        """Load all configuration from environment variables."""
        root = workspace or os.getenv("CRABCLAW_WORKSPACE") or Path.cwd()
        tape_dir = os.getenv("CRABCLAW_TAPE_DIR")
        return cls(
            workspace=Path(root),
            llm=LLMConfig.from_env(),
            context=ContextConfig.from_env(),
            loop=LoopConfig.from_env(),
            tools=ToolConfig.from_env(),
            tape_dir=Path(tape_dir) if tape_dir else None,
        )
