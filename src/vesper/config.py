"""Configuration management for Vesper."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vesper.logging_utils import LOG_FILE_NAME

WORKSPACE_PROMPT_FILE = "VESPER.md"
MAX_WORKSPACE_PROMPT_CHARS = 12_000

EmbeddingProviderName = Literal["hash", "openai", "ollama"]


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="VESPER_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    home: Path = Field(default=Path("~/.vesper"), description="Data directory for memory and logs")

    # Model backend
    model: str = Field(default="echo", description="Backend model as provider:model, or 'echo' for offline use")
    api_key: str | None = Field(default=None, description="API key for the model provider")
    api_base: str | None = Field(default=None, description="Optional API base URL")
    max_tokens: int = Field(default=2048, ge=1, description="Maximum tokens for responses")
    system_prompt: str | None = Field(default=None, description="Extra system prompt for the agent")

    # Embeddings and retrieval
    embedding_provider: EmbeddingProviderName = Field(default="hash", description="Embedding backend")
    embedding_model: str | None = Field(default=None, description="Embedding model, provider default when unset")
    embedding_dimension: int = Field(default=384, ge=1, description="Vector size of the hash embedder")
    retrieval_limit: int = Field(default=5, ge=0, description="Number of memory entries fed to the model")

    # Turn pipeline
    max_tool_rounds: int = Field(default=8, ge=1, description="Maximum number of tool execution rounds per turn")
    backend_max_attempts: int = Field(default=3, ge=1, description="Backend attempts before giving up")
    backoff_base: float = Field(default=0.5, ge=0, description="First retry delay in seconds")
    backoff_max: float = Field(default=4.0, ge=0, description="Upper bound of the retry delay in seconds")
    tool_timeout: float = Field(default=30.0, gt=0, description="Timeout for one tool execution in seconds")
    turn_timeout: float | None = Field(default=None, gt=0, description="Abort a turn after this many seconds")
    workers: int = Field(default=1, ge=1, description="Concurrent turn workers")

    # Tool confirmation
    yolo: bool = Field(default=False, description="Approve every confirmable tool call without asking")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")

    def resolve_home(self) -> Path:
        return self.home.expanduser()

    def resolve_log_file(self) -> Path:
        return self.resolve_home() / "logs" / LOG_FILE_NAME


def read_workspace_prompt(workspace_path: Path) -> str:
    """Read the workspace prompt file if present."""
    prompt_file = workspace_path / WORKSPACE_PROMPT_FILE
    if not prompt_file.is_file():
        return ""
    try:
        content = prompt_file.read_text(encoding="utf-8").strip()
    except OSError:
        return ""

    if len(content) <= MAX_WORKSPACE_PROMPT_CHARS:
        return content

    marker = f"\n\n[{WORKSPACE_PROMPT_FILE} truncated: middle content removed]\n\n"
    head_len = (MAX_WORKSPACE_PROMPT_CHARS - len(marker)) // 2
    tail_len = MAX_WORKSPACE_PROMPT_CHARS - len(marker) - head_len
    return f"{content[:head_len]}{marker}{content[-tail_len:]}"


def load_settings(workspace_path: Path | None = None, **overrides: object) -> Settings:
    """Load settings from the environment and merge the workspace prompt.

    Args:
        workspace_path: Optional workspace whose ``VESPER.md`` extends the system prompt
        overrides: Field values that win over the environment (CLI flags)

    Returns:
        Settings instance
    """
    settings = Settings()
    updates = {key: value for key, value in overrides.items() if value is not None}
    if workspace_path is not None:
        workspace_prompt = read_workspace_prompt(workspace_path)
        if workspace_prompt:
            base = updates.get("system_prompt", settings.system_prompt)
            updates["system_prompt"] = f"{base}\n\n{workspace_prompt}" if base else workspace_prompt
    if updates:
        settings = settings.model_copy(update=updates)
    return settings
