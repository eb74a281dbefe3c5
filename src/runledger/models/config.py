"""Configuration models for runledger sessions and components."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from runledger.errors import ConfigurationError


class CompactionConfig(BaseModel):
    """Configuration for the token budget and the compaction engine."""

    max_tokens: int = Field(
        default=200_000,
        ge=1_000,
        description="Maximum context size of the turn-generation model, in tokens.",
    )

    compact_at_percent: float = Field(
        default=75,
        gt=0,
        le=100,
        description="Percentage of max_tokens at which compaction is triggered.",
    )

    keep_recent_messages: int = Field(
        default=10,
        ge=1,
        description="Number of most recent messages kept verbatim after compaction (K).",
    )

    max_summary_length: int = Field(
        default=8_000,
        ge=100,
        description="Hard ceiling on the cumulative summary, in characters.",
    )

    max_summary_output_tokens: int = Field(
        default=4_000,
        ge=100,
        description="Output token limit passed to the summarizer.",
    )

    max_message_chars: int = Field(
        default=2_000,
        ge=50,
        description="Per-message character cap when rendering history for the merge prompt.",
    )

    summary_chars_per_token: int = Field(
        default=4,
        ge=1,
        description="Size-to-token ratio used to estimate the summary's context cost.",
    )

    compaction_model: str | None = Field(
        default=None,
        description="Model used for summarisation. None = use the agent model.",
    )

    @property
    def trigger_tokens(self) -> int:
        """Total-token level at which ``check_and_compact()`` runs compaction."""
        return int(self.max_tokens * self.compact_at_percent / 100)


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="./runledger.sqlite",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class SandboxConfig(BaseModel):
    """Configuration for the shared execution container."""

    container_name: str = "runledger-sandbox"
    image: str = "python:3.12-slim"
    workdir: str = "/workspace"

    host_workspace: str = Field(
        default_factory=os.getcwd,
        description="Host directory bind-mounted read-write at ``workdir``.",
    )

    default_timeout_ms: int = Field(default=30_000, ge=100)

    stop_timeout_s: int = Field(
        default=5,
        ge=0,
        description="Grace period passed to ``container.stop()`` on teardown and recreation.",
    )

    kill_on_timeout: bool = Field(
        default=False,
        description=(
            "When True, commands run under the container's ``timeout -s KILL`` so a "
            "timed-out process is killed. When False it is left running (detached)."
        ),
    )

    @model_validator(mode="after")
    def validate_workdir(self) -> SandboxConfig:
        if not self.workdir.startswith("/"):
            raise ValueError("workdir must be an absolute container path")
        return self


class AgentConfig(BaseModel):
    """Configuration for the turn-generation loop."""

    model: str = "anthropic/claude-sonnet-4-5"

    max_steps: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum model steps (tool round-trips) per user turn.",
    )

    max_output_tokens: int = Field(default=4_096, ge=1)

    system_prompt: str = (
        "You are a helpful coding assistant with access to tools for executing "
        "commands, reading files, and writing files.\n\n"
        "You work in a sandboxed container where you can safely run commands and "
        "manipulate files in the workspace.\n\n"
        "Break tasks into steps, use the tools to accomplish them, and report the "
        "results of your actions. Be concise but thorough."
    )


LogLevel = Literal["debug", "info", "warning", "error"]


class RunledgerConfig(BaseModel):
    """
    Top-level configuration.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = RunledgerConfig(
            compaction=CompactionConfig(max_tokens=100_000, keep_recent_messages=6),
            sandbox=SandboxConfig(image="node:20-alpine"),
        )
    """

    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    log_level: LogLevel = "info"

    @classmethod
    def default(cls) -> RunledgerConfig:
        """Return a config instance with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RunledgerConfig:
        """
        Build a config from ``RUNLEDGER_*`` environment variables.

        Unset variables keep their defaults.

        Args:
            environ: Mapping to read from. Defaults to ``os.environ``.

        Raises:
            ConfigurationError: If any value fails validation.
        """
        env = os.environ if environ is None else environ

        sections: dict[str, dict[str, Any]] = {
            "compaction": {},
            "store": {},
            "sandbox": {},
            "agent": {},
        }
        top: dict[str, Any] = {}
        for var, (section, key) in _ENV_FIELDS.items():
            value = env.get(var)
            if value is None or value == "":
                continue
            if section is None:
                top[key] = value.lower()
            else:
                sections[section][key] = value

        try:
            return cls.model_validate({**sections, **top})
        except ValidationError as exc:
            problems = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            ]
            raise ConfigurationError(problems) from exc


_ENV_FIELDS: dict[str, tuple[str | None, str]] = {
    "RUNLEDGER_DB_PATH": ("store", "db_path"),
    "RUNLEDGER_MODEL": ("agent", "model"),
    "RUNLEDGER_COMPACTION_MODEL": ("compaction", "compaction_model"),
    "RUNLEDGER_MAX_TOKENS": ("compaction", "max_tokens"),
    "RUNLEDGER_COMPACT_AT_PERCENT": ("compaction", "compact_at_percent"),
    "RUNLEDGER_KEEP_RECENT": ("compaction", "keep_recent_messages"),
    "RUNLEDGER_MAX_SUMMARY_LENGTH": ("compaction", "max_summary_length"),
    "RUNLEDGER_SANDBOX_IMAGE": ("sandbox", "image"),
    "RUNLEDGER_SANDBOX_WORKDIR": ("sandbox", "workdir"),
    "RUNLEDGER_SANDBOX_NAME": ("sandbox", "container_name"),
    "RUNLEDGER_WORKSPACE": ("sandbox", "host_workspace"),
    "RUNLEDGER_COMMAND_TIMEOUT_MS": ("sandbox", "default_timeout_ms"),
    "RUNLEDGER_LOG_LEVEL": (None, "log_level"),
}
