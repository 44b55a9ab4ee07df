"""Runtime configuration for job control and the detached worker."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

OUTPUT_FORMATS: tuple[str, ...] = ("stream-json", "text")
_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class AgentSettings:
    """How the worker invokes the external assistant CLI."""

    command: tuple[str, ...] = ("claude",)
    output_format: str = "stream-json"
    default_model: str | None = None
    credential_env: str = "ANTHROPIC_API_KEY"
    require_credential: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings passed explicitly to store, supervisor, and worker."""

    jobs_root: Path = Path("jobs")
    agent: AgentSettings = field(default_factory=AgentSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, jobs_root: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        output_format = os.getenv("AGENT_JOBS_OUTPUT_FORMAT", "stream-json").strip().lower()
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(
                f"Invalid AGENT_JOBS_OUTPUT_FORMAT: {output_format!r}. "
                f"Expected one of: {', '.join(OUTPUT_FORMATS)}.",
            )
        log_level = os.getenv("AGENT_JOBS_LOG_LEVEL", "INFO").strip().upper()
        if log_level not in _LOG_LEVELS:
            raise ValueError(f"Invalid AGENT_JOBS_LOG_LEVEL: {log_level!r}")

        root = jobs_root or Path(os.getenv("AGENT_JOBS_ROOT", "jobs"))
        return cls(
            jobs_root=root.expanduser().resolve(),
            agent=AgentSettings(
                command=_parse_command(os.getenv("AGENT_JOBS_AGENT_COMMAND", "claude")),
                output_format=output_format,
                default_model=os.getenv("AGENT_JOBS_MODEL", "").strip() or None,
                credential_env=os.getenv("AGENT_JOBS_CREDENTIAL_ENV", "ANTHROPIC_API_KEY").strip(),
                require_credential=_env_bool("AGENT_JOBS_REQUIRE_CREDENTIAL", default=True),
            ),
            log_level=log_level,
        )

    def credential_missing(self) -> bool:
        """True when the worker must refuse to run for lack of a credential."""

        if not self.agent.require_credential:
            return False
        return not os.getenv(self.agent.credential_env, "").strip()


def _parse_command(value: str) -> tuple[str, ...]:
    argv = tuple(shlex.split(value.strip()))
    if not argv:
        raise ValueError("AGENT_JOBS_AGENT_COMMAND must not be empty.")
    return argv


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
