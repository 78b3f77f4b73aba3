"""Runtime configuration for the process engine, pipelines and store."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

MIN_CONCURRENT = 1
MAX_CONCURRENT = 20
DEFAULT_CONCURRENT = 5
DEFAULT_MODEL = "claude-sonnet-4-6"
DEFAULT_PLACEHOLDER = "{{input}}"

_ALWAYS_STRIPPED_ENV = (
    "CLAUDECODE",
    "ANTHROPIC_API_KEY",
    "AGENT_RELAY_DB_PATH",
)


def clamp_concurrency(value: int) -> int:
    """Clamp admission ceiling into the supported range."""

    return max(MIN_CONCURRENT, min(MAX_CONCURRENT, value))


@dataclass(slots=True)
class EngineSettings:
    """Process engine settings."""

    command: tuple[str, ...] = ("claude",)
    max_concurrent: int = DEFAULT_CONCURRENT
    default_model: str = DEFAULT_MODEL
    timeout_seconds: float = 1_800.0
    kill_grace_seconds: float = 5.0
    event_buffer_size: int = 1_000
    result_max_bytes: int = 1_048_576
    stderr_max_bytes: int = 65_536
    allowed_workdir_roots: tuple[Path, ...] = ()
    stripped_env_vars: tuple[str, ...] = _ALWAYS_STRIPPED_ENV
    poll_interval_seconds: float = 0.1

    def __post_init__(self) -> None:
        self.max_concurrent = clamp_concurrency(self.max_concurrent)


@dataclass(slots=True)
class PipelineSettings:
    """Pipeline orchestrator settings."""

    placeholder: str = DEFAULT_PLACEHOLDER
    preview_chars: int = 500


@dataclass(slots=True)
class StoreSettings:
    """Bundled SQLite store settings."""

    db_path: Path = Path(".agent_relay.db")
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    store: StoreSettings = field(default_factory=StoreSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        extra_stripped = _split_csv(os.getenv("AGENT_RELAY_STRIP_ENV_VARS", ""))
        return cls(
            engine=EngineSettings(
                command=resolve_engine_command(os.getenv("AGENT_RELAY_ENGINE_COMMAND", "")),
                max_concurrent=_env_int("AGENT_RELAY_MAX_CONCURRENT", DEFAULT_CONCURRENT),
                default_model=os.getenv("AGENT_RELAY_DEFAULT_MODEL", DEFAULT_MODEL),
                timeout_seconds=_env_float("AGENT_RELAY_TIMEOUT_SECONDS", 1_800.0),
                kill_grace_seconds=_env_float("AGENT_RELAY_KILL_GRACE_SECONDS", 5.0),
                event_buffer_size=_env_int("AGENT_RELAY_EVENT_BUFFER_SIZE", 1_000),
                result_max_bytes=_env_int("AGENT_RELAY_RESULT_MAX_BYTES", 1_048_576),
                stderr_max_bytes=_env_int("AGENT_RELAY_STDERR_MAX_BYTES", 65_536),
                allowed_workdir_roots=tuple(
                    Path(item).expanduser()
                    for item in _split_csv(os.getenv("AGENT_RELAY_ALLOWED_WORKDIR_ROOTS", ""))
                ),
                stripped_env_vars=_ALWAYS_STRIPPED_ENV + extra_stripped,
            ),
            pipeline=PipelineSettings(
                placeholder=os.getenv("AGENT_RELAY_PLACEHOLDER", DEFAULT_PLACEHOLDER),
                preview_chars=_env_int("AGENT_RELAY_PREVIEW_CHARS", 500),
            ),
            store=StoreSettings(
                db_path=db_path or Path(os.getenv("AGENT_RELAY_DB_PATH", ".agent_relay.db")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the engine cannot work with."""

        if self.engine.timeout_seconds <= 0:
            raise ValueError("AGENT_RELAY_TIMEOUT_SECONDS must be > 0.")
        if self.engine.kill_grace_seconds < 0:
            raise ValueError("AGENT_RELAY_KILL_GRACE_SECONDS must be >= 0.")
        if self.engine.event_buffer_size <= 0:
            raise ValueError("AGENT_RELAY_EVENT_BUFFER_SIZE must be a positive integer.")
        if self.engine.result_max_bytes <= 0:
            raise ValueError("AGENT_RELAY_RESULT_MAX_BYTES must be a positive integer.")
        if self.engine.stderr_max_bytes <= 0:
            raise ValueError("AGENT_RELAY_STDERR_MAX_BYTES must be a positive integer.")
        if not self.pipeline.placeholder:
            raise ValueError("AGENT_RELAY_PLACEHOLDER must not be empty.")
        for root in self.engine.allowed_workdir_roots:
            if not root.is_absolute():
                raise ValueError(
                    f"AGENT_RELAY_ALLOWED_WORKDIR_ROOTS entries must be absolute: {str(root)!r}",
                )


def resolve_engine_command(raw: str) -> tuple[str, ...]:
    """Resolve the engine command line, probing well-known install locations."""

    stripped = raw.strip()
    if stripped:
        argv = shlex.split(stripped)
        if argv:
            return tuple(argv)

    home = os.getenv("HOME", "")
    candidates = (
        Path(home) / ".local" / "bin" / "claude" if home else None,
        Path("/usr/local/bin/claude"),
        Path("/usr/bin/claude"),
    )
    for candidate in candidates:
        if candidate is not None and candidate.exists():
            return (str(candidate),)
    return ("claude",)


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
