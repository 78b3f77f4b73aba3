"""Invocation building for the reasoning-engine subprocess."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path

from agent_relay.engine.models import AgentConfig, PermissionMode, TaskSpec
from agent_relay.errors import DirectoryInvalid

PROMPT_MAX_CHARS = 50_000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SECRET_NAME = re.compile(r"(?i)(api_key|apikey|secret|token|password|passwd)$")


def sanitize_text(text: object, *, max_chars: int = PROMPT_MAX_CHARS) -> str:
    """Drop control characters and clamp prompt text."""

    if not isinstance(text, str):
        return ""
    return _CONTROL_CHARS.sub("", text)[:max_chars]


def build_prompt(task: TaskSpec | str) -> str:
    """Compose the prompt written to the engine's standard input."""

    if isinstance(task, str):
        return sanitize_text(task)
    parts: list[str] = []
    if task.description:
        parts.append(sanitize_text(task.description))
    if task.instructions:
        parts.append(f"\nAdditional instructions:\n{sanitize_text(task.instructions)}")
    return "\n".join(parts)


def build_args(
    config: AgentConfig,
    *,
    default_model: str,
    session_id: str | None = None,
) -> list[str]:
    """Build engine arguments; the prompt itself is delivered on stdin."""

    model = config.model or default_model
    args = ["-p", "--output-format", "stream-json", "--verbose", "--model", model]

    if session_id:
        args.extend(["--resume", session_id])

    if config.system_prompt:
        args.extend(["--system-prompt", config.system_prompt])

    if config.max_turns > 0:
        args.extend(["--max-turns", str(config.max_turns)])

    if config.allowed_tools:
        args.extend(["--allowedTools", ",".join(config.allowed_tools)])

    args.extend(
        ["--permission-mode", config.permission_mode or PermissionMode.BYPASS_PERMISSIONS.value],
    )
    return args


def build_env(
    *,
    secrets: Mapping[str, str] | None,
    stripped_names: tuple[str, ...],
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Copy ambient environment without secrets, then inject the run's own secrets."""

    source = os.environ if base_env is None else base_env
    stripped = {name.upper() for name in stripped_names}
    env = {
        name: value
        for name, value in source.items()
        if name.upper() not in stripped and _SECRET_NAME.search(name) is None
    }
    if not env.get("HOME"):
        env["HOME"] = str(Path.home())
    if not env.get("SHELL"):
        env["SHELL"] = "/bin/bash" if Path("/bin/bash").exists() else "/bin/sh"
    if not env.get("PATH"):
        env["PATH"] = os.defpath
    if secrets:
        env.update({str(name): str(value) for name, value in secrets.items()})
    return env


def prepare_working_directory(
    raw_path: str,
    *,
    allowed_roots: tuple[Path, ...],
) -> Path | None:
    """Validate the agent's working directory and create it when missing.

    Returns None when no directory is configured, so the engine inherits
    the current one.
    """

    stripped = raw_path.strip()
    if not stripped:
        return None

    path = Path(stripped).expanduser()
    if not path.is_absolute():
        raise DirectoryInvalid(stripped, "path must be absolute")
    resolved = path.resolve()

    if allowed_roots and not any(
        resolved.is_relative_to(root.expanduser().resolve()) for root in allowed_roots
    ):
        raise DirectoryInvalid(stripped, "outside of allowed roots")

    if resolved.exists():
        if not resolved.is_dir():
            raise DirectoryInvalid(stripped, "not a directory")
        return resolved

    try:
        resolved.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise DirectoryInvalid(stripped, f"could not be created: {error}") from error
    return resolved
