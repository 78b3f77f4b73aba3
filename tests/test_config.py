from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_relay.config import (
    DEFAULT_CONCURRENT,
    EngineSettings,
    Settings,
    clamp_concurrency,
    resolve_engine_command,
)
from agent_relay.engine.executor import ProcessEngine

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_clamp_concurrency_bounds() -> None:
    assert clamp_concurrency(0) == 1
    assert clamp_concurrency(-5) == 1
    assert clamp_concurrency(7) == 7
    assert clamp_concurrency(99) == 20


def test_engine_settings_clamp_on_construction() -> None:
    assert EngineSettings(max_concurrent=50).max_concurrent == 20
    assert EngineSettings().max_concurrent == DEFAULT_CONCURRENT


def test_update_max_concurrent_is_clamped() -> None:
    engine = ProcessEngine(EngineSettings())

    assert engine.update_max_concurrent(0) == 1
    assert engine.update_max_concurrent(12) == 12
    assert engine.max_concurrent == 12
    assert engine.update_max_concurrent(400) == 20


def test_settings_from_env_reads_prefixed_variables(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("AGENT_RELAY_ENGINE_COMMAND", "my-engine --flag 'two words'")
    monkeypatch.setenv("AGENT_RELAY_MAX_CONCURRENT", "30")
    monkeypatch.setenv("AGENT_RELAY_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("AGENT_RELAY_ALLOWED_WORKDIR_ROOTS", f"{tmp_path}, /srv/agents")
    monkeypatch.setenv("AGENT_RELAY_STRIP_ENV_VARS", "AWS_PROFILE,  KUBECONFIG")
    monkeypatch.setenv("AGENT_RELAY_PLACEHOLDER", "<<prev>>")
    monkeypatch.setenv("AGENT_RELAY_DB_PATH", str(tmp_path / "relay.db"))

    settings = Settings.from_env()
    settings.validate()

    assert settings.engine.command == ("my-engine", "--flag", "two words")
    assert settings.engine.max_concurrent == 20
    assert settings.engine.timeout_seconds == 12.5
    assert settings.engine.allowed_workdir_roots == (tmp_path, Path("/srv/agents"))
    assert "AWS_PROFILE" in settings.engine.stripped_env_vars
    assert "KUBECONFIG" in settings.engine.stripped_env_vars
    assert "ANTHROPIC_API_KEY" in settings.engine.stripped_env_vars
    assert settings.pipeline.placeholder == "<<prev>>"
    assert settings.store.db_path == tmp_path / "relay.db"


def test_explicit_db_path_overrides_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("AGENT_RELAY_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.store.db_path == tmp_path / "cli.db"


def test_invalid_integer_names_the_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_EVENT_BUFFER_SIZE", "lots")

    with pytest.raises(ValueError, match="AGENT_RELAY_EVENT_BUFFER_SIZE"):
        Settings.from_env()


def test_validate_rejects_non_positive_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_TIMEOUT_SECONDS", "0")

    with pytest.raises(ValueError, match="AGENT_RELAY_TIMEOUT_SECONDS"):
        Settings.from_env().validate()


def test_validate_rejects_relative_workdir_roots(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_ALLOWED_WORKDIR_ROOTS", "relative/root")

    with pytest.raises(ValueError, match="must be absolute"):
        Settings.from_env().validate()


def test_resolve_engine_command_falls_back_to_path_lookup(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    installed = tmp_path / ".local" / "bin" / "claude"

    assert resolve_engine_command("") in {("claude",), ("/usr/local/bin/claude",), ("/usr/bin/claude",)}

    installed.parent.mkdir(parents=True)
    installed.write_text("#!/bin/sh\n", "utf-8")
    assert resolve_engine_command("   ") == (str(installed),)
