"""Shared test fixtures."""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from agent_relay.config import EngineSettings
from agent_relay.engine.executor import ProcessEngine
from agent_relay.engine.models import OutputEvent, RunCallbacks, RunCompletion
from agent_relay.store.memory import InMemoryStore

ECHO_AGENT_COMMAND = (sys.executable, "-m", "agent_relay.engine.echo_agent")


class RunRecorder:
    """Collects one run's callbacks and lets tests block until it closes."""

    def __init__(self) -> None:
        self.events: list[OutputEvent] = []
        self.completion: RunCompletion | None = None
        self.error: Exception | None = None
        self.run_ids: list[str] = []
        self._done = threading.Event()

    @property
    def callbacks(self) -> RunCallbacks:
        return RunCallbacks(
            on_event=self._on_event,
            on_complete=self._on_complete,
            on_error=self._on_error,
        )

    def wait(self, timeout: float = 30.0) -> RunRecorder:
        assert self._done.wait(timeout), "run did not close in time"
        return self

    def _on_event(self, event: OutputEvent, run_id: str) -> None:
        self.events.append(event)
        self.run_ids.append(run_id)

    def _on_complete(self, completion: RunCompletion, run_id: str) -> None:
        self.completion = completion
        self.run_ids.append(run_id)
        self._done.set()

    def _on_error(self, error: Exception, run_id: str) -> None:
        self.error = error
        self.run_ids.append(run_id)
        self._done.set()


def wait_until(predicate: Callable[[], bool], timeout: float = 15.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture()
def engine_settings() -> EngineSettings:
    return EngineSettings(
        command=ECHO_AGENT_COMMAND,
        timeout_seconds=30.0,
        kill_grace_seconds=0.5,
        poll_interval_seconds=0.05,
    )


@pytest.fixture()
def engine(engine_settings: EngineSettings):
    engine = ProcessEngine(engine_settings)
    yield engine
    engine.cancel_all()
    engine.wait_idle(15.0)


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def record_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Directory where the echo agent records each invocation."""

    target = tmp_path / "invocations"
    monkeypatch.setenv("ECHO_AGENT_RECORD_DIR", str(target))
    return target


@pytest.fixture()
def recorder() -> type[RunRecorder]:
    return RunRecorder


@pytest.fixture(name="wait_until")
def wait_until_fixture() -> Callable[..., bool]:
    return wait_until
