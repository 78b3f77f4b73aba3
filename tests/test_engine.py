from __future__ import annotations

import json
import time
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from agent_relay.engine.executor import ProcessEngine, completion_error
from agent_relay.engine.models import AgentConfig, OutputEventKind, TaskSpec
from agent_relay.engine.stream import StreamParser
from agent_relay.errors import (
    AdmissionRejected,
    DirectoryInvalid,
    ExecutionTimeout,
    ResultError,
    SpawnFailure,
    SubprocessError,
)

pytestmark = [
    allure.epic("Process Engine"),
    allure.feature("Subprocess Runs"),
]


def _invocations(record_dir: Path) -> list[dict[str, object]]:
    if not record_dir.exists():
        return []
    return [
        json.loads(path.read_text("utf-8"))
        for path in sorted(record_dir.glob("invocation-*.json"))
    ]


def test_run_echoes_prompt_with_result_metadata(engine, recorder, record_dir) -> None:
    run = recorder()

    run_id = engine.execute(AgentConfig(model="echo-model"), "hello", run.callbacks)
    run.wait()

    assert run.error is None
    completion = run.completion
    assert completion is not None
    assert completion.run_id == run_id
    assert completion.result == "hello"
    assert completion.exit_code == 0
    assert completion.cost_usd == pytest.approx(0.01)
    assert completion.num_turns == 1
    assert completion.session_id == "echo-session"
    assert completion.canceled is False
    assert completion.timed_out is False
    assert completion_error(completion) is None
    assert set(run.run_ids) == {run_id}

    kinds = [event.kind for event in run.events]
    assert kinds == [OutputEventKind.SYSTEM, OutputEventKind.TURN, OutputEventKind.CHUNK]

    [invocation] = _invocations(record_dir)
    assert invocation["prompt"] == "hello"
    argv = invocation["argv"]
    assert argv[argv.index("--model") + 1] == "echo-model"
    assert "stream-json" in argv
    assert engine.active_count() == 0


def test_task_spec_instructions_reach_engine(engine, recorder, record_dir) -> None:
    run = recorder()

    engine.execute(
        AgentConfig(),
        TaskSpec(description="Write a poem", instructions="Keep it short"),
        run.callbacks,
    )
    run.wait()

    [invocation] = _invocations(record_dir)
    assert invocation["prompt"] == "Write a poem\n\nAdditional instructions:\nKeep it short"


def test_events_are_delivered_in_stream_order(engine, recorder, monkeypatch) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "chatty")
    monkeypatch.setenv("ECHO_AGENT_CHUNKS", "50")
    run = recorder()

    engine.execute(AgentConfig(), "ignored", run.callbacks)
    run.wait()

    chunks = [event.text for event in run.events if event.kind is OutputEventKind.CHUNK]
    assert chunks == [f"{index};" for index in range(50)]
    assert run.completion is not None
    assert run.completion.result == "".join(chunks)


def test_tool_events_carry_name_and_detail(engine, recorder, monkeypatch) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "tool")
    run = recorder()

    engine.execute(AgentConfig(), "list files", run.callbacks)
    run.wait()

    tools = [event for event in run.events if event.kind is OutputEventKind.TOOL]
    assert [(event.name, event.detail) for event in tools] == [("Bash", "ls -la")]


def test_malformed_output_never_aborts_the_run(engine, recorder, monkeypatch) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "malformed")
    run = recorder()

    engine.execute(AgentConfig(), "still here", run.callbacks)
    run.wait()

    assert run.error is None
    assert run.completion is not None
    assert run.completion.exit_code == 0
    assert "this is not json" in run.completion.result
    assert "[1, 2, 3]" in run.completion.result
    assert run.completion.result.endswith("still here")


def test_stderr_lines_are_streamed_and_captured(engine, recorder, monkeypatch) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "stderr")
    run = recorder()

    engine.execute(AgentConfig(), "noisy", run.callbacks)
    run.wait()

    lines = [event.line for event in run.events if event.kind is OutputEventKind.STDERR]
    assert lines == ["warning: first", "warning: second"]
    assert run.completion is not None
    assert "warning: second" in run.completion.stderr


def test_nonzero_exit_without_output_is_classified_as_subprocess_error(
    engine,
    recorder,
    monkeypatch,
) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "exit")
    run = recorder()

    engine.execute(AgentConfig(), "crash", run.callbacks)
    run.wait()

    assert run.completion is not None
    assert run.completion.exit_code == 3
    failure = completion_error(run.completion)
    assert isinstance(failure, SubprocessError)
    assert not isinstance(failure, ExecutionTimeout)
    assert "fatal: engine crashed" in str(failure)
    assert failure.exit_code == 3


def test_engine_reported_errors_arrive_as_result_error(engine, recorder, monkeypatch) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "error")
    run = recorder()

    engine.execute(AgentConfig(), "fail please", run.callbacks)
    run.wait()

    assert run.completion is None
    assert isinstance(run.error, ResultError)
    assert run.error.errors == ["boom", "second failure"]


def test_spawn_failure_is_delivered_through_on_error(engine_settings, recorder) -> None:
    engine = ProcessEngine(replace(engine_settings, command=("/nonexistent/relay-engine",)))
    run = recorder()

    run_id = engine.execute(AgentConfig(), "hello", run.callbacks)
    run.wait()

    assert isinstance(run.error, SpawnFailure)
    assert run.error.transient is False
    assert run.run_ids == [run_id]
    assert engine.active_count() == 0


def test_invalid_working_directory_is_rejected_before_spawn(engine, recorder, record_dir) -> None:
    run = recorder()

    with pytest.raises(DirectoryInvalid):
        engine.execute(AgentConfig(working_directory="not/absolute"), "hello", run.callbacks)

    assert engine.active_count() == 0
    assert _invocations(record_dir) == []


def test_working_directory_is_created_and_used(engine, recorder, record_dir, tmp_path) -> None:
    workdir = tmp_path / "work" / "nested"
    run = recorder()

    engine.execute(AgentConfig(working_directory=str(workdir)), "where am i", run.callbacks)
    run.wait()

    [invocation] = _invocations(record_dir)
    assert Path(str(invocation["cwd"])).resolve() == workdir.resolve()


def test_admission_ceiling_rejects_without_spawning(
    engine,
    recorder,
    record_dir,
    monkeypatch,
    wait_until,
) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "hang")
    runs = [recorder() for _ in range(5)]
    for run in runs:
        engine.execute(AgentConfig(), "hold", run.callbacks)

    assert engine.active_count() == 5
    assert wait_until(lambda: len(_invocations(record_dir)) == 5)

    with pytest.raises(AdmissionRejected) as excinfo:
        engine.execute(AgentConfig(), "one too many")
    assert excinfo.value.transient is True
    assert excinfo.value.max_concurrent == 5

    time.sleep(0.5)
    assert len(_invocations(record_dir)) == 5

    assert engine.cancel_all() == 5
    for run in runs:
        run.wait()
        assert run.completion is not None
        assert run.completion.canceled is True
    assert engine.wait_idle(10.0)

    follow_up = recorder()
    monkeypatch.setenv("ECHO_AGENT_MODE", "echo")
    engine.execute(AgentConfig(), "room again", follow_up.callbacks)
    follow_up.wait()
    assert follow_up.completion is not None
    assert follow_up.completion.result == "room again"


def test_cancel_terminates_running_process(engine, recorder, record_dir, monkeypatch, wait_until) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "hang")
    run = recorder()

    run_id = engine.execute(AgentConfig(), "hold", run.callbacks)
    assert wait_until(lambda: len(_invocations(record_dir)) == 1)
    assert engine.cancel(run_id) is True
    run.wait(10.0)

    assert run.completion is not None
    assert run.completion.canceled is True
    assert completion_error(run.completion) is None
    assert engine.cancel(run_id) is False
    assert engine.cancel("unknown-run") is False


def test_timeout_escalates_to_kill_when_terminate_is_ignored(
    engine,
    recorder,
    monkeypatch,
) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "hang")
    monkeypatch.setenv("ECHO_AGENT_IGNORE_TERM", "1")
    run = recorder()

    started = time.monotonic()
    engine.execute(AgentConfig(timeout_seconds=1.0), "hold", run.callbacks)
    run.wait(15.0)
    elapsed = time.monotonic() - started

    assert run.completion is not None
    assert run.completion.timed_out is True
    assert run.completion.canceled is False
    assert run.completion.exit_code != 0
    assert isinstance(completion_error(run.completion), ExecutionTimeout)
    assert elapsed < 10.0


def test_get_active_exposes_buffered_events(engine, recorder, monkeypatch, wait_until) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "hang")
    run = recorder()
    config = AgentConfig(model="buffered")

    run_id = engine.execute(config, "hold", run.callbacks)
    assert wait_until(
        lambda: any(active.buffered_events for active in engine.get_active()),
    )

    [active] = engine.get_active()
    assert active.run_id == run_id
    assert active.agent_config == config
    assert active.buffered_events[0].kind is OutputEventKind.SYSTEM

    engine.cancel(run_id)
    run.wait(10.0)
    assert engine.get_active() == []


def test_resume_passes_session_and_follow_up(engine, recorder, record_dir) -> None:
    run = recorder()

    engine.resume(AgentConfig(), "sess-42", "and then?", run.callbacks)
    run.wait()

    [invocation] = _invocations(record_dir)
    argv = invocation["argv"]
    assert argv[argv.index("--resume") + 1] == "sess-42"
    assert invocation["prompt"] == "and then?"
    assert run.completion is not None
    assert run.completion.session_id == "sess-42"


def test_secrets_are_injected_into_child_environment(engine, recorder) -> None:
    run = recorder()

    engine.execute(AgentConfig(), "hello", run.callbacks, secrets={"ECHO_AGENT_TEXT": "from secret"})
    run.wait()

    assert run.completion is not None
    assert run.completion.result == "from secret"


def test_result_is_capped_and_flagged(engine_settings, recorder) -> None:
    engine = ProcessEngine(replace(engine_settings, result_max_bytes=4))
    run = recorder()

    engine.execute(AgentConfig(), "abcdefgh", run.callbacks)
    run.wait()

    assert run.completion is not None
    assert run.completion.result == "abcd"
    assert run.completion.result_truncated is True


def test_subscriber_exception_does_not_break_delivery(engine, recorder) -> None:
    run = recorder()
    callbacks = run.callbacks

    def _explode(event, run_id):  # noqa: ANN001
        raise RuntimeError("subscriber bug")

    engine.execute(AgentConfig(), "hello", replace(callbacks, on_event=_explode))
    run.wait()

    assert run.completion is not None
    assert run.completion.result == "hello"


def test_parser_failure_on_one_line_keeps_reading(engine, recorder, monkeypatch) -> None:
    original = StreamParser.feed_line
    calls: list[str] = []

    def _fail_first(self, line: str):  # noqa: ANN001, ANN202
        calls.append(line)
        if len(calls) == 1:
            raise OverflowError("cannot convert float infinity to integer")
        return original(self, line)

    monkeypatch.setattr(StreamParser, "feed_line", _fail_first)
    run = recorder()

    engine.execute(AgentConfig(), "survives", run.callbacks)
    run.wait()

    assert run.error is None
    assert run.completion is not None
    assert run.completion.exit_code == 0
    assert run.completion.result.endswith("survives")
    assert len(calls) > 1


def test_timeout_after_partial_output_is_a_normal_close(engine, recorder, monkeypatch) -> None:
    monkeypatch.setenv("ECHO_AGENT_MODE", "stall")
    run = recorder()

    engine.execute(AgentConfig(timeout_seconds=1.0), "half done", run.callbacks)
    run.wait(15.0)

    assert run.completion is not None
    assert run.completion.timed_out is True
    assert run.completion.result == "half done"
    assert completion_error(run.completion) is None
