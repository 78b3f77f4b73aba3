from __future__ import annotations

import logging
import threading

import allure

from agent_relay.controllers import describe_event
from agent_relay.events import CallbackSink, CollectingSink, LoggingSink, RelayEvent, safe_publish

pytestmark = [
    allure.epic("Events"),
    allure.feature("Event Sinks"),
]


def test_collecting_sink_wait_for_matches_type_and_predicate() -> None:
    sink = CollectingSink()

    def _publish_later() -> None:
        sink.publish(RelayEvent(type="step_start", run_id="r", data={"step_index": 0}))
        sink.publish(RelayEvent(type="step_start", run_id="r", data={"step_index": 1}))

    threading.Timer(0.05, _publish_later).start()
    event = sink.wait_for("step_start", where=lambda item: item.data["step_index"] == 1)

    assert event is not None
    assert event.data == {"step_index": 1}
    assert sink.wait_for("complete", timeout=0.05) is None
    assert len(sink.of_type("step_start")) == 2


def test_safe_publish_contains_sink_failures(caplog) -> None:
    def _explode(event: RelayEvent) -> None:
        raise RuntimeError("subscriber gone")

    with caplog.at_level(logging.ERROR, logger="agent_relay.events"):
        safe_publish(CallbackSink(_explode), RelayEvent(type="complete", run_id="r"))
    safe_publish(None, RelayEvent(type="complete", run_id="r"))

    assert "Event sink failed for complete" in caplog.text


def test_logging_sink_writes_events(caplog) -> None:
    with caplog.at_level(logging.INFO, logger="agent_relay.events"):
        LoggingSink().publish(RelayEvent(type="rejected", run_id="run-5", data={"step_index": 2}))

    assert "event rejected run=run-5" in caplog.text


def test_event_dict_omits_unset_owners() -> None:
    event = RelayEvent(type="complete", run_id="r", data={"total_cost_usd": 0.1}, pipeline_id="p")

    assert event.to_dict() == {
        "type": "complete",
        "run_id": "r",
        "data": {"total_cost_usd": 0.1},
        "pipeline_id": "p",
    }


def test_describe_event_renders_cli_lines() -> None:
    def _line(event_type: str, **data) -> str | None:  # noqa: ANN003
        return describe_event(RelayEvent(type=event_type, run_id="r", data=data))

    assert _line("step_start", step_index=1, agent_name="Writer") == "== step 1: Writer"
    assert _line("execution_output", event={"type": "chunk", "content": "hi"}) == "hi"
    assert _line("step_output", event={"type": "tool", "name": "Bash", "detail": "ls"}) == (
        "[tool] Bash ls"
    )
    assert _line("step_output", event={"type": "turn"}) is None
    assert _line("error", step_index=0, message="boom") == "!! boom"
    assert _line("rejected", step_index=1) == "== rejected at step 1"
    assert _line("complete", results=[], total_cost_usd=0.0) is None
