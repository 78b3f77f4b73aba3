from __future__ import annotations

import threading

import allure
import pytest

from agent_relay.engine.cancellation import CancellationToken
from agent_relay.errors import ApprovalPending
from agent_relay.pipeline.approvals import ApprovalRegistry
from agent_relay.pipeline.templating import apply_template, step_input

pytestmark = [
    allure.epic("Pipelines"),
    allure.feature("Approval Gates & Templating"),
]


def _wait_in_thread(registry: ApprovalRegistry, token: CancellationToken) -> tuple[threading.Thread, list[bool]]:
    decisions: list[bool] = []
    thread = threading.Thread(target=lambda: decisions.append(registry.wait("run-1", token)))
    thread.start()
    return thread, decisions


def _until_pending(registry: ApprovalRegistry) -> None:
    for _ in range(200):
        if registry.is_pending("run-1"):
            return
        threading.Event().wait(0.01)
    pytest.fail("approval never became pending")


def test_approve_resolves_waiting_thread() -> None:
    registry = ApprovalRegistry()
    thread, decisions = _wait_in_thread(registry, CancellationToken())
    _until_pending(registry)

    assert registry.resolve("run-1", True) is True
    thread.join(5)

    assert decisions == [True]
    assert registry.is_pending("run-1") is False
    assert registry.resolve("run-1", True) is False


def test_cancellation_resolves_as_not_approved() -> None:
    registry = ApprovalRegistry()
    token = CancellationToken()
    thread, decisions = _wait_in_thread(registry, token)
    _until_pending(registry)

    token.cancel()
    thread.join(5)

    assert decisions == [False]
    assert registry.is_pending("run-1") is False


def test_already_cancelled_token_does_not_block() -> None:
    registry = ApprovalRegistry()
    token = CancellationToken()
    token.cancel()

    assert registry.wait("run-1", token) is False


def test_second_pending_approval_for_same_run_is_rejected() -> None:
    registry = ApprovalRegistry()
    registry.open("run-1")

    with pytest.raises(ApprovalPending):
        registry.open("run-1")


def test_cancellation_token_runs_callbacks_once() -> None:
    token = CancellationToken()
    calls: list[str] = []
    unregister = token.add_callback(lambda: calls.append("first"))
    token.add_callback(lambda: calls.append("second"))
    unregister()

    assert token.cancel() is True
    assert token.cancel() is False
    token.add_callback(lambda: calls.append("late"))

    assert calls == ["second", "late"]
    assert token.cancelled is True
    assert token.wait(0) is True


def test_failing_callback_does_not_stop_others() -> None:
    token = CancellationToken()
    calls: list[str] = []

    def _boom() -> None:
        raise RuntimeError("callback bug")

    token.add_callback(_boom)
    token.add_callback(lambda: calls.append("ran"))
    token.cancel()

    assert calls == ["ran"]


def test_apply_template_replaces_every_placeholder() -> None:
    assert apply_template("{{input}} and {{input}}", "x") == "x and x"
    assert apply_template("no placeholder", "x") == "no placeholder"
    assert apply_template(None, "pass") == "pass"
    assert apply_template("", "pass") == "pass"
    assert apply_template("<<p>>!", "y", placeholder="<<p>>") == "y!"


def test_step_input_uses_initial_input_for_first_step() -> None:
    assert (
        step_input(step_index=0, template="t {{input}}", initial_input="init", previous_output="")
        == "init"
    )
    assert (
        step_input(step_index=2, template="t {{input}}", initial_input="init", previous_output="prev")
        == "t prev"
    )
