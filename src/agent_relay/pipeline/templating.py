"""Carrying one step's output into the next step's input."""

from __future__ import annotations

from agent_relay.config import DEFAULT_PLACEHOLDER


def apply_template(
    template: str | None,
    previous_output: str,
    *,
    placeholder: str = DEFAULT_PLACEHOLDER,
) -> str:
    """Replace every placeholder occurrence; empty templates pass output through."""

    if not template:
        return previous_output
    return template.replace(placeholder, previous_output)


def step_input(
    *,
    step_index: int,
    template: str | None,
    initial_input: str,
    previous_output: str,
    placeholder: str = DEFAULT_PLACEHOLDER,
) -> str:
    """Effective input of a step; step 0 receives the initial input verbatim."""

    if step_index == 0:
        return initial_input
    return apply_template(template, previous_output, placeholder=placeholder)
