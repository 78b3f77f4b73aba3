"""Domain models for pipeline definitions and runs."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from agent_relay.errors import PipelineDefinitionError


class PipelineStatus(str, Enum):
    """Pipeline run states; the last four are terminal."""

    STEP_RUNNING = "step_running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELED = "canceled"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_PIPELINE_STATUSES


TERMINAL_PIPELINE_STATUSES = frozenset(
    {
        PipelineStatus.COMPLETED,
        PipelineStatus.REJECTED,
        PipelineStatus.CANCELED,
        PipelineStatus.ERROR,
    },
)


@dataclass(frozen=True, slots=True)
class PipelineStep:
    """One stage bound to an agent."""

    agent_id: str
    input_template: str | None = None
    requires_approval: bool = False
    step_id: str = field(default_factory=lambda: str(uuid4()))
    order: int = 0
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "agent_id": self.agent_id,
            "input_template": self.input_template,
            "requires_approval": self.requires_approval,
            "order": self.order,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """Ordered list of steps; build with `from_mapping` or `build` to validate."""

    pipeline_id: str
    name: str
    steps: tuple[PipelineStep, ...]
    description: str = ""

    @classmethod
    def build(
        cls,
        *,
        pipeline_id: str,
        name: str,
        steps: list[PipelineStep] | tuple[PipelineStep, ...],
        description: str = "",
    ) -> PipelineDefinition:
        ordered = tuple(sorted(steps, key=lambda step: step.order))
        definition = cls(
            pipeline_id=pipeline_id,
            name=name,
            steps=ordered,
            description=description,
        )
        validate_definition(definition)
        return definition

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PipelineDefinition:
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise PipelineDefinitionError(["steps must be a non-empty list"])
        steps: list[PipelineStep] = []
        for index, raw in enumerate(raw_steps):
            if not isinstance(raw, Mapping):
                raise PipelineDefinitionError([f"steps[{index}] must be an object"])
            order = raw.get("order")
            steps.append(
                PipelineStep(
                    step_id=str(raw.get("step_id") or raw.get("id") or uuid4()),
                    agent_id=str(raw.get("agent_id") or raw.get("agentId") or ""),
                    input_template=raw.get("input_template", raw.get("inputTemplate")) or None,
                    requires_approval=bool(
                        raw.get("requires_approval", raw.get("requiresApproval", False)),
                    ),
                    order=int(order) if order is not None else index,
                    description=str(raw.get("description") or ""),
                ),
            )
        return cls.build(
            pipeline_id=str(data.get("pipeline_id") or data.get("id") or uuid4()),
            name=str(data.get("name") or ""),
            steps=steps,
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "description": self.description,
            "steps": [step.to_dict() for step in self.steps],
        }


def validate_definition(definition: PipelineDefinition) -> None:
    """Raise `PipelineDefinitionError` listing every problem found."""

    errors: list[str] = []
    if not definition.name:
        errors.append("name is required")
    if not definition.steps:
        errors.append("steps must be a non-empty list")
    for index, step in enumerate(definition.steps):
        if not step.agent_id:
            errors.append(f"steps[{index}].agent_id is required")
    if definition.steps and definition.steps[0].requires_approval:
        errors.append("steps[0] cannot require approval")
    if errors:
        raise PipelineDefinitionError(errors)


@dataclass(frozen=True, slots=True)
class StepResult:
    """Output of one fully completed step."""

    step_id: str
    agent_name: str
    result: str
    cost_usd: float
    duration_ms: int
    num_turns: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "agent_name": self.agent_name,
            "result": self.result,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "num_turns": self.num_turns,
        }


@dataclass(slots=True)
class PipelineOutcome:
    """Terminal result of one pipeline run."""

    run_id: str
    pipeline_id: str
    status: PipelineStatus
    results: list[StepResult] = field(default_factory=list)
    total_cost_usd: float = 0.0
    total_duration_ms: int = 0
    failed_step: int | None = None
    error: str | None = None
    record_id: str | None = None


@dataclass(frozen=True, slots=True)
class ActivePipelineRun:
    """Snapshot of a pipeline run that has not reached a terminal state."""

    run_id: str
    pipeline_id: str
    status: PipelineStatus
    current_step: int
    awaiting_approval: bool
    current_execution_id: str | None
