"""Records exchanged with the durable store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_relay.engine.models import AgentConfig


class ExecutionStatus(str, Enum):
    """Execution and step record states."""

    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELED = "canceled"
    REJECTED = "rejected"


class ExecutionKind(str, Enum):
    AGENT = "agent"
    PIPELINE = "pipeline"


@dataclass(slots=True)
class AgentRecord:
    """Stored agent definition."""

    agent_id: str
    name: str
    config: AgentConfig = field(default_factory=AgentConfig)
    active: bool = True
    description: str = ""


@dataclass(slots=True)
class StepRecord:
    """Per-step state inside a pipeline execution record."""

    step_index: int
    step_id: str
    agent_id: str
    agent_name: str
    status: ExecutionStatus
    started_at: datetime
    ended_at: datetime | None = None
    run_id: str | None = None
    input_text: str = ""
    result: str = ""
    error: str | None = None
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0


@dataclass(slots=True)
class ExecutionRecord:
    """Execution history entry for a direct run or a pipeline run."""

    record_id: str
    kind: ExecutionKind
    target_id: str
    name: str
    input_text: str
    status: ExecutionStatus
    started_at: datetime
    ended_at: datetime | None = None
    run_id: str | None = None
    result: str = ""
    error: str | None = None
    exit_code: int | None = None
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    session_id: str = ""
    parent_session_id: str | None = None
    current_step: int | None = None
    steps: list[StepRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "kind": self.kind.value,
            "target_id": self.target_id,
            "name": self.name,
            "input_text": self.input_text,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "run_id": self.run_id,
            "result": self.result,
            "error": self.error,
            "exit_code": self.exit_code,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "num_turns": self.num_turns,
            "session_id": self.session_id,
            "parent_session_id": self.parent_session_id,
            "current_step": self.current_step,
            "steps": [
                {
                    "step_index": step.step_index,
                    "agent_name": step.agent_name,
                    "status": step.status.value,
                    "cost_usd": step.cost_usd,
                    "num_turns": step.num_turns,
                }
                for step in self.steps
            ],
        }


@dataclass(slots=True)
class ExecutionUpdate:
    """Partial update; only fields that are not None are applied."""

    status: ExecutionStatus | None = None
    ended_at: datetime | None = None
    run_id: str | None = None
    result: str | None = None
    error: str | None = None
    exit_code: int | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    session_id: str | None = None
    current_step: int | None = None

    def apply(self, record: ExecutionRecord) -> None:
        for name in (
            "status",
            "ended_at",
            "run_id",
            "result",
            "error",
            "exit_code",
            "cost_usd",
            "duration_ms",
            "num_turns",
            "session_id",
            "current_step",
        ):
            value = getattr(self, name)
            if value is not None:
                setattr(record, name, value)
