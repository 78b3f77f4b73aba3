"""Interfaces of the external collaborators consumed by the core."""

from __future__ import annotations

from typing import Protocol

from agent_relay.pipeline.models import PipelineDefinition
from agent_relay.store.models import AgentRecord, ExecutionRecord, ExecutionUpdate, StepRecord


class DurableStore(Protocol):
    """Definitions in, execution state changes out."""

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        """Return the agent definition or None."""

    def get_pipeline(self, pipeline_id: str) -> PipelineDefinition | None:
        """Return the pipeline definition or None."""

    def get_secrets(self, agent_id: str) -> dict[str, str]:
        """Return the secret bag merged into the agent's run environment."""

    def create_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        """Persist a new execution record."""

    def update_execution(self, record_id: str, update: ExecutionUpdate) -> None:
        """Apply a partial update to an execution record."""

    def save_step(self, record_id: str, step: StepRecord) -> None:
        """Insert or replace the step record at `step.step_index`."""

    def get_execution(self, record_id: str) -> ExecutionRecord | None:
        """Return the execution record with its steps."""


class ReportGenerator(Protocol):
    """Black-box report producer invoked after successful runs."""

    def generate(self, record: ExecutionRecord) -> str:
        """Generate a report and return a reference to the artifact."""
