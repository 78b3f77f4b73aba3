"""Thread-safe in-process store."""

from __future__ import annotations

import copy
import threading

from agent_relay.pipeline.models import PipelineDefinition
from agent_relay.store.models import AgentRecord, ExecutionRecord, ExecutionUpdate, StepRecord


class InMemoryStore:
    """Dictionary-backed `DurableStore` for tests and embedding."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._agents: dict[str, AgentRecord] = {}
        self._pipelines: dict[str, PipelineDefinition] = {}
        self._secrets: dict[str, dict[str, str]] = {}
        self._executions: dict[str, ExecutionRecord] = {}

    def add_agent(self, agent: AgentRecord) -> AgentRecord:
        with self._lock:
            self._agents[agent.agent_id] = agent
        return agent

    def add_pipeline(self, pipeline: PipelineDefinition) -> PipelineDefinition:
        with self._lock:
            self._pipelines[pipeline.pipeline_id] = pipeline
        return pipeline

    def set_secrets(self, agent_id: str, secrets: dict[str, str]) -> None:
        with self._lock:
            self._secrets[agent_id] = dict(secrets)

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        with self._lock:
            return self._agents.get(agent_id)

    def get_pipeline(self, pipeline_id: str) -> PipelineDefinition | None:
        with self._lock:
            return self._pipelines.get(pipeline_id)

    def get_secrets(self, agent_id: str) -> dict[str, str]:
        with self._lock:
            return dict(self._secrets.get(agent_id, {}))

    def create_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        with self._lock:
            self._executions[record.record_id] = copy.deepcopy(record)
        return record

    def update_execution(self, record_id: str, update: ExecutionUpdate) -> None:
        with self._lock:
            record = self._executions.get(record_id)
            if record is None:
                raise KeyError(f"Execution {record_id} not found")
            update.apply(record)

    def save_step(self, record_id: str, step: StepRecord) -> None:
        with self._lock:
            record = self._executions.get(record_id)
            if record is None:
                raise KeyError(f"Execution {record_id} not found")
            stored = copy.deepcopy(step)
            for index, existing in enumerate(record.steps):
                if existing.step_index == step.step_index:
                    record.steps[index] = stored
                    return
            record.steps.append(stored)
            record.steps.sort(key=lambda item: item.step_index)

    def get_execution(self, record_id: str) -> ExecutionRecord | None:
        with self._lock:
            record = self._executions.get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def list_executions(self, *, limit: int = 50) -> list[ExecutionRecord]:
        with self._lock:
            records = sorted(
                self._executions.values(),
                key=lambda item: item.started_at,
                reverse=True,
            )
            return [copy.deepcopy(record) for record in records[:limit]]
