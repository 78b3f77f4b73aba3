"""SQLModel-backed durable store for agents, pipelines and execution history."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from sqlmodel import Session, col, select

from agent_relay.engine.models import AgentConfig
from agent_relay.pipeline.models import PipelineDefinition
from agent_relay.store.alembic_runner import upgrade_head
from agent_relay.store.common import as_utc, build_sqlite_engine, utc_now
from agent_relay.store.models import (
    AgentRecord,
    ExecutionKind,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionUpdate,
    StepRecord,
)
from agent_relay.store.sqlmodel_models import (
    AgentRow,
    AgentSecretRow,
    ExecutionRow,
    ExecutionStepRow,
    PipelineRow,
)

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = (
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
)


class SqlStore:
    """`DurableStore` persisted in SQLite through SQLModel sessions."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)
        logger.debug("Store schema at head: %s", self.db_path)

    # -- agents -----------------------------------------------------------------

    def save_agent(self, agent: AgentRecord) -> AgentRecord:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(AgentRow, agent.agent_id)
            if row is None:
                row = AgentRow(
                    agent_id=agent.agent_id,
                    name=agent.name,
                    config_json="{}",
                    created_at=_to_db_datetime(now),
                    updated_at=_to_db_datetime(now),
                )
            row.name = agent.name
            row.description = agent.description
            row.active = agent.active
            row.config_json = json.dumps(agent.config.to_dict(), ensure_ascii=False)
            row.updated_at = _to_db_datetime(now)
            session.add(row)
            session.commit()
        return agent

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        with Session(self.engine) as session:
            row = session.get(AgentRow, agent_id)
            return _to_agent(row) if row is not None else None

    def list_agents(self) -> list[AgentRecord]:
        with Session(self.engine) as session:
            rows = session.exec(select(AgentRow).order_by(col(AgentRow.name).asc())).all()
            return [_to_agent(row) for row in rows]

    def set_secret(self, agent_id: str, name: str, value: str) -> None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentSecretRow).where(
                    AgentSecretRow.agent_id == agent_id,
                    AgentSecretRow.name == name,
                ),
            ).one_or_none()
            if row is None:
                row = AgentSecretRow(
                    agent_id=agent_id,
                    name=name,
                    value=value,
                    updated_at=_to_db_datetime(utc_now()),
                )
            row.value = value
            row.updated_at = _to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def get_secrets(self, agent_id: str) -> dict[str, str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentSecretRow).where(AgentSecretRow.agent_id == agent_id),
            ).all()
            return {row.name: row.value for row in rows}

    # -- pipelines --------------------------------------------------------------

    def save_pipeline(self, pipeline: PipelineDefinition) -> PipelineDefinition:
        now = utc_now()
        steps_json = json.dumps(
            [step.to_dict() for step in pipeline.steps],
            ensure_ascii=False,
        )
        with Session(self.engine) as session:
            row = session.get(PipelineRow, pipeline.pipeline_id)
            if row is None:
                row = PipelineRow(
                    pipeline_id=pipeline.pipeline_id,
                    name=pipeline.name,
                    steps_json=steps_json,
                    created_at=_to_db_datetime(now),
                    updated_at=_to_db_datetime(now),
                )
            row.name = pipeline.name
            row.description = pipeline.description
            row.steps_json = steps_json
            row.updated_at = _to_db_datetime(now)
            session.add(row)
            session.commit()
        return pipeline

    def get_pipeline(self, pipeline_id: str) -> PipelineDefinition | None:
        with Session(self.engine) as session:
            row = session.get(PipelineRow, pipeline_id)
            return _to_pipeline(row) if row is not None else None

    def list_pipelines(self) -> list[PipelineDefinition]:
        with Session(self.engine) as session:
            rows = session.exec(select(PipelineRow).order_by(col(PipelineRow.name).asc())).all()
            return [_to_pipeline(row) for row in rows]

    # -- executions -------------------------------------------------------------

    def create_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        with Session(self.engine) as session:
            session.add(
                ExecutionRow(
                    record_id=record.record_id,
                    kind=record.kind.value,
                    target_id=record.target_id,
                    name=record.name,
                    input_text=record.input_text,
                    status=record.status.value,
                    started_at=_to_db_datetime(record.started_at),
                    ended_at=_to_db_datetime(record.ended_at) if record.ended_at else None,
                    run_id=record.run_id,
                    result=record.result,
                    error=record.error,
                    exit_code=record.exit_code,
                    cost_usd=record.cost_usd,
                    duration_ms=record.duration_ms,
                    num_turns=record.num_turns,
                    session_id=record.session_id,
                    parent_session_id=record.parent_session_id,
                    current_step=record.current_step,
                ),
            )
            session.commit()
        for step in record.steps:
            self.save_step(record.record_id, step)
        return record

    def update_execution(self, record_id: str, update: ExecutionUpdate) -> None:
        with Session(self.engine) as session:
            row = session.get(ExecutionRow, record_id)
            if row is None:
                raise KeyError(f"Execution {record_id} not found")
            for name in _UPDATABLE_FIELDS:
                value = getattr(update, name)
                if value is None:
                    continue
                if isinstance(value, ExecutionStatus):
                    value = value.value
                elif isinstance(value, datetime):
                    value = _to_db_datetime(value)
                setattr(row, name, value)
            session.add(row)
            session.commit()

    def save_step(self, record_id: str, step: StepRecord) -> None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ExecutionStepRow).where(
                    ExecutionStepRow.record_id == record_id,
                    ExecutionStepRow.step_index == step.step_index,
                ),
            ).one_or_none()
            if row is None:
                row = ExecutionStepRow(
                    record_id=record_id,
                    step_index=step.step_index,
                    step_id=step.step_id,
                    agent_id=step.agent_id,
                    agent_name=step.agent_name,
                    status=step.status.value,
                    started_at=_to_db_datetime(step.started_at),
                )
            row.step_id = step.step_id
            row.agent_id = step.agent_id
            row.agent_name = step.agent_name
            row.status = step.status.value
            row.started_at = _to_db_datetime(step.started_at)
            row.ended_at = _to_db_datetime(step.ended_at) if step.ended_at else None
            row.run_id = step.run_id
            row.input_text = step.input_text
            row.result = step.result
            row.error = step.error
            row.cost_usd = step.cost_usd
            row.duration_ms = step.duration_ms
            row.num_turns = step.num_turns
            session.add(row)
            session.commit()

    def get_execution(self, record_id: str) -> ExecutionRecord | None:
        with Session(self.engine) as session:
            row = session.get(ExecutionRow, record_id)
            if row is None:
                return None
            return self._load_record(session, row)

    def list_executions(self, *, limit: int = 50) -> list[ExecutionRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionRow).order_by(col(ExecutionRow.started_at).desc()).limit(limit),
            ).all()
            return [self._load_record(session, row) for row in rows]

    def _load_record(self, session: Session, row: ExecutionRow) -> ExecutionRecord:
        step_rows = session.exec(
            select(ExecutionStepRow)
            .where(ExecutionStepRow.record_id == row.record_id)
            .order_by(col(ExecutionStepRow.step_index).asc()),
        ).all()
        return ExecutionRecord(
            record_id=row.record_id,
            kind=ExecutionKind(row.kind),
            target_id=row.target_id,
            name=row.name,
            input_text=row.input_text,
            status=ExecutionStatus(row.status),
            started_at=_from_db_datetime(row.started_at),
            ended_at=as_utc(row.ended_at),
            run_id=row.run_id,
            result=row.result,
            error=row.error,
            exit_code=row.exit_code,
            cost_usd=row.cost_usd,
            duration_ms=row.duration_ms,
            num_turns=row.num_turns,
            session_id=row.session_id,
            parent_session_id=row.parent_session_id,
            current_step=row.current_step,
            steps=[_to_step(item) for item in step_rows],
        )


def _to_agent(row: AgentRow) -> AgentRecord:
    return AgentRecord(
        agent_id=row.agent_id,
        name=row.name,
        config=AgentConfig.from_mapping(json.loads(row.config_json or "{}")),
        active=row.active,
        description=row.description,
    )


def _to_pipeline(row: PipelineRow) -> PipelineDefinition:
    return PipelineDefinition.from_mapping(
        {
            "pipeline_id": row.pipeline_id,
            "name": row.name,
            "description": row.description,
            "steps": json.loads(row.steps_json or "[]"),
        },
    )


def _to_step(row: ExecutionStepRow) -> StepRecord:
    return StepRecord(
        step_index=row.step_index,
        step_id=row.step_id,
        agent_id=row.agent_id,
        agent_name=row.agent_name,
        status=ExecutionStatus(row.status),
        started_at=_from_db_datetime(row.started_at),
        ended_at=as_utc(row.ended_at),
        run_id=row.run_id,
        input_text=row.input_text,
        result=row.result,
        error=row.error,
        cost_usd=row.cost_usd,
        duration_ms=row.duration_ms,
        num_turns=row.num_turns,
    )


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _from_db_datetime(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value
