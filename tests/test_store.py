from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from agent_relay.engine.models import AgentConfig
from agent_relay.events import CollectingSink
from agent_relay.pipeline.models import PipelineDefinition, PipelineStatus, PipelineStep
from agent_relay.pipeline.orchestrator import PipelineOrchestrator
from agent_relay.store.alembic_runner import head_revision
from agent_relay.store.models import (
    AgentRecord,
    ExecutionKind,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionUpdate,
    StepRecord,
)
from agent_relay.store.repository import SqlStore

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("SQLite Store"),
]


@pytest.fixture()
def sql_store(tmp_path: Path):
    store = SqlStore(tmp_path / "relay.db")
    store.init_schema()
    yield store
    store.close()


def test_schema_is_migrated_to_head(sql_store: SqlStore) -> None:
    connection = sqlite3.connect(sql_store.db_path)
    try:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchone()
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    finally:
        connection.close()

    assert version == (head_revision(),)
    assert head_revision() == "20261018_0001"
    assert {"agents", "pipelines", "agent_secrets", "executions", "execution_steps"} <= tables


def test_init_schema_is_idempotent(sql_store: SqlStore) -> None:
    sql_store.init_schema()

    assert sql_store.list_agents() == []


def test_agent_round_trip_with_secrets(sql_store: SqlStore) -> None:
    config = AgentConfig(
        model="m-1",
        system_prompt="sys",
        working_directory="/srv/agents/a",
        max_turns=3,
        allowed_tools=("Read", "Grep"),
        permission_mode="acceptEdits",
        timeout_seconds=60.0,
    )
    sql_store.save_agent(AgentRecord(agent_id="a", name="Alpha", config=config, description="d"))
    sql_store.set_secret("a", "GITHUB_TOKEN", "old")
    sql_store.set_secret("a", "GITHUB_TOKEN", "new")
    sql_store.set_secret("a", "REGION", "eu")

    agent = sql_store.get_agent("a")

    assert agent is not None
    assert agent.name == "Alpha"
    assert agent.config == config
    assert agent.active is True
    assert sql_store.get_secrets("a") == {"GITHUB_TOKEN": "new", "REGION": "eu"}
    assert sql_store.get_secrets("other") == {}
    assert sql_store.get_agent("missing") is None

    sql_store.save_agent(AgentRecord(agent_id="a", name="Alpha", config=config, active=False))
    assert [item.active for item in sql_store.list_agents()] == [False]


def test_pipeline_round_trip_keeps_step_order(sql_store: SqlStore) -> None:
    pipeline = PipelineDefinition.build(
        pipeline_id="p",
        name="Chain",
        steps=[
            PipelineStep(agent_id="b", input_template="{{input}}!", requires_approval=True, order=2),
            PipelineStep(agent_id="a", order=1),
        ],
    )

    sql_store.save_pipeline(pipeline)
    loaded = sql_store.get_pipeline("p")

    assert loaded == pipeline
    assert [item.pipeline_id for item in sql_store.list_pipelines()] == ["p"]
    assert sql_store.get_pipeline("missing") is None


def test_execution_updates_and_steps(sql_store: SqlStore) -> None:
    started = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)
    record = ExecutionRecord(
        record_id="r1",
        kind=ExecutionKind.PIPELINE,
        target_id="p",
        name="Chain",
        input_text="hi",
        status=ExecutionStatus.RUNNING,
        started_at=started,
    )
    sql_store.create_execution(record)
    sql_store.save_step(
        "r1",
        StepRecord(
            step_index=0,
            step_id="s0",
            agent_id="a",
            agent_name="Alpha",
            status=ExecutionStatus.RUNNING,
            started_at=started,
        ),
    )
    sql_store.save_step(
        "r1",
        StepRecord(
            step_index=0,
            step_id="s0",
            agent_id="a",
            agent_name="Alpha",
            status=ExecutionStatus.COMPLETED,
            started_at=started,
            ended_at=started + timedelta(seconds=3),
            result="out",
            cost_usd=0.5,
        ),
    )
    sql_store.update_execution(
        "r1",
        ExecutionUpdate(
            status=ExecutionStatus.COMPLETED,
            ended_at=started + timedelta(seconds=4),
            result="out",
            cost_usd=0.5,
        ),
    )

    loaded = sql_store.get_execution("r1")

    assert loaded is not None
    assert loaded.status is ExecutionStatus.COMPLETED
    assert loaded.started_at == started
    assert loaded.ended_at == started + timedelta(seconds=4)
    assert loaded.input_text == "hi"
    assert loaded.cost_usd == 0.5
    assert len(loaded.steps) == 1
    assert loaded.steps[0].status is ExecutionStatus.COMPLETED
    assert loaded.steps[0].result == "out"

    with pytest.raises(KeyError):
        sql_store.update_execution("missing", ExecutionUpdate(status=ExecutionStatus.ERROR))


def test_list_executions_newest_first(sql_store: SqlStore) -> None:
    base = datetime(2026, 10, 18, tzinfo=UTC)
    for index in range(3):
        sql_store.create_execution(
            ExecutionRecord(
                record_id=f"r{index}",
                kind=ExecutionKind.AGENT,
                target_id="a",
                name="Alpha",
                input_text="",
                status=ExecutionStatus.COMPLETED,
                started_at=base + timedelta(minutes=index),
            ),
        )

    assert [record.record_id for record in sql_store.list_executions(limit=2)] == ["r2", "r1"]


def test_pipeline_runs_against_sql_store(engine, sql_store: SqlStore) -> None:
    sql_store.save_agent(AgentRecord(agent_id="a", name="Alpha"))
    sql_store.save_pipeline(
        PipelineDefinition.build(
            pipeline_id="p",
            name="Chain",
            steps=[
                PipelineStep(agent_id="a", order=0),
                PipelineStep(agent_id="a", input_template="again: {{input}}", order=1),
            ],
        ),
    )
    orchestrator = PipelineOrchestrator(engine=engine, store=sql_store)

    outcome = orchestrator.run("p", "ping", CollectingSink())

    assert outcome.status is PipelineStatus.COMPLETED
    record = sql_store.get_execution(outcome.record_id or "")
    assert record is not None
    assert record.status is ExecutionStatus.COMPLETED
    assert record.result == "again: ping"
    assert [step.status for step in record.steps] == [ExecutionStatus.COMPLETED] * 2
    assert record.steps[1].input_text == "again: ping"
