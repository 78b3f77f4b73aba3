"""SQLModel ORM tables for the bundled SQLite store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class AgentRow(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    description: str = ""
    config_json: str = Field(sa_column=Column(Text, nullable=False))
    active: bool = Field(default=True, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PipelineRow(SQLModel, table=True):
    __tablename__ = "pipelines"  # type: ignore[bad-override]

    pipeline_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    description: str = ""
    steps_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentSecretRow(SQLModel, table=True):
    __tablename__ = "agent_secrets"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("agent_id", "name", name="uq_agent_secrets_agent_name"),
    )

    id: int | None = Field(default=None, primary_key=True)
    agent_id: str = Field(
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionRow(SQLModel, table=True):
    __tablename__ = "executions"  # type: ignore[bad-override]

    record_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    target_id: str = Field(index=True)
    name: str
    input_text: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    run_id: str | None = Field(default=None, index=True)
    result: str = Field(default="", sa_column=Column(Text, nullable=False))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    exit_code: int | None = None
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    session_id: str = ""
    parent_session_id: str | None = None
    current_step: int | None = None


class ExecutionStepRow(SQLModel, table=True):
    __tablename__ = "execution_steps"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("record_id", "step_index", name="uq_execution_steps_record_index"),
    )

    id: int | None = Field(default=None, primary_key=True)
    record_id: str = Field(
        sa_column=Column(
            ForeignKey("executions.record_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_index: int
    step_id: str
    agent_id: str
    agent_name: str
    status: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    run_id: str | None = None
    input_text: str = Field(default="", sa_column=Column(Text, nullable=False))
    result: str = Field(default="", sa_column=Column(Text, nullable=False))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
