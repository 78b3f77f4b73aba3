"""Initial agent-relay schema: agents, pipelines, secrets and execution history."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agents",
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False, server_default=""),
        sa.Column("config_json", sa.Text(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id"),
    )
    op.create_index("ix_agents_name", "agents", ["name"])
    op.create_index("ix_agents_active", "agents", ["active"])

    op.create_table(
        "pipelines",
        sa.Column("pipeline_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False, server_default=""),
        sa.Column("steps_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("pipeline_id"),
    )
    op.create_index("ix_pipelines_name", "pipelines", ["name"])

    op.create_table(
        "agent_secrets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["agent_id"], ["agents.agent_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("agent_id", "name", name="uq_agent_secrets_agent_name"),
    )
    op.create_index("ix_agent_secrets_agent_id", "agent_secrets", ["agent_id"])

    op.create_table(
        "executions",
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("input_text", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("result", sa.Text(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("num_turns", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("session_id", sa.String(), nullable=False, server_default=""),
        sa.Column("parent_session_id", sa.String(), nullable=True),
        sa.Column("current_step", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("record_id"),
    )
    op.create_index("ix_executions_kind", "executions", ["kind"])
    op.create_index("ix_executions_target_id", "executions", ["target_id"])
    op.create_index("ix_executions_status", "executions", ["status"])
    op.create_index("ix_executions_run_id", "executions", ["run_id"])

    op.create_table(
        "execution_steps",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("step_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("agent_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("input_text", sa.Text(), nullable=False),
        sa.Column("result", sa.Text(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("num_turns", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["record_id"], ["executions.record_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("record_id", "step_index", name="uq_execution_steps_record_index"),
    )
    op.create_index("ix_execution_steps_record_id", "execution_steps", ["record_id"])


def downgrade() -> None:
    op.drop_index("ix_execution_steps_record_id", table_name="execution_steps")
    op.drop_table("execution_steps")
    for index_name in (
        "ix_executions_run_id",
        "ix_executions_status",
        "ix_executions_target_id",
        "ix_executions_kind",
    ):
        op.drop_index(index_name, table_name="executions")
    op.drop_table("executions")
    op.drop_index("ix_agent_secrets_agent_id", table_name="agent_secrets")
    op.drop_table("agent_secrets")
    op.drop_index("ix_pipelines_name", table_name="pipelines")
    op.drop_table("pipelines")
    op.drop_index("ix_agents_active", table_name="agents")
    op.drop_index("ix_agents_name", table_name="agents")
    op.drop_table("agents")
