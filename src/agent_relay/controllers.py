"""Controllers for agent-relay CLI commands."""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_relay.config import Settings
from agent_relay.engine.executor import ProcessEngine
from agent_relay.engine.models import AgentConfig
from agent_relay.errors import RelayError
from agent_relay.events import CallbackSink, RelayEvent
from agent_relay.pipeline.models import PipelineDefinition, PipelineStatus
from agent_relay.pipeline.orchestrator import PipelineOrchestrator
from agent_relay.services import AgentService
from agent_relay.store.models import AgentRecord
from agent_relay.store.repository import SqlStore

logger = logging.getLogger(__name__)

Emit = Callable[[str], None]
Decide = Callable[[RelayEvent], bool]


@dataclass(slots=True)
class ExecCommand:
    """CLI input for a single agent run."""

    agent_file: Path
    task: str
    instructions: str | None
    db_path: Path | None


@dataclass(slots=True)
class ResumeCommand:
    """CLI input for continuing an engine session."""

    agent_file: Path
    session_id: str
    message: str
    db_path: Path | None


@dataclass(slots=True)
class PipelineRunCommand:
    """CLI input for a pipeline run loaded from a JSON file."""

    pipeline_file: Path
    initial_input: str | None
    auto_approve: bool
    db_path: Path | None


@dataclass(slots=True)
class ImportCommand:
    file: Path
    db_path: Path | None


@dataclass(slots=True)
class HistoryCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class RunReport:
    """Run summary to render in CLI."""

    lines: list[str]
    success: bool


class RelayCliController:
    """Wires settings, store, engine and services for each CLI command."""

    def execute(self, command: ExecCommand, *, emit: Emit | None = None) -> RunReport:
        settings = _settings(command.db_path)
        agent, secrets = _agent_from_mapping(_read_json(command.agent_file))
        with _store(settings) as store:
            _save_agent(store, agent, secrets)
            engine = ProcessEngine(settings.engine)
            service = AgentService(engine=engine, store=store)
            return _await_direct_run(
                lambda sink: service.execute_task(
                    agent.agent_id,
                    command.task,
                    command.instructions,
                    sink=sink,
                ),
                emit=emit,
            )

    def resume(self, command: ResumeCommand, *, emit: Emit | None = None) -> RunReport:
        settings = _settings(command.db_path)
        agent, secrets = _agent_from_mapping(_read_json(command.agent_file))
        with _store(settings) as store:
            _save_agent(store, agent, secrets)
            engine = ProcessEngine(settings.engine)
            service = AgentService(engine=engine, store=store)
            return _await_direct_run(
                lambda sink: service.continue_conversation(
                    agent.agent_id,
                    command.session_id,
                    command.message,
                    sink=sink,
                ),
                emit=emit,
            )

    def run_pipeline(
        self,
        command: PipelineRunCommand,
        *,
        emit: Emit | None = None,
        decide: Decide | None = None,
    ) -> RunReport:
        settings = _settings(command.db_path)
        payload = _read_json(command.pipeline_file)
        initial_input = command.initial_input
        if initial_input is None:
            initial_input = str(payload.get("input") or "")

        with _store(settings) as store:
            pipelines = _import_bundle(store, payload)
            if not pipelines:
                return RunReport(lines=["No pipeline found in file."], success=False)
            definition = pipelines[0]

            engine = ProcessEngine(settings.engine)
            orchestrator = PipelineOrchestrator(
                engine=engine,
                store=store,
                settings=settings.pipeline,
            )
            approvals: queue.Queue[RelayEvent] = queue.Queue()

            def _on_event(event: RelayEvent) -> None:
                if event.type == "approval_required":
                    approvals.put(event)
                line = describe_event(event)
                if line is not None and emit is not None:
                    emit(line)

            try:
                handle = orchestrator.start(
                    definition.pipeline_id,
                    initial_input,
                    CallbackSink(_on_event),
                )
            except RelayError as error:
                return RunReport(lines=[f"Error: {error}"], success=False)

            while not handle.done():
                try:
                    pending = approvals.get(timeout=0.1)
                except queue.Empty:
                    continue
                approved = command.auto_approve or (decide is not None and decide(pending))
                if approved:
                    orchestrator.approve(handle.run_id)
                else:
                    orchestrator.reject(handle.run_id)
            outcome = handle.result()

        lines = [
            f"Pipeline {definition.name}: status={outcome.status.value} "
            f"steps={len(outcome.results)}/{len(definition.steps)} "
            f"cost=${outcome.total_cost_usd:.4f} duration_ms={outcome.total_duration_ms}",
        ]
        if outcome.error:
            lines.append(f"Error at step {outcome.failed_step}: {outcome.error}")
        if outcome.results:
            lines.append(outcome.results[-1].result)
        return RunReport(lines=lines, success=outcome.status is PipelineStatus.COMPLETED)

    def import_agents(self, command: ImportCommand) -> list[str]:
        settings = _settings(command.db_path)
        payload = _read_json(command.file)
        raw_agents = payload.get("agents", payload) if isinstance(payload, Mapping) else payload
        items = raw_agents if isinstance(raw_agents, list) else [raw_agents]
        lines: list[str] = []
        with _store(settings) as store:
            for item in items:
                agent, secrets = _agent_from_mapping(item)
                _save_agent(store, agent, secrets)
                lines.append(f"Agent imported: id={agent.agent_id} name={agent.name}")
        return lines

    def list_agents(self, db_path: Path | None) -> list[str]:
        settings = _settings(db_path)
        with _store(settings) as store:
            agents = store.list_agents()
        if not agents:
            return ["No agents."]
        return [
            f"{agent.agent_id} name={agent.name} active={'yes' if agent.active else 'no'} "
            f"model={agent.config.model or settings.engine.default_model}"
            for agent in agents
        ]

    def import_pipelines(self, command: ImportCommand) -> list[str]:
        settings = _settings(command.db_path)
        payload = _read_json(command.file)
        with _store(settings) as store:
            pipelines = _import_bundle(store, payload)
        return [
            f"Pipeline imported: id={pipeline.pipeline_id} name={pipeline.name} "
            f"steps={len(pipeline.steps)}"
            for pipeline in pipelines
        ] or ["No pipelines found in file."]

    def list_pipelines(self, db_path: Path | None) -> list[str]:
        settings = _settings(db_path)
        with _store(settings) as store:
            pipelines = store.list_pipelines()
        lines: list[str] = []
        for pipeline in pipelines:
            lines.append(f"{pipeline.pipeline_id} name={pipeline.name} steps={len(pipeline.steps)}")
            for index, step in enumerate(pipeline.steps):
                gate = " approval" if step.requires_approval else ""
                lines.append(f"  [{index}] agent={step.agent_id}{gate}")
        return lines or ["No pipelines."]

    def history(self, command: HistoryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            records = store.list_executions(limit=command.limit)
        lines: list[str] = []
        for record in records:
            lines.append(
                f"{record.started_at.isoformat(timespec='seconds')} {record.kind.value} "
                f"{record.name} status={record.status.value} cost=${record.cost_usd:.4f} "
                f"turns={record.num_turns} record={record.record_id}",
            )
            if record.error:
                lines.append(f"  error: {record.error}")
            for step in record.steps:
                lines.append(
                    f"  [{step.step_index}] {step.agent_name} status={step.status.value} "
                    f"cost=${step.cost_usd:.4f}",
                )
        return lines or ["No executions."]


def describe_event(event: RelayEvent) -> str | None:  # noqa: PLR0911
    """Render one relay event as a single CLI line, or None to stay quiet."""

    data = event.data
    if event.type in {"execution_output", "step_output"}:
        return _describe_output(data.get("event") or {})
    if event.type == "step_start":
        return f"== step {data['step_index']}: {data['agent_name']}"
    if event.type == "step_complete":
        return f"== step {data['step_index']} done (cost=${data['cost_usd']:.4f})"
    if event.type == "approval_required":
        return f"== approval required before step {data['step_index']} ({data['agent_name']})"
    if event.type in {"approved", "rejected", "canceled"}:
        return f"== {event.type} at step {data.get('step_index')}"
    if event.type in {"error", "execution_error"}:
        return f"!! {data.get('message')}"
    if event.type == "report_generated":
        return f"== report: {data.get('report')}"
    return None


def _describe_output(payload: Mapping[str, Any]) -> str | None:
    kind = payload.get("type")
    if kind == "chunk":
        return str(payload.get("content", ""))
    if kind == "tool":
        return f"[tool] {payload.get('name')} {payload.get('detail', '')}".rstrip()
    if kind == "stderr":
        return f"[stderr] {payload.get('line', '')}"
    if kind == "system":
        return f"[system] {payload.get('message', '')}"
    return None


def _await_direct_run(start: Callable[[CallbackSink], str], *, emit: Emit | None) -> RunReport:
    finished = threading.Event()
    terminal: list[RelayEvent] = []

    def _on_event(event: RelayEvent) -> None:
        line = describe_event(event)
        if line is not None and emit is not None:
            emit(line)
        if event.type in {"execution_complete", "execution_error"}:
            terminal.append(event)
            finished.set()

    try:
        run_id = start(CallbackSink(_on_event))
    except RelayError as error:
        return RunReport(lines=[f"Error: {error}"], success=False)
    finished.wait()

    event = terminal[0]
    if event.type == "execution_error":
        return RunReport(lines=[f"Run {run_id} failed: {event.data.get('message')}"], success=False)
    data = event.data
    lines = [
        f"Run {run_id}: status={data['status']} exit_code={data['exit_code']} "
        f"cost=${data['cost_usd']:.4f} turns={data['num_turns']} "
        f"session_id={data['session_id'] or '-'}",
    ]
    if data["result"]:
        lines.append(data["result"])
    return RunReport(lines=lines, success=data["status"] == "completed")


def _agent_from_mapping(data: Any) -> tuple[AgentRecord, dict[str, str]]:
    if not isinstance(data, Mapping):
        raise ValueError("Agent definition must be a JSON object.")
    agent_id = str(data.get("agent_id") or data.get("id") or "").strip()
    name = str(data.get("name") or agent_id).strip()
    if not agent_id:
        raise ValueError("Agent definition requires an id.")
    raw_config = data.get("config")
    config = AgentConfig.from_mapping(raw_config if isinstance(raw_config, Mapping) else data)
    secrets = {str(key): str(value) for key, value in (data.get("secrets") or {}).items()}
    agent = AgentRecord(
        agent_id=agent_id,
        name=name,
        config=config,
        active=bool(data.get("active", True)),
        description=str(data.get("description") or ""),
    )
    return agent, secrets


def _import_bundle(store: SqlStore, payload: Any) -> list[PipelineDefinition]:
    """Store agents and pipelines from a file holding one pipeline or a bundle."""

    if not isinstance(payload, Mapping):
        raise ValueError("Pipeline file must be a JSON object.")
    for item in payload.get("agents") or []:
        agent, secrets = _agent_from_mapping(item)
        _save_agent(store, agent, secrets)

    raw_pipelines = payload.get("pipelines")
    if raw_pipelines is None and isinstance(payload.get("pipeline"), Mapping):
        raw_pipelines = [payload["pipeline"]]
    if raw_pipelines is None:
        raw_pipelines = [payload] if payload.get("steps") else []
    pipelines = [PipelineDefinition.from_mapping(item) for item in raw_pipelines]
    for pipeline in pipelines:
        store.save_pipeline(pipeline)
    return pipelines


def _save_agent(store: SqlStore, agent: AgentRecord, secrets: Mapping[str, str]) -> None:
    store.save_agent(agent)
    for name, value in secrets.items():
        store.set_secret(agent.agent_id, name, value)
    logger.debug("Stored agent %s with %d secret(s)", agent.agent_id, len(secrets))


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid JSON in {path}: {error}") from error


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _store(settings: Settings) -> Iterator[SqlStore]:
    store = SqlStore(settings.store.db_path, busy_timeout_ms=settings.store.busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
