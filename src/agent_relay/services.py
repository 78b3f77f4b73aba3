"""Direct agent runs with execution history, secrets and report hooks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from agent_relay.engine.executor import ProcessEngine, completion_error
from agent_relay.engine.models import (
    ActiveRun,
    OutputEvent,
    RunCallbacks,
    RunCompletion,
    TaskSpec,
)
from agent_relay.errors import RelayError, StepAgentUnavailable
from agent_relay.events import EventSink, LoggingSink, RelayEvent, safe_publish
from agent_relay.sanitization import sanitize_preview
from agent_relay.store.base import DurableStore, ReportGenerator
from agent_relay.store.common import utc_now
from agent_relay.store.models import (
    AgentRecord,
    ExecutionKind,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionUpdate,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _DirectRun:
    record_id: str
    agent: AgentRecord
    secrets: dict[str, str]
    sink: EventSink | None
    run_id: str = ""


class AgentService:
    """Starts single agent runs and keeps their execution records current.

    Runs are asynchronous: both entry points return the engine run id as
    soon as the subprocess is admitted. Terminal state reaches the store and
    the sink from the engine's dispatcher thread.
    """

    def __init__(
        self,
        *,
        engine: ProcessEngine,
        store: DurableStore,
        sink: EventSink | None = None,
        report_generator: ReportGenerator | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._sink = sink if sink is not None else LoggingSink(logging.DEBUG)
        self._report_generator = report_generator

    def execute_task(
        self,
        agent_id: str,
        task: str,
        instructions: str | None = None,
        *,
        sink: EventSink | None = None,
    ) -> str:
        agent = self._resolve_agent(agent_id)
        spec = TaskSpec(description=task, instructions=instructions)
        run = self._open_record(agent, task, sink=sink)
        try:
            run_id = self._engine.execute(
                agent.config,
                spec,
                self._callbacks(run),
                secrets=run.secrets,
            )
        except RelayError as error:
            self._record_failure(run, str(error))
            raise
        self._attach(run, run_id)
        return run_id

    def continue_conversation(
        self,
        agent_id: str,
        session_id: str,
        message: str,
        *,
        sink: EventSink | None = None,
    ) -> str:
        agent = self._resolve_agent(agent_id)
        run = self._open_record(agent, message, sink=sink, parent_session_id=session_id)
        try:
            run_id = self._engine.resume(
                agent.config,
                session_id,
                message,
                self._callbacks(run),
                secrets=run.secrets,
            )
        except RelayError as error:
            self._record_failure(run, str(error))
            raise
        self._attach(run, run_id)
        return run_id

    def cancel(self, run_id: str) -> bool:
        return self._engine.cancel(run_id)

    def active(self) -> list[ActiveRun]:
        return self._engine.get_active()

    # -- internals --------------------------------------------------------------

    def _resolve_agent(self, agent_id: str) -> AgentRecord:
        agent = self._store.get_agent(agent_id)
        if agent is None:
            raise StepAgentUnavailable(agent_id)
        if not agent.active:
            raise StepAgentUnavailable(agent_id, inactive=True)
        return agent

    def _open_record(
        self,
        agent: AgentRecord,
        input_text: str,
        *,
        sink: EventSink | None,
        parent_session_id: str | None = None,
    ) -> _DirectRun:
        record = ExecutionRecord(
            record_id=str(uuid4()),
            kind=ExecutionKind.AGENT,
            target_id=agent.agent_id,
            name=agent.name,
            input_text=input_text,
            status=ExecutionStatus.RUNNING,
            started_at=utc_now(),
            parent_session_id=parent_session_id,
        )
        self._store.create_execution(record)
        return _DirectRun(
            record_id=record.record_id,
            agent=agent,
            secrets=self._store.get_secrets(agent.agent_id),
            sink=sink or self._sink,
        )

    def _attach(self, run: _DirectRun, run_id: str) -> None:
        run.run_id = run_id
        self._store.update_execution(run.record_id, ExecutionUpdate(run_id=run_id))
        logger.info("Agent %s run %s started (record %s)", run.agent.name, run_id, run.record_id)

    def _callbacks(self, run: _DirectRun) -> RunCallbacks:
        def _on_event(event: OutputEvent, run_id: str) -> None:
            self._publish(run, run_id, "execution_output", {"event": event.to_dict()})

        def _on_complete(completion: RunCompletion, run_id: str) -> None:
            self._handle_completion(run, completion, run_id)

        def _on_error(error: Exception, run_id: str) -> None:
            message = self._record_failure(run, str(error))
            self._publish(run, run_id, "execution_error", {"message": message})

        return RunCallbacks(on_event=_on_event, on_complete=_on_complete, on_error=_on_error)

    def _handle_completion(self, run: _DirectRun, completion: RunCompletion, run_id: str) -> None:
        failure = completion_error(completion)
        if completion.canceled:
            status = ExecutionStatus.CANCELED
        elif failure is not None:
            status = ExecutionStatus.ERROR
        else:
            status = ExecutionStatus.COMPLETED

        self._store.update_execution(
            run.record_id,
            ExecutionUpdate(
                status=status,
                ended_at=utc_now(),
                result=completion.result,
                error=self._sanitize(run, str(failure)) if failure is not None else None,
                exit_code=completion.exit_code,
                cost_usd=completion.cost_usd,
                duration_ms=completion.duration_ms,
                num_turns=completion.num_turns,
                session_id=completion.session_id,
            ),
        )
        logger.info(
            "Agent run %s finished status=%s exit=%s cost=%.4f",
            run_id,
            status.value,
            completion.exit_code,
            completion.cost_usd,
        )
        payload = completion.to_dict()
        payload["status"] = status.value
        payload["record_id"] = run.record_id
        if status is ExecutionStatus.COMPLETED:
            self._generate_report(run, run_id)
        self._publish(run, run_id, "execution_complete", payload)

    def _record_failure(self, run: _DirectRun, message: str) -> str:
        sanitized = self._sanitize(run, message)
        self._store.update_execution(
            run.record_id,
            ExecutionUpdate(status=ExecutionStatus.ERROR, ended_at=utc_now(), error=sanitized),
        )
        logger.error("Agent %s run failed: %s", run.agent.name, sanitized)
        return sanitized

    def _generate_report(self, run: _DirectRun, run_id: str) -> None:
        if self._report_generator is None:
            return
        try:
            record = self._store.get_execution(run.record_id)
            if record is None:
                return
            reference = self._report_generator.generate(record)
        except Exception:
            logger.exception("Report generation failed for agent run %s", run_id)
            return
        self._publish(run, run_id, "report_generated", {"report": reference})

    def _sanitize(self, run: _DirectRun, message: str) -> str:
        return sanitize_preview(message, secret_values=run.secrets.values())

    def _publish(self, run: _DirectRun, run_id: str, event_type: str, data: dict[str, Any]) -> None:
        safe_publish(
            run.sink,
            RelayEvent(type=event_type, run_id=run_id, agent_id=run.agent.agent_id, data=data),
        )
