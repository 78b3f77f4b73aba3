"""PipelineOrchestrator: strictly sequential steps delegated to the process engine."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from agent_relay.config import PipelineSettings
from agent_relay.engine.cancellation import CancellationToken
from agent_relay.engine.executor import ProcessEngine, completion_error
from agent_relay.engine.models import OutputEvent, RunCallbacks, RunCompletion
from agent_relay.errors import (
    PipelineNotFound,
    RelayError,
    StepAgentUnavailable,
)
from agent_relay.events import EventSink, RelayEvent, safe_publish
from agent_relay.pipeline.approvals import ApprovalRegistry
from agent_relay.pipeline.models import (
    ActivePipelineRun,
    PipelineDefinition,
    PipelineOutcome,
    PipelineStatus,
    PipelineStep,
    StepResult,
    validate_definition,
)
from agent_relay.pipeline.templating import step_input
from agent_relay.sanitization import sanitize_preview
from agent_relay.store.base import DurableStore, ReportGenerator
from agent_relay.store.common import utc_now
from agent_relay.store.models import (
    AgentRecord,
    ExecutionKind,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionUpdate,
    StepRecord,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class PipelineRunState:
    """Mutable bookkeeping for one non-terminal pipeline run."""

    run_id: str
    pipeline_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    status: PipelineStatus = PipelineStatus.STEP_RUNNING
    current_step: int = 0
    current_execution_id: str | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class PipelineRun:
    """Handle for a pipeline executing on its own thread."""

    def __init__(self, run_id: str, pipeline_id: str, future: Future[PipelineOutcome]) -> None:
        self.run_id = run_id
        self.pipeline_id = pipeline_id
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> PipelineOutcome:
        return self._future.result(timeout)


@dataclass(slots=True)
class _Progress:
    record_id: str
    results: list[StepResult] = field(default_factory=list)
    previous_output: str = ""
    total_cost_usd: float = 0.0
    total_duration_ms: int = 0
    total_turns: int = 0


class PipelineOrchestrator:
    """Runs pipeline definitions step by step with approval gates.

    Every step goes through the shared `ProcessEngine`, so pipelines compete
    with direct runs for the same admission ceiling. Cancellation is
    threaded through both suspension points: the child process wait and the
    approval wait.
    """

    def __init__(
        self,
        *,
        engine: ProcessEngine,
        store: DurableStore,
        settings: PipelineSettings | None = None,
        report_generator: ReportGenerator | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._settings = settings or PipelineSettings()
        self._report_generator = report_generator
        self._approvals = ApprovalRegistry()
        self._runs: dict[str, PipelineRunState] = {}
        self._lock = threading.Lock()

    # -- public API -------------------------------------------------------------

    def start(
        self,
        pipeline_id: str,
        initial_input: str,
        sink: EventSink | None = None,
    ) -> PipelineRun:
        """Start a run on a dedicated thread and return its handle."""

        definition = self._load_definition(pipeline_id)
        state = self._register(pipeline_id)
        future: Future[PipelineOutcome] = Future()

        def _target() -> None:
            try:
                future.set_result(self._execute(state, definition, initial_input, sink))
            except Exception as error:
                future.set_exception(error)

        threading.Thread(
            target=_target,
            daemon=True,
            name=f"relay-pipeline-{state.run_id[:8]}",
        ).start()
        return PipelineRun(state.run_id, pipeline_id, future)

    def run(
        self,
        pipeline_id: str,
        initial_input: str,
        sink: EventSink | None = None,
    ) -> PipelineOutcome:
        """Execute a pipeline on the calling thread until it is terminal."""

        definition = self._load_definition(pipeline_id)
        state = self._register(pipeline_id)
        return self._execute(state, definition, initial_input, sink)

    def approve(self, run_id: str) -> bool:
        return self._approvals.resolve(run_id, True)

    def reject(self, run_id: str) -> bool:
        return self._approvals.resolve(run_id, False)

    def cancel(self, run_id: str) -> bool:
        with self._lock:
            state = self._runs.get(run_id)
        if state is None:
            return False
        logger.info("Canceling pipeline run %s", run_id)
        state.token.cancel()
        return True

    def cancel_all(self) -> int:
        with self._lock:
            states = list(self._runs.values())
        for state in states:
            state.token.cancel()
        return len(states)

    def active(self) -> list[ActivePipelineRun]:
        with self._lock:
            states = list(self._runs.values())
        snapshots: list[ActivePipelineRun] = []
        for state in states:
            with state.lock:
                snapshots.append(
                    ActivePipelineRun(
                        run_id=state.run_id,
                        pipeline_id=state.pipeline_id,
                        status=state.status,
                        current_step=state.current_step,
                        awaiting_approval=self._approvals.is_pending(state.run_id),
                        current_execution_id=state.current_execution_id,
                    ),
                )
        return snapshots

    # -- run lifecycle ----------------------------------------------------------

    def _load_definition(self, pipeline_id: str) -> PipelineDefinition:
        definition = self._store.get_pipeline(pipeline_id)
        if definition is None:
            raise PipelineNotFound(pipeline_id)
        validate_definition(definition)
        return definition

    def _register(self, pipeline_id: str) -> PipelineRunState:
        state = PipelineRunState(run_id=str(uuid4()), pipeline_id=pipeline_id)
        state.token.add_callback(lambda: self._cancel_child(state))
        with self._lock:
            self._runs[state.run_id] = state
        return state

    def _cancel_child(self, state: PipelineRunState) -> None:
        with state.lock:
            execution_id = state.current_execution_id
        if execution_id is not None:
            self._engine.cancel(execution_id)

    def _execute(  # noqa: C901, PLR0912
        self,
        state: PipelineRunState,
        definition: PipelineDefinition,
        initial_input: str,
        sink: EventSink | None,
    ) -> PipelineOutcome:
        record = ExecutionRecord(
            record_id=str(uuid4()),
            kind=ExecutionKind.PIPELINE,
            target_id=definition.pipeline_id,
            name=definition.name,
            input_text=initial_input,
            status=ExecutionStatus.RUNNING,
            started_at=utc_now(),
            run_id=state.run_id,
            current_step=0,
        )
        self._store.create_execution(record)
        progress = _Progress(record_id=record.record_id, previous_output=initial_input)
        total_steps = len(definition.steps)
        logger.info(
            "Pipeline run %s started: pipeline=%s steps=%d",
            state.run_id,
            definition.pipeline_id,
            total_steps,
        )

        step_record: StepRecord | None = None
        try:
            for index, step in enumerate(definition.steps):
                if state.token.cancelled:
                    return self._finish_canceled(state, progress, step_record, sink)
                self._set_status(state, PipelineStatus.STEP_RUNNING, step_index=index)

                if index > 0 and step.requires_approval:
                    step_record = self._new_step_record(index, step, ExecutionStatus.AWAITING_APPROVAL)
                    approved = self._await_approval(state, progress, step, step_record, sink)
                    if state.token.cancelled:
                        return self._finish_canceled(state, progress, step_record, sink)
                    if not approved:
                        return self._finish_rejected(state, progress, step_record, sink)
                    self._set_status(state, PipelineStatus.STEP_RUNNING)

                agent = self._resolve_agent(step)
                prompt = step_input(
                    step_index=index,
                    template=step.input_template,
                    initial_input=initial_input,
                    previous_output=progress.previous_output,
                    placeholder=self._settings.placeholder,
                )
                step_record = self._new_step_record(index, step, ExecutionStatus.RUNNING)
                step_record.agent_name = agent.name
                step_record.input_text = prompt
                self._store.save_step(progress.record_id, step_record)
                self._store.update_execution(
                    progress.record_id,
                    ExecutionUpdate(status=ExecutionStatus.RUNNING, current_step=index),
                )
                self._publish(
                    state,
                    sink,
                    "step_start",
                    {"step_index": index, "agent_name": agent.name, "total_steps": total_steps},
                )

                completion = self._run_step(state, index, agent, prompt, sink)
                if completion is None:
                    return self._finish_canceled(state, progress, step_record, sink)
                step_record.run_id = completion.run_id
                self._complete_step(state, progress, step, agent, step_record, completion, sink)

            return self._finish_completed(state, progress, sink)

        except RelayError as error:
            if state.token.cancelled:
                return self._finish_canceled(state, progress, step_record, sink)
            logger.error("Pipeline run %s failed at step %d: %s", state.run_id, state.current_step, error)
            return self._finish_error(state, progress, step_record, str(error), sink)
        except Exception as error:  # noqa: BLE001
            logger.exception("Pipeline run %s unexpected error", state.run_id)
            return self._finish_error(
                state,
                progress,
                step_record,
                f"Unexpected error: {error}",
                sink,
            )
        finally:
            with self._lock:
                self._runs.pop(state.run_id, None)

    def _await_approval(
        self,
        state: PipelineRunState,
        progress: _Progress,
        step: PipelineStep,
        step_record: StepRecord,
        sink: EventSink | None,
    ) -> bool:
        agent = self._store.get_agent(step.agent_id)
        agent_name = agent.name if agent is not None else step.agent_id
        step_record.agent_name = agent_name
        self._set_status(state, PipelineStatus.AWAITING_APPROVAL)
        self._store.save_step(progress.record_id, step_record)
        self._store.update_execution(
            progress.record_id,
            ExecutionUpdate(
                status=ExecutionStatus.AWAITING_APPROVAL,
                current_step=step_record.step_index,
            ),
        )
        self._publish(
            state,
            sink,
            "approval_required",
            {
                "step_index": step_record.step_index,
                "previous_output_preview": self._preview(progress.previous_output),
                "agent_name": agent_name,
            },
        )
        logger.info(
            "Pipeline run %s awaiting approval before step %d",
            state.run_id,
            step_record.step_index,
        )
        approved = self._approvals.wait(state.run_id, state.token)
        if approved and not state.token.cancelled:
            self._publish(state, sink, "approved", {"step_index": step_record.step_index})
        return approved

    def _resolve_agent(self, step: PipelineStep) -> AgentRecord:
        agent = self._store.get_agent(step.agent_id)
        if agent is None:
            raise StepAgentUnavailable(step.agent_id)
        if not agent.active:
            raise StepAgentUnavailable(step.agent_id, inactive=True)
        return agent

    def _run_step(
        self,
        state: PipelineRunState,
        step_index: int,
        agent: AgentRecord,
        prompt: str,
        sink: EventSink | None,
    ) -> RunCompletion | None:
        """Run one step through the engine; returns None when the run was canceled."""

        done: Future[RunCompletion] = Future()

        def _on_event(event: OutputEvent, execution_id: str) -> None:
            self._publish(
                state,
                sink,
                "step_output",
                {
                    "step_index": step_index,
                    "execution_id": execution_id,
                    "event": event.to_dict(),
                },
            )

        callbacks = RunCallbacks(
            on_event=_on_event,
            on_complete=lambda completion, _run_id: done.set_result(completion),
            on_error=lambda error, _run_id: done.set_exception(error),
        )
        execution_id = self._engine.execute(
            agent.config,
            prompt,
            callbacks,
            secrets=self._store.get_secrets(agent.agent_id),
        )
        with state.lock:
            state.current_execution_id = execution_id
        if state.token.cancelled:
            self._engine.cancel(execution_id)

        try:
            completion = done.result()
        finally:
            with state.lock:
                state.current_execution_id = None

        if completion.canceled or state.token.cancelled:
            return None
        failure = completion_error(completion)
        if failure is not None:
            raise failure
        return completion

    def _complete_step(  # noqa: PLR0913
        self,
        state: PipelineRunState,
        progress: _Progress,
        step: PipelineStep,
        agent: AgentRecord,
        step_record: StepRecord,
        completion: RunCompletion,
        sink: EventSink | None,
    ) -> None:
        result = StepResult(
            step_id=step.step_id,
            agent_name=agent.name,
            result=completion.result,
            cost_usd=completion.cost_usd,
            duration_ms=completion.duration_ms,
            num_turns=completion.num_turns,
        )
        progress.results.append(result)
        progress.previous_output = completion.result
        progress.total_cost_usd += completion.cost_usd
        progress.total_duration_ms += completion.duration_ms
        progress.total_turns += completion.num_turns

        step_record.status = ExecutionStatus.COMPLETED
        step_record.ended_at = utc_now()
        step_record.result = completion.result
        step_record.cost_usd = completion.cost_usd
        step_record.duration_ms = completion.duration_ms
        step_record.num_turns = completion.num_turns
        self._store.save_step(progress.record_id, step_record)
        self._store.update_execution(
            progress.record_id,
            ExecutionUpdate(
                cost_usd=progress.total_cost_usd,
                duration_ms=progress.total_duration_ms,
                num_turns=progress.total_turns,
            ),
        )
        self._publish(
            state,
            sink,
            "step_complete",
            {
                "step_index": step_record.step_index,
                "result_preview": self._preview(completion.result),
                "cost_usd": completion.cost_usd,
            },
        )
        logger.info(
            "Pipeline run %s step %d completed cost=%.4f",
            state.run_id,
            step_record.step_index,
            completion.cost_usd,
        )

    # -- terminal states --------------------------------------------------------

    def _finish_completed(
        self,
        state: PipelineRunState,
        progress: _Progress,
        sink: EventSink | None,
    ) -> PipelineOutcome:
        self._set_status(state, PipelineStatus.COMPLETED)
        self._store.update_execution(
            progress.record_id,
            ExecutionUpdate(
                status=ExecutionStatus.COMPLETED,
                ended_at=utc_now(),
                result=progress.previous_output,
            ),
        )
        self._publish(
            state,
            sink,
            "complete",
            {
                "results": [result.to_dict() for result in progress.results],
                "total_cost_usd": progress.total_cost_usd,
            },
        )
        logger.info(
            "Pipeline run %s completed total_cost=%.4f",
            state.run_id,
            progress.total_cost_usd,
        )
        self._generate_report(state, progress, sink)
        return self._outcome(state, progress, PipelineStatus.COMPLETED)

    def _finish_rejected(
        self,
        state: PipelineRunState,
        progress: _Progress,
        step_record: StepRecord,
        sink: EventSink | None,
    ) -> PipelineOutcome:
        self._set_status(state, PipelineStatus.REJECTED)
        step_record.status = ExecutionStatus.REJECTED
        step_record.ended_at = utc_now()
        self._store.save_step(progress.record_id, step_record)
        self._store.update_execution(
            progress.record_id,
            ExecutionUpdate(status=ExecutionStatus.REJECTED, ended_at=utc_now()),
        )
        self._publish(state, sink, "rejected", {"step_index": step_record.step_index})
        logger.info("Pipeline run %s rejected at step %d", state.run_id, step_record.step_index)
        outcome = self._outcome(state, progress, PipelineStatus.REJECTED)
        outcome.failed_step = step_record.step_index
        return outcome

    def _finish_canceled(
        self,
        state: PipelineRunState,
        progress: _Progress,
        step_record: StepRecord | None,
        sink: EventSink | None,
    ) -> PipelineOutcome:
        self._set_status(state, PipelineStatus.CANCELED)
        if step_record is not None and step_record.status not in {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.CANCELED,
        }:
            step_record.status = ExecutionStatus.CANCELED
            step_record.ended_at = utc_now()
            step_record.result = ""
            self._store.save_step(progress.record_id, step_record)
        self._store.update_execution(
            progress.record_id,
            ExecutionUpdate(status=ExecutionStatus.CANCELED, ended_at=utc_now()),
        )
        self._publish(state, sink, "canceled", {"step_index": state.current_step})
        logger.info("Pipeline run %s canceled at step %d", state.run_id, state.current_step)
        return self._outcome(state, progress, PipelineStatus.CANCELED)

    def _finish_error(
        self,
        state: PipelineRunState,
        progress: _Progress,
        step_record: StepRecord | None,
        message: str,
        sink: EventSink | None,
    ) -> PipelineOutcome:
        self._set_status(state, PipelineStatus.ERROR)
        sanitized = sanitize_preview(message)
        if step_record is not None and step_record.step_index == state.current_step:
            step_record.status = ExecutionStatus.ERROR
            step_record.ended_at = utc_now()
            step_record.error = sanitized
            self._store.save_step(progress.record_id, step_record)
        self._store.update_execution(
            progress.record_id,
            ExecutionUpdate(status=ExecutionStatus.ERROR, ended_at=utc_now(), error=sanitized),
        )
        self._publish(
            state,
            sink,
            "error",
            {"step_index": state.current_step, "message": message},
        )
        outcome = self._outcome(state, progress, PipelineStatus.ERROR)
        outcome.failed_step = state.current_step
        outcome.error = message
        return outcome

    def _generate_report(
        self,
        state: PipelineRunState,
        progress: _Progress,
        sink: EventSink | None,
    ) -> None:
        if self._report_generator is None:
            return
        try:
            record = self._store.get_execution(progress.record_id)
            if record is None:
                return
            reference = self._report_generator.generate(record)
        except Exception:
            logger.exception("Report generation failed for pipeline run %s", state.run_id)
            return
        self._publish(state, sink, "report_generated", {"report": reference})

    # -- helpers ----------------------------------------------------------------

    def _set_status(
        self,
        state: PipelineRunState,
        status: PipelineStatus,
        *,
        step_index: int | None = None,
    ) -> None:
        with state.lock:
            state.status = status
            if step_index is not None:
                state.current_step = step_index

    def _new_step_record(
        self,
        index: int,
        step: PipelineStep,
        status: ExecutionStatus,
    ) -> StepRecord:
        return StepRecord(
            step_index=index,
            step_id=step.step_id,
            agent_id=step.agent_id,
            agent_name=step.agent_id,
            status=status,
            started_at=utc_now(),
        )

    def _publish(
        self,
        state: PipelineRunState,
        sink: EventSink | None,
        event_type: str,
        data: dict[str, Any],
    ) -> None:
        safe_publish(
            sink,
            RelayEvent(
                type=event_type,
                run_id=state.run_id,
                pipeline_id=state.pipeline_id,
                data=data,
            ),
        )

    def _preview(self, text: str) -> str:
        return text[: self._settings.preview_chars]

    def _outcome(
        self,
        state: PipelineRunState,
        progress: _Progress,
        status: PipelineStatus,
    ) -> PipelineOutcome:
        return PipelineOutcome(
            run_id=state.run_id,
            pipeline_id=state.pipeline_id,
            status=status,
            results=list(progress.results),
            total_cost_usd=progress.total_cost_usd,
            total_duration_ms=progress.total_duration_ms,
            record_id=progress.record_id,
        )
