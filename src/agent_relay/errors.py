"""Error taxonomy shared by the process engine and the pipeline orchestrator."""

from __future__ import annotations


class RelayError(RuntimeError):
    """Base error with retryability hint for external retry policies."""

    transient: bool = False

    def __init__(self, message: str, *, transient: bool | None = None) -> None:
        super().__init__(message)
        if transient is not None:
            self.transient = transient


class AdmissionRejected(RelayError):
    """Concurrency ceiling reached; no process was spawned."""

    transient = True

    def __init__(self, max_concurrent: int) -> None:
        super().__init__(f"Concurrent execution limit of {max_concurrent} reached")
        self.max_concurrent = max_concurrent


class SpawnFailure(RelayError):
    """Engine subprocess could not be started."""


class DirectoryInvalid(RelayError):
    """Working directory disallowed by policy or could not be created."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Working directory {path!r} rejected: {reason}")
        self.path = path
        self.reason = reason


class SubprocessError(RelayError):
    """Engine subprocess exited abnormally without a usable result."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ExecutionTimeout(SubprocessError):
    """Engine subprocess was force-killed after its deadline."""

    transient = True


class ResultError(RelayError):
    """Engine's own terminal record reported a logical failure."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "Engine reported an error")
        self.errors = list(errors)


class StepAgentUnavailable(RelayError):
    """Referenced agent is missing or inactive."""

    def __init__(self, agent_id: str, *, inactive: bool = False) -> None:
        reason = "is inactive" if inactive else "was not found"
        super().__init__(f"Agent {agent_id} {reason}")
        self.agent_id = agent_id
        self.inactive = inactive


class PipelineNotFound(RelayError):
    """Pipeline definition does not exist in the store."""

    def __init__(self, pipeline_id: str) -> None:
        super().__init__(f"Pipeline {pipeline_id} not found")
        self.pipeline_id = pipeline_id


class PipelineDefinitionError(RelayError):
    """Pipeline definition failed validation."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class ApprovalPending(RelayError):
    """A decision is already outstanding for this pipeline run."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Pipeline run {run_id} already has a pending approval")
        self.run_id = run_id
