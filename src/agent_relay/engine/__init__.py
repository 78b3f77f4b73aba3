"""Process execution engine."""

from agent_relay.engine.cancellation import CancellationToken
from agent_relay.engine.executor import ExecutionHandle, ProcessEngine
from agent_relay.engine.models import (
    ActiveRun,
    AgentConfig,
    OutputEvent,
    OutputEventKind,
    PermissionMode,
    ResultMetadata,
    RunCallbacks,
    RunCompletion,
    TaskSpec,
)

__all__ = [
    "ActiveRun",
    "AgentConfig",
    "CancellationToken",
    "ExecutionHandle",
    "OutputEvent",
    "OutputEventKind",
    "PermissionMode",
    "ProcessEngine",
    "ResultMetadata",
    "RunCallbacks",
    "RunCompletion",
    "TaskSpec",
]
