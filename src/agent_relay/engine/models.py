"""Domain models for engine runs and their output stream."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class PermissionMode(str, Enum):
    """Permission modes understood by the reasoning engine."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"


class OutputEventKind(str, Enum):
    """Discriminator for streamed output events."""

    CHUNK = "chunk"
    TOOL = "tool"
    TURN = "turn"
    SYSTEM = "system"
    STDERR = "stderr"
    RESULT = "result"


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """Immutable per-run snapshot of an agent's engine settings."""

    model: str = ""
    system_prompt: str = ""
    working_directory: str = ""
    max_turns: int = 0
    allowed_tools: tuple[str, ...] = ()
    permission_mode: str = PermissionMode.BYPASS_PERMISSIONS.value
    timeout_seconds: float | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AgentConfig:
        """Build config from a loosely-typed mapping (JSON files, store rows)."""

        raw_tools = data.get("allowed_tools", data.get("allowedTools", ()))
        if isinstance(raw_tools, str):
            tools = tuple(part.strip() for part in raw_tools.split(",") if part.strip())
        else:
            tools = tuple(str(item) for item in raw_tools or ())
        timeout = data.get("timeout_seconds", data.get("timeoutSeconds"))
        return cls(
            model=str(data.get("model") or ""),
            system_prompt=str(data.get("system_prompt", data.get("systemPrompt")) or ""),
            working_directory=str(
                data.get("working_directory", data.get("workingDirectory")) or "",
            ),
            max_turns=int(data.get("max_turns", data.get("maxTurns")) or 0),
            allowed_tools=tools,
            permission_mode=str(
                data.get("permission_mode", data.get("permissionMode"))
                or PermissionMode.BYPASS_PERMISSIONS.value,
            ),
            timeout_seconds=float(timeout) if timeout else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "system_prompt": self.system_prompt,
            "working_directory": self.working_directory,
            "max_turns": self.max_turns,
            "allowed_tools": list(self.allowed_tools),
            "permission_mode": self.permission_mode,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """Unit of work handed to one run."""

    description: str
    instructions: str | None = None


@dataclass(frozen=True, slots=True)
class ResultMetadata:
    """Terminal `result` record reported by the engine."""

    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    session_id: str = ""
    is_error: bool = False
    errors: tuple[str, ...] = ()
    result_text: str | None = None


@dataclass(frozen=True, slots=True)
class OutputEvent:
    """One semantic event parsed from the engine output stream.

    `kind` selects which payload fields are meaningful: `text` for chunk,
    `name`/`detail` for tool, `index` for turn, `message` for system,
    `line` for stderr and `metadata` for result.
    """

    kind: OutputEventKind
    text: str = ""
    name: str = ""
    detail: str = ""
    index: int = 0
    message: str = ""
    line: str = ""
    metadata: ResultMetadata | None = None

    @classmethod
    def chunk(cls, text: str) -> OutputEvent:
        return cls(kind=OutputEventKind.CHUNK, text=text)

    @classmethod
    def tool(cls, name: str, detail: str) -> OutputEvent:
        return cls(kind=OutputEventKind.TOOL, name=name, detail=detail)

    @classmethod
    def turn(cls, index: int) -> OutputEvent:
        return cls(kind=OutputEventKind.TURN, index=index)

    @classmethod
    def system(cls, message: str) -> OutputEvent:
        return cls(kind=OutputEventKind.SYSTEM, message=message)

    @classmethod
    def stderr(cls, line: str) -> OutputEvent:
        return cls(kind=OutputEventKind.STDERR, line=line)

    @classmethod
    def result(cls, metadata: ResultMetadata) -> OutputEvent:
        return cls(kind=OutputEventKind.RESULT, metadata=metadata)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for event sinks, keeping only the fields of this kind."""

        payload: dict[str, Any] = {"type": self.kind.value}
        if self.kind is OutputEventKind.CHUNK:
            payload["content"] = self.text
        elif self.kind is OutputEventKind.TOOL:
            payload["name"] = self.name
            payload["detail"] = self.detail
        elif self.kind is OutputEventKind.TURN:
            payload["index"] = self.index
        elif self.kind is OutputEventKind.SYSTEM:
            payload["message"] = self.message
        elif self.kind is OutputEventKind.STDERR:
            payload["line"] = self.line
        elif self.metadata is not None:
            payload["cost_usd"] = self.metadata.cost_usd
            payload["duration_ms"] = self.metadata.duration_ms
            payload["num_turns"] = self.metadata.num_turns
            payload["session_id"] = self.metadata.session_id
            payload["is_error"] = self.metadata.is_error
        return payload


@dataclass(slots=True)
class RunCompletion:
    """Final outcome delivered to `on_complete`."""

    run_id: str
    result: str
    exit_code: int | None
    stderr: str
    canceled: bool
    timed_out: bool
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    session_id: str = ""
    result_truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "result": self.result,
            "exit_code": self.exit_code,
            "stderr": self.stderr,
            "canceled": self.canceled,
            "timed_out": self.timed_out,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "num_turns": self.num_turns,
            "session_id": self.session_id,
        }


EventCallback = Callable[[OutputEvent, str], None]
CompleteCallback = Callable[[RunCompletion, str], None]
ErrorCallback = Callable[[Exception, str], None]


@dataclass(slots=True)
class RunCallbacks:
    """Subscriber callbacks for one run; each receives the run id last."""

    on_event: EventCallback | None = None
    on_complete: CompleteCallback | None = None
    on_error: ErrorCallback | None = None


@dataclass(frozen=True, slots=True)
class ActiveRun:
    """Snapshot of an active run for reconnect/replay."""

    run_id: str
    started_at: datetime
    agent_config: AgentConfig
    buffered_events: tuple[OutputEvent, ...] = field(default_factory=tuple)
