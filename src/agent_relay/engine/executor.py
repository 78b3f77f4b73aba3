"""Process execution engine: one engine subprocess per run."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO
from uuid import uuid4

from agent_relay.config import EngineSettings, clamp_concurrency
from agent_relay.engine.cancellation import CancellationToken
from agent_relay.engine.channel import RunChannel
from agent_relay.engine.command import (
    build_args,
    build_env,
    build_prompt,
    prepare_working_directory,
    sanitize_text,
)
from agent_relay.engine.models import (
    ActiveRun,
    AgentConfig,
    OutputEvent,
    OutputEventKind,
    RunCallbacks,
    RunCompletion,
    TaskSpec,
)
from agent_relay.engine.stream import EventBuffer, StreamParser, TextAccumulator
from agent_relay.errors import (
    AdmissionRejected,
    ExecutionTimeout,
    ResultError,
    SpawnFailure,
    SubprocessError,
)
from agent_relay.store.common import utc_now

logger = logging.getLogger(__name__)

_READER_JOIN_SLACK_SECONDS = 1.0


@dataclass(slots=True, eq=False)
class ExecutionHandle:
    """Registry entry for one active run."""

    run_id: str
    agent_config: AgentConfig
    task: TaskSpec | str
    started_at: datetime
    channel: RunChannel
    events: EventBuffer
    token: CancellationToken = field(default_factory=CancellationToken)
    process: subprocess.Popen[bytes] | None = None
    timed_out: bool = False

    @property
    def canceled(self) -> bool:
        return self.token.cancelled


@dataclass(slots=True)
class _RunCapture:
    parser: StreamParser
    text: TextAccumulator
    stderr: TextAccumulator


class ProcessEngine:
    """Spawns engine subprocesses under a global admission ceiling.

    The registry of active runs is the only shared mutable state; every
    lookup and removal happens under one lock.
    """

    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or EngineSettings()
        self._active: dict[str, ExecutionHandle] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

    @property
    def max_concurrent(self) -> int:
        return self.settings.max_concurrent

    def update_max_concurrent(self, value: int) -> int:
        """Change the admission ceiling at runtime; returns the clamped value."""

        with self._lock:
            self.settings.max_concurrent = clamp_concurrency(value)
            return self.settings.max_concurrent

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def execute(
        self,
        agent_config: AgentConfig,
        task: TaskSpec | str,
        callbacks: RunCallbacks | None = None,
        *,
        secrets: Mapping[str, str] | None = None,
    ) -> str:
        """Start a fresh run and return its id.

        Raises `AdmissionRejected` or `DirectoryInvalid` before anything is
        spawned. Spawn failures arrive through `callbacks.on_error`.
        """

        workdir = prepare_working_directory(
            agent_config.working_directory,
            allowed_roots=self.settings.allowed_workdir_roots,
        )
        args = build_args(agent_config, default_model=self.settings.default_model)
        return self._launch(
            agent_config=agent_config,
            task=task,
            prompt=build_prompt(task),
            args=args,
            cwd=workdir,
            callbacks=callbacks,
            secrets=secrets,
        )

    def resume(
        self,
        agent_config: AgentConfig,
        session_id: str,
        message: str,
        callbacks: RunCallbacks | None = None,
        *,
        secrets: Mapping[str, str] | None = None,
    ) -> str:
        """Continue a prior engine session with a follow-up message."""

        # Working directory policy is not applied on resume; see DESIGN.md.
        raw_dir = agent_config.working_directory.strip()
        cwd = Path(raw_dir) if raw_dir and Path(raw_dir).is_dir() else None
        args = build_args(
            agent_config,
            default_model=self.settings.default_model,
            session_id=session_id,
        )
        return self._launch(
            agent_config=agent_config,
            task=message,
            prompt=sanitize_text(message),
            args=args,
            cwd=cwd,
            callbacks=callbacks,
            secrets=secrets,
        )

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; the subprocess is terminated, then killed after grace."""

        with self._lock:
            handle = self._active.get(run_id)
        if handle is None:
            return False
        logger.info("Canceling run %s", run_id)
        handle.token.cancel()
        return True

    def cancel_all(self) -> int:
        with self._lock:
            handles = list(self._active.values())
        for handle in handles:
            handle.token.cancel()
        if handles:
            logger.info("Canceled %d active run(s)", len(handles))
        return len(handles)

    def get_active(self) -> list[ActiveRun]:
        with self._lock:
            handles = list(self._active.values())
        return [
            ActiveRun(
                run_id=handle.run_id,
                started_at=handle.started_at,
                agent_config=handle.agent_config,
                buffered_events=handle.events.snapshot(),
            )
            for handle in handles
        ]

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no run is active."""

        with self._idle:
            return self._idle.wait_for(lambda: not self._active, timeout)

    # -- run lifecycle ----------------------------------------------------------

    def _launch(  # noqa: PLR0913
        self,
        *,
        agent_config: AgentConfig,
        task: TaskSpec | str,
        prompt: str,
        args: list[str],
        cwd: Path | None,
        callbacks: RunCallbacks | None,
        secrets: Mapping[str, str] | None,
    ) -> str:
        handle = self._admit(agent_config=agent_config, task=task, callbacks=callbacks)
        run_args = [*self.settings.command, *args]
        env = build_env(secrets=secrets, stripped_names=self.settings.stripped_env_vars)

        logger.info(
            "Starting run %s model=%s cwd=%s",
            handle.run_id,
            agent_config.model or self.settings.default_model,
            cwd or Path.cwd(),
        )
        try:
            handle.process = subprocess.Popen(  # noqa: S603
                run_args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=os.name == "posix",
            )
        except OSError as error:
            self._release(handle)
            logger.error("Run %s failed to spawn: %s", handle.run_id, error)
            handle.channel.fail(
                SpawnFailure(
                    f"Engine command failed to start ({run_args[0]}): {error}",
                    transient=not isinstance(error, FileNotFoundError),
                ),
            )
            return handle.run_id

        timeout = agent_config.timeout_seconds or self.settings.timeout_seconds
        threading.Thread(
            target=self._supervise,
            args=(handle, prompt, timeout),
            daemon=True,
            name=f"relay-run-{handle.run_id[:8]}",
        ).start()
        return handle.run_id

    def _admit(
        self,
        *,
        agent_config: AgentConfig,
        task: TaskSpec | str,
        callbacks: RunCallbacks | None,
    ) -> ExecutionHandle:
        with self._lock:
            if len(self._active) >= self.settings.max_concurrent:
                logger.warning(
                    "Admission rejected: %d/%d runs active",
                    len(self._active),
                    self.settings.max_concurrent,
                )
                raise AdmissionRejected(self.settings.max_concurrent)
            run_id = str(uuid4())
            handle = ExecutionHandle(
                run_id=run_id,
                agent_config=agent_config,
                task=task,
                started_at=utc_now(),
                channel=RunChannel(run_id, callbacks or RunCallbacks()),
                events=EventBuffer(self.settings.event_buffer_size),
            )
            self._active[run_id] = handle
            return handle

    def _release(self, handle: ExecutionHandle) -> None:
        with self._idle:
            self._active.pop(handle.run_id, None)
            self._idle.notify_all()

    def _supervise(self, handle: ExecutionHandle, prompt: str, timeout: float) -> None:
        process = handle.process
        if process is None:
            return
        started = time.monotonic()
        capture = _RunCapture(
            parser=StreamParser(),
            text=TextAccumulator(self.settings.result_max_bytes),
            stderr=TextAccumulator(self.settings.stderr_max_bytes),
        )
        readers = [
            threading.Thread(
                target=self._read_stdout,
                args=(handle, process.stdout, capture),
                daemon=True,
            ),
            threading.Thread(
                target=self._read_stderr,
                args=(handle, process.stderr, capture),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        unregister = handle.token.add_callback(lambda: _signal_process(process, force=False))
        try:
            threading.Thread(target=_write_prompt, args=(process, prompt), daemon=True).start()
            exit_code = self._wait(handle, process, timeout)
            self._join_readers(process, readers)
        except Exception as error:
            logger.exception("Run %s supervision failed", handle.run_id)
            _signal_process(process, force=True)
            self._release(handle)
            handle.channel.fail(error)
            return
        finally:
            unregister()

        self._release(handle)
        logger.info(
            "Run %s closed exit_code=%s canceled=%s timed_out=%s",
            handle.run_id,
            exit_code,
            handle.canceled,
            handle.timed_out,
        )
        self._finalize(handle, capture, exit_code, elapsed=time.monotonic() - started)

    def _wait(
        self,
        handle: ExecutionHandle,
        process: subprocess.Popen[bytes],
        timeout: float,
    ) -> int:
        deadline = time.monotonic() + timeout
        grace = max(0.0, self.settings.kill_grace_seconds)
        terminate_sent_at: float | None = None

        while True:
            try:
                return process.wait(timeout=self.settings.poll_interval_seconds)
            except subprocess.TimeoutExpired:
                pass

            now = time.monotonic()
            if terminate_sent_at is None:
                if handle.canceled:
                    terminate_sent_at = now
                    _signal_process(process, force=False)
                elif now >= deadline:
                    handle.timed_out = True
                    terminate_sent_at = now
                    logger.warning("Run %s timed out after %.1fs", handle.run_id, timeout)
                    _signal_process(process, force=False)
                continue

            if now - terminate_sent_at >= grace:
                logger.warning("Run %s ignored terminate; killing", handle.run_id)
                _signal_process(process, force=True)
                return process.wait()

    def _join_readers(
        self,
        process: subprocess.Popen[bytes],
        readers: list[threading.Thread],
    ) -> None:
        join_timeout = self.settings.kill_grace_seconds + _READER_JOIN_SLACK_SECONDS
        for reader in readers:
            reader.join(join_timeout)
        if any(reader.is_alive() for reader in readers):
            # Descendants still hold the pipes open.
            _signal_process(process, force=True)
            for reader in readers:
                reader.join(_READER_JOIN_SLACK_SECONDS)

    def _read_stdout(
        self,
        handle: ExecutionHandle,
        stream: IO[bytes] | None,
        capture: _RunCapture,
    ) -> None:
        if stream is None:
            return
        with stream:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace")
                try:
                    events = capture.parser.feed_line(line)
                except Exception:  # noqa: BLE001
                    logger.debug("Unparseable stream line in run %s", handle.run_id, exc_info=True)
                    stripped = line.strip()
                    events = [OutputEvent.chunk(stripped)] if stripped else []
                for event in events:
                    if event.kind is OutputEventKind.CHUNK:
                        capture.text.append(event.text)
                    self._publish(handle, event)

    def _read_stderr(
        self,
        handle: ExecutionHandle,
        stream: IO[bytes] | None,
        capture: _RunCapture,
    ) -> None:
        if stream is None:
            return
        with stream:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace")
                capture.stderr.append(line)
                stripped = line.rstrip("\r\n")
                if stripped.strip():
                    self._publish(handle, OutputEvent.stderr(stripped))

    def _publish(self, handle: ExecutionHandle, event: OutputEvent) -> None:
        handle.events.push(event)
        handle.channel.publish(event)

    def _finalize(
        self,
        handle: ExecutionHandle,
        capture: _RunCapture,
        exit_code: int,
        *,
        elapsed: float,
    ) -> None:
        metadata = capture.parser.result
        if metadata is not None and metadata.is_error and metadata.errors:
            logger.warning("Run %s reported errors: %s", handle.run_id, "; ".join(metadata.errors))
            handle.channel.fail(ResultError(list(metadata.errors)))
            return

        if not capture.text.size_bytes and metadata is not None and metadata.result_text:
            capture.text.append(metadata.result_text)

        completion = RunCompletion(
            run_id=handle.run_id,
            result=capture.text.text(),
            exit_code=exit_code,
            stderr=capture.stderr.text(),
            canceled=handle.canceled,
            timed_out=handle.timed_out,
            result_truncated=capture.text.truncated,
        )
        if metadata is not None:
            completion.cost_usd = metadata.cost_usd
            completion.duration_ms = metadata.duration_ms
            completion.num_turns = metadata.num_turns
            completion.session_id = metadata.session_id
        if not completion.duration_ms:
            completion.duration_ms = int(elapsed * 1000)
        handle.channel.complete(completion)


def _write_prompt(process: subprocess.Popen[bytes], prompt: str) -> None:
    stdin = process.stdin
    if stdin is None:
        return
    try:
        stdin.write(prompt.encode("utf-8"))
        stdin.flush()
    except (BrokenPipeError, ValueError):
        logger.debug("Engine closed stdin before the prompt was written", exc_info=True)
    finally:
        try:
            stdin.close()
        except (BrokenPipeError, ValueError):
            pass


def _signal_process(process: subprocess.Popen[bytes], *, force: bool) -> None:
    if process.poll() is not None and not force:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
        elif force:
            process.kill()
        else:
            process.terminate()
    except OSError:
        return


def completion_error(completion: RunCompletion) -> SubprocessError | None:
    """Classify a non-canceled completion that carries no usable result.

    A timed-out run that produced text is a normal close with partial output.
    """

    if completion.canceled:
        return None
    if completion.timed_out and not completion.result:
        return ExecutionTimeout(
            f"Run {completion.run_id} timed out",
            exit_code=completion.exit_code,
        )
    if completion.exit_code != 0 and not completion.result:
        return SubprocessError(
            completion.stderr.strip() or f"Process exited with code {completion.exit_code}",
            exit_code=completion.exit_code,
        )
    return None
