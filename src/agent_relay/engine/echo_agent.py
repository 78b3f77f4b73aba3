"""Local stand-in for the reasoning engine used by integration tests.

Speaks the stream-json protocol on stdout. Behaviour is selected with
environment variables:

- ``ECHO_AGENT_MODE``: ``echo`` (default), ``tool``, ``chatty``, ``stderr``,
  ``malformed``, ``error``, ``exit``, ``slow``, ``hang`` or ``stall``
  (replies, then hangs without a result).
- ``ECHO_AGENT_TEXT``: reply text instead of echoing the prompt.
- ``ECHO_AGENT_COST``: reported cost (default ``0.01``).
- ``ECHO_AGENT_DELAY``: seconds to sleep in ``slow`` mode.
- ``ECHO_AGENT_CHUNKS``: number of text chunks in ``chatty`` mode.
- ``ECHO_AGENT_IGNORE_TERM``: ``1`` to ignore SIGTERM (exercises kill escalation).
- ``ECHO_AGENT_RECORD_DIR``: directory receiving one JSON file per invocation
  with argv, prompt and cwd.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Run deterministic engine emulation."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", "--print", dest="print_mode", action="store_true")
    parser.add_argument("--model", default="echo-model")
    parser.add_argument("--resume", default=None)
    args, _unknown = parser.parse_known_args(argv)

    prompt = sys.stdin.read()
    _record_invocation(argv if argv is not None else sys.argv[1:], prompt)

    mode = os.getenv("ECHO_AGENT_MODE", "echo")
    if os.getenv("ECHO_AGENT_IGNORE_TERM") == "1":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    session_id = args.resume or os.getenv("ECHO_AGENT_SESSION", "echo-session")
    _emit({"type": "system", "subtype": "init", "model": args.model, "session_id": session_id})

    if mode == "hang":
        while True:
            time.sleep(1)

    if mode == "slow":
        time.sleep(float(os.getenv("ECHO_AGENT_DELAY", "30")))

    if mode == "exit":
        sys.stderr.write("fatal: engine crashed\n")
        sys.stderr.flush()
        return 3

    text = os.getenv("ECHO_AGENT_TEXT", prompt)
    cost = float(os.getenv("ECHO_AGENT_COST", "0.01"))

    if mode == "malformed":
        sys.stdout.write("this is not json\n")
        sys.stdout.flush()
        sys.stdout.buffer.write(b"\xff\xfe broken bytes\n")
        sys.stdout.buffer.flush()
        sys.stdout.write("[1, 2, 3]\n")
        sys.stdout.write('{"type": "assistant", "message": "oops"}\n')

    if mode == "stderr":
        sys.stderr.write("warning: first\n\nwarning: second\n")
        sys.stderr.flush()

    if mode == "tool":
        _emit(
            {
                "type": "assistant",
                "message": {
                    "id": "msg-tool",
                    "content": [
                        {"type": "tool_use", "name": "Bash", "input": {"command": "ls -la"}},
                    ],
                },
            },
        )

    if mode == "chatty":
        for index in range(int(os.getenv("ECHO_AGENT_CHUNKS", "10"))):
            _emit({"type": "content_block_delta", "delta": {"type": "text_delta", "text": f"{index};"}})
    else:
        _emit(
            {
                "type": "assistant",
                "message": {"id": "msg-text", "content": [{"type": "text", "text": text}]},
            },
        )

    if mode == "stall":
        while True:
            time.sleep(1)

    result: dict[str, object] = {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "total_cost_usd": cost,
        "duration_ms": 5,
        "num_turns": 1,
        "session_id": session_id,
        "result": text,
    }
    if mode == "error":
        result["subtype"] = "error_during_execution"
        result["is_error"] = True
        result["errors"] = ["boom", {"message": "second failure"}]
    _emit(result)
    return 0


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def _record_invocation(argv: list[str], prompt: str) -> None:
    record_dir = os.getenv("ECHO_AGENT_RECORD_DIR")
    if not record_dir:
        return
    target = Path(record_dir)
    target.mkdir(parents=True, exist_ok=True)
    payload = {"argv": argv, "prompt": prompt, "cwd": os.getcwd(), "pid": os.getpid()}
    (target / f"invocation-{time.time_ns()}-{os.getpid()}.json").write_text(
        json.dumps(payload),
        "utf-8",
    )


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
