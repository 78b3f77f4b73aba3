"""Approval gate registry: at most one pending decision per pipeline run."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future

from agent_relay.engine.cancellation import CancellationToken
from agent_relay.errors import ApprovalPending

logger = logging.getLogger(__name__)


class ApprovalRegistry:
    """Futures keyed by run id, resolved by approve/reject or cancellation."""

    def __init__(self) -> None:
        self._pending: dict[str, Future[bool]] = {}
        self._lock = threading.Lock()

    def open(self, run_id: str) -> Future[bool]:
        """Register the run's pending decision; raises if one already exists."""

        with self._lock:
            if run_id in self._pending:
                raise ApprovalPending(run_id)
            future: Future[bool] = Future()
            self._pending[run_id] = future
            return future

    def resolve(self, run_id: str, approved: bool) -> bool:
        """Resolve the pending decision; returns False when nothing is pending."""

        with self._lock:
            future = self._pending.pop(run_id, None)
        if future is None:
            return False
        future.set_result(approved)
        logger.info("Pipeline run %s %s", run_id, "approved" if approved else "rejected")
        return True

    def is_pending(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._pending

    def wait(self, run_id: str, token: CancellationToken) -> bool:
        """Suspend until a decision arrives; cancellation resolves as non-approval."""

        future = self.open(run_id)
        unregister = token.add_callback(lambda: self.resolve(run_id, False))
        try:
            return future.result()
        finally:
            unregister()
            with self._lock:
                if self._pending.get(run_id) is future:
                    del self._pending[run_id]
