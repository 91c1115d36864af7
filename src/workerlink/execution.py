"""Worker-side dispatch and the per-call execution state machine.

Both backends share this module. The process runtime drives an execution to
completion on its own thread; the emulated backend drives it one time slice at
a time from the controller's event loop.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from workerlink.errors import CANCELLED_TYPE, CloneError
from workerlink.limits import ABORT_CHECK_INTERVAL
from workerlink.protocol import Action, Envelope, Kind, clone, error_detail
from workerlink.scope import AbortHandle, OperationContext

if TYPE_CHECKING:
    from collections.abc import Callable

    from workerlink.program import Program
    from workerlink.scope import Operation, Step, WorkerScope

logger = logging.getLogger(__name__)


class ExecutionState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"


class Execution:
    """One accepted call: a generator of steps plus its terminal bookkeeping.

    ``run_slice`` is the only entry point. It never lets an exception from
    operation code escape, ``SystemExit`` included; failures become a terminal
    ``error`` envelope.
    """

    def __init__(
        self,
        envelope: Envelope,
        operation: Operation,
        scope: WorkerScope,
        abort: AbortHandle,
        on_done: Callable[[str], None] | None = None,
    ) -> None:
        self.call_id = envelope.id
        self.action = envelope.action
        self.state = ExecutionState.PENDING
        self.steps_run = 0
        self.slices_run = 0
        self.ctx = OperationContext(envelope.id, envelope.action, abort, scope)
        self._payload = envelope.payload
        self._operation = operation
        self._scope = scope
        self._on_done = on_done
        self._steps: Step | None = None

    @property
    def done(self) -> bool:
        return self.state is ExecutionState.DONE

    def run_slice(
        self,
        budget_s: float | None = None,
        check_every: int = ABORT_CHECK_INTERVAL,
    ) -> bool:
        """Advance until *budget_s* of wall-clock time has elapsed.

        ``None`` runs to completion. The abort flag is read on entry and every
        *check_every* steps. Returns ``True`` once the terminal envelope is sent.
        """
        if self.done:
            return True
        if self.ctx.aborted:
            self._finish_cancelled()
            return True

        self.state = ExecutionState.RUNNING
        self.slices_run += 1
        previous_call_id = self._scope.current_call_id
        self._scope.current_call_id = self.call_id
        deadline = None if budget_s is None else time.perf_counter() + budget_s
        try:
            if self._steps is None:
                self._steps = self._operation.steps(self._payload, self.ctx)
            count = 0
            while True:
                try:
                    next(self._steps)
                except StopIteration as stop:
                    self._finish(stop.value)
                    return True
                count += 1
                self.steps_run += 1
                if count % check_every == 0 and self.ctx.aborted:
                    self._finish_cancelled()
                    return True
                if deadline is not None and time.perf_counter() >= deadline:
                    break
            self.ctx.flush()
        except (Exception, SystemExit) as exc:
            if self.done:
                logger.exception("Failed to deliver terminal envelope for call %s", self.call_id)
            else:
                self._fail(exc)
            return True
        finally:
            self._scope.current_call_id = previous_call_id
        return False

    def _finish(self, value: Any) -> None:
        if self.ctx.aborted:
            self._finish_cancelled()
            return
        try:
            result = clone(value)
        except CloneError as exc:
            self._fail(exc)
            return
        self.ctx.flush()
        self._terminal(Kind.RESULT, result)

    def _fail(self, exc: BaseException) -> None:
        logger.debug("Operation %s (call %s) raised %r", self.action, self.call_id, exc)
        self.ctx.flush()
        self._terminal(Kind.ERROR, error_detail(exc))

    def _finish_cancelled(self) -> None:
        if self._steps is not None:
            try:
                self._steps.close()
            except Exception:
                logger.debug("Operation %s raised while closing", self.action, exc_info=True)
        detail = {
            "type": CANCELLED_TYPE,
            "message": f"Call {self.call_id} ({self.action}) was cancelled",
            "stack": "",
        }
        self._terminal(Kind.ERROR, detail)

    def _terminal(self, kind: Kind, payload: Any) -> None:
        self.state = ExecutionState.DONE
        self._steps = None
        try:
            self._scope.post(self.call_id, kind, payload)
        finally:
            if self._on_done is not None:
                self._on_done(self.call_id)


class OperationRuntime:
    """Turns inbound request envelopes into executions.

    Owns the program load outcome and the abort handles of in-flight calls.
    ``cancel`` may be called from a different thread than the one running
    executions.
    """

    def __init__(self, scope: WorkerScope) -> None:
        self.scope = scope
        self.init_error: dict[str, str] | None = None
        self._aborts: dict[str, AbortHandle] = {}
        self._lock = threading.Lock()

    def load(self, program: Program) -> bool:
        """Execute the program text against the scope; failures are remembered."""
        try:
            program.execute(self.scope)
        except (Exception, SystemExit) as exc:
            self.init_error = error_detail(exc)
            logger.error("Program %s failed to initialize: %s", program.name, exc)
            return False
        logger.debug(
            "Program %s loaded with operations: %s",
            program.name,
            ", ".join(sorted(self.scope.operations)) or "<none>",
        )
        return True

    def accept(self, envelope: Envelope) -> Execution | None:
        """Handle control envelopes inline; return an execution for requests."""
        if envelope.action == Action.CANCEL:
            self.cancel(envelope.id)
            return None
        if envelope.action == Action.LOAD:
            logger.warning("Ignoring duplicate load request")
            return None
        if self.init_error is not None:
            self.scope.post(envelope.id, Kind.INIT_ERROR, self.init_error)
            return None

        operation = self.scope.operations.get(envelope.action)
        if operation is None:
            detail = {
                "type": "UnknownOperation",
                "message": f"Unknown operation: {envelope.action}",
                "stack": "",
            }
            self.scope.post(envelope.id, Kind.ERROR, detail)
            return None

        abort = AbortHandle(envelope.id)
        with self._lock:
            self._aborts[envelope.id] = abort
        return Execution(envelope, operation, self.scope, abort, on_done=self._release)

    def cancel(self, call_id: str) -> bool:
        with self._lock:
            abort = self._aborts.get(call_id)
        if abort is None:
            return False
        abort.aborted = True
        logger.debug("Abort flag set for call %s", call_id)
        return True

    def in_flight(self) -> list[str]:
        with self._lock:
            return list(self._aborts)

    def _release(self, call_id: str) -> None:
        with self._lock:
            self._aborts.pop(call_id, None)


__all__ = ["Execution", "ExecutionState", "OperationRuntime"]
