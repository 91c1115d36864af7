"""Cooperative, time-sliced emulation of a worker on the controller's event loop."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from workerlink.config import SchedulerConfig
from workerlink.execution import OperationRuntime
from workerlink.program import refuse_import
from workerlink.scope import WorkerScope

if TYPE_CHECKING:
    from workerlink.backends.base import ExitCallback, Receiver
    from workerlink.execution import Execution
    from workerlink.program import Program
    from workerlink.protocol import Envelope

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Backoff:
    """Inter-slice delay: floor, then grows by ``ratio`` up to ``cap``."""

    floor_ms: float
    ratio: float
    cap_ms: float
    current_ms: float = 0.0

    @classmethod
    def from_config(cls, config: SchedulerConfig) -> Backoff:
        return cls(config.backoff_floor_ms, config.backoff_ratio, config.backoff_cap_ms)

    def reset(self) -> None:
        self.current_ms = 0.0

    def next_delay(self) -> float:
        """Advance the sequence and return the delay in seconds."""
        if self.current_ms <= 0.0:
            self.current_ms = self.floor_ms
        else:
            self.current_ms = min(self.current_ms * self.ratio, self.cap_ms)
        return self.current_ms / 1000.0


class EmulatedBackend:
    """Runs a program in-process while keeping real-worker semantics.

    Deliveries in both directions go through ``loop.call_soon`` so nothing is
    ever handled in the caller's turn. Each accepted call is driven by its own
    task: run one slice, sleep for the backoff delay, repeat. User code only
    runs inside ``Execution.run_slice``, which converts its exceptions into
    ``error`` envelopes.
    """

    def __init__(
        self,
        program: Program,
        *,
        scheduler: SchedulerConfig | None = None,
        forward_console: bool = False,
    ) -> None:
        self._program = program
        self._scheduler = scheduler or SchedulerConfig()
        self._forward_console = forward_console
        self._receiver: Receiver | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._running = False
        self._scope = WorkerScope(program.name, self._post_from_worker, importer=refuse_import)
        self._runtime = OperationRuntime(self._scope)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def scope(self) -> WorkerScope:
        return self._scope

    @property
    def runtime(self) -> OperationRuntime:
        return self._runtime

    def set_receiver(self, receiver: Receiver) -> None:
        self._receiver = receiver

    def set_exit_callback(self, callback: ExitCallback) -> None:
        """The emulator never exits on its own; kept for interface parity."""
        del callback

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._running = True
        if self._forward_console:
            self._scope.enable_console_forwarding()
        self._runtime.load(self._program)
        logger.info("Emulated worker started for program %s", self._program.name)

    def send(self, envelope: Envelope) -> None:
        if not self._running or self._loop is None:
            return
        self._loop.call_soon(self._deliver_inbound, envelope)

    async def shutdown(self) -> None:
        if not self._running:
            return
        self._running = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._scope.console.remove_forwarding()
        logger.info("Emulated worker stopped for program %s", self._program.name)

    def _deliver_inbound(self, envelope: Envelope) -> None:
        if not self._running or self._loop is None:
            return
        execution = self._runtime.accept(envelope)
        if execution is None:
            return
        task = self._loop.create_task(
            self._drive(execution), name=f"workerlink-emulated-{execution.call_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drive(self, execution: Execution) -> None:
        backoff = Backoff.from_config(self._scheduler)
        backoff.reset()
        budget_s = self._scheduler.slice_budget_ms / 1000.0
        check_every = self._scheduler.abort_check_interval
        try:
            while self._running:
                if execution.run_slice(budget_s, check_every):
                    return
                await asyncio.sleep(backoff.next_delay())
        except Exception:
            logger.exception("Emulated scheduler failed for call %s", execution.call_id)

    def _post_from_worker(self, envelope: Envelope) -> None:
        if not self._running or self._loop is None:
            return
        self._loop.call_soon(self._deliver_outbound, envelope)

    def _deliver_outbound(self, envelope: Envelope) -> None:
        if not self._running or self._receiver is None:
            return
        self._receiver(envelope.to_wire())


__all__ = ["Backoff", "EmulatedBackend"]
