"""Correlation registry: pending calls keyed by id, each with its own timeout."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

from workerlink.errors import CallTimeoutError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_UNSET: Any = object()


@dataclass(slots=True)
class PendingOperation:
    """A call waiting for its terminal envelope."""

    id: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None = None
    created_at: float = field(default_factory=time.monotonic)


class CorrelationRegistry:
    """Owns every pending call and guarantees each settles exactly once.

    Settlement paths (terminal envelope, timeout, drain) all perform
    "clear timer + remove entry + settle future" in a single synchronous step,
    so whichever runs first wins and the others find nothing to do.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._pending: dict[str, PendingOperation] = {}

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def register(self, call_id: str, timeout_ms: float | None) -> asyncio.Future[Any]:
        """Create the future for *call_id* and arm its timeout.

        Raises:
            ValueError: If *call_id* is already pending.
        """
        if call_id in self._pending:
            msg = f"Call id {call_id!r} is already pending"
            raise ValueError(msg)

        loop = self._loop or asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        timer = None
        if timeout_ms is not None:
            timer = loop.call_later(timeout_ms / 1000.0, self._expire, call_id, timeout_ms)
        self._pending[call_id] = PendingOperation(id=call_id, future=future, timer=timer)
        future.add_done_callback(partial(self._forget_cancelled, call_id))
        return future

    def settle(
        self, call_id: str, *, result: Any = _UNSET, error: BaseException | None = None
    ) -> bool:
        """Resolve (``result``) or reject (``error``) the call.

        Returns ``False`` when *call_id* is not pending, which covers late
        envelopes for calls that already timed out and stray ids.
        """
        entry = self._pending.pop(call_id, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            return False
        if error is not None:
            entry.future.set_exception(error)
        else:
            entry.future.set_result(None if result is _UNSET else result)
        return True

    def drain_all(self, make_error: Callable[[str], BaseException]) -> int:
        """Reject and remove every pending call; returns how many were rejected."""
        entries = list(self._pending.values())
        self._pending.clear()
        drained = 0
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(make_error(entry.id))
                drained += 1
        return drained

    def _expire(self, call_id: str, timeout_ms: float) -> None:
        if self.settle(call_id, error=CallTimeoutError(call_id, timeout_ms)):
            logger.debug("Call %s timed out after %sms", call_id, timeout_ms)

    def _forget_cancelled(self, call_id: str, future: asyncio.Future[Any]) -> None:
        """Drop entries whose future was cancelled by its awaiter."""
        if not future.cancelled():
            return
        entry = self._pending.get(call_id)
        if entry is not None and entry.future is future:
            del self._pending[call_id]
            if entry.timer is not None:
                entry.timer.cancel()
            logger.debug("Call %s cancelled by awaiter", call_id)


__all__ = ["CorrelationRegistry", "PendingOperation"]
