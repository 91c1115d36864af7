"""The worker-side program API: the ``worker`` global and per-call context.

A program registers named operations at load time::

    @worker.operation("add")
    def add(payload, ctx):
        return payload["a"] + payload["b"]

Generator operations yield at safe points; each ``yield`` is one scheduler
step, which is where the emulated backend may end a time slice and where
cancellation is observed::

    @worker.operation("count")
    def count(payload, ctx):
        for i in range(payload["n"]):
            ctx.progress(i)
            yield
        return payload["n"]

Loop tasks split the same idea into ``setup``/``loop``/``teardown``.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeAlias

from workerlink.errors import CloneError
from workerlink.limits import DEFERRED_BATCH_SIZE
from workerlink.protocol import Envelope, Kind, clone

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

    PostFn = Callable[[Envelope], None]
    Importer = Callable[["WorkerScope", str], None]

Step: TypeAlias = "Generator[None, None, Any]"


class LoopAction(StrEnum):
    """Return value of a loop task's ``loop`` function."""

    CONTINUE = "continue"
    TERMINATE = "terminate"


@dataclass(slots=True)
class AbortHandle:
    """Advisory cancellation flag for one call, read by its execution only."""

    id: str
    aborted: bool = False


class OperationContext:
    """Handed to every operation alongside its payload."""

    def __init__(self, call_id: str, action: str, abort: AbortHandle, scope: WorkerScope) -> None:
        self.call_id = call_id
        self.action = action
        self._abort = abort
        self._scope = scope
        self._deferred: list[Any] = []

    @property
    def aborted(self) -> bool:
        """Whether a cancel request for this call has arrived."""
        return self._abort.aborted

    @property
    def console(self) -> Console:
        return self._scope.console

    def progress(self, value: Any) -> None:
        """Send a live progress update immediately."""
        if self.aborted:
            return
        self._scope.post(self.call_id, Kind.PROGRESS_LIVE, value)

    def defer(self, value: Any) -> None:
        """Queue a progress update for the next batched delivery."""
        if self.aborted:
            return
        self._deferred.append(clone(value))
        if len(self._deferred) >= DEFERRED_BATCH_SIZE:
            self.flush()

    def flush(self) -> None:
        """Send queued deferred progress as one batch."""
        if not self._deferred or self.aborted:
            self._deferred.clear()
            return
        batch, self._deferred = self._deferred, []
        self._scope.post(self.call_id, Kind.PROGRESS_DEFERRED, batch)


class Operation:
    """A named operation backed by a plain or generator function."""

    def __init__(self, name: str, fn: Callable[[Any, OperationContext], Any]) -> None:
        self.name = name
        self.fn = fn

    def steps(self, payload: Any, ctx: OperationContext) -> Step:
        result = self.fn(payload, ctx)
        if inspect.isgenerator(result):
            result = yield from result
        return result


class LoopTask(Operation):
    """``setup`` once, ``loop`` until it returns :attr:`LoopAction.TERMINATE`, ``teardown`` once."""

    def __init__(
        self,
        name: str,
        setup: Callable[[Any, OperationContext], Any] | None,
        loop: Callable[[Any, OperationContext], LoopAction | None],
        teardown: Callable[[Any, OperationContext], Any] | None = None,
    ) -> None:
        super().__init__(name, loop)
        self.setup = setup
        self.loop = loop
        self.teardown = teardown

    def steps(self, payload: Any, ctx: OperationContext) -> Step:
        state = self.setup(payload, ctx) if self.setup is not None else payload
        yield
        while self.loop(state, ctx) != LoopAction.TERMINATE:
            yield
        if self.teardown is None:
            return state
        return self.teardown(state, ctx)


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "log": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _console_arg(value: Any) -> Any:
    try:
        return clone(value)
    except CloneError:
        return repr(value)


class ForwardingHandler(logging.Handler):
    """Hands records of the program logger to the console forwarder.

    Records emitted by :class:`Console` itself are skipped; the console forwards
    those with their original arguments.
    """

    def __init__(self, forward: Callable[[str, list[Any]], None]) -> None:
        super().__init__()
        self._forward = forward

    def emit(self, record: logging.LogRecord) -> None:
        if hasattr(record, "console_level"):
            return
        try:
            self._forward(record.levelname.lower(), [record.getMessage()])
        except Exception:
            self.handleError(record)


class Console:
    """Program-facing console.

    Every call is logged locally through ``workerlink.program.<name>``; once
    forwarding is installed it is also handed to the forwarder, together with
    whatever the program logs through that logger directly.
    """

    def __init__(self, program_name: str) -> None:
        self._logger = logging.getLogger(f"workerlink.program.{program_name}")
        self._forward: Callable[[str, list[Any]], None] | None = None
        self._handler: ForwardingHandler | None = None

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    @property
    def forwarding(self) -> bool:
        return self._forward is not None

    def install_forwarding(self, forward: Callable[[str, list[Any]], None]) -> bool:
        """Install *forward* once; later installs are ignored and return ``False``."""
        if self._forward is not None:
            return False
        self._forward = forward
        self._handler = ForwardingHandler(forward)
        self._logger.addHandler(self._handler)
        return True

    def remove_forwarding(self) -> None:
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
        self._handler = None
        self._forward = None

    def debug(self, *args: object) -> None:
        self._emit("debug", args)

    def info(self, *args: object) -> None:
        self._emit("info", args)

    def log(self, *args: object) -> None:
        self._emit("log", args)

    def warning(self, *args: object) -> None:
        self._emit("warning", args)

    warn = warning

    def error(self, *args: object) -> None:
        self._emit("error", args)

    def _emit(self, level: str, args: tuple[object, ...]) -> None:
        self._logger.log(
            _LEVELS[level], " ".join(str(arg) for arg in args), extra={"console_level": level}
        )
        if self._forward is not None:
            self._forward(level, [_console_arg(arg) for arg in args])


class WorkerScope:
    """The ``worker`` global bound while a program is loaded and run."""

    def __init__(self, name: str, post: PostFn, *, importer: Importer) -> None:
        self.name = name
        self.operations: dict[str, Operation] = {}
        self.console = Console(name)
        self.current_call_id = ""
        self._post = post
        self._importer = importer

    @property
    def logger(self) -> logging.Logger:
        """Program logger; its records are forwarded along with console calls."""
        return self.console.logger

    def operation(
        self, name: str | None = None
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering a function under *name* (default: its ``__name__``)."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(name or fn.__name__, fn)
            return fn

        return decorator

    def register(self, name: str, fn: Callable[[Any, OperationContext], Any]) -> None:
        self._add(Operation(name, fn))

    def loop_task(
        self,
        name: str,
        *,
        loop: Callable[[Any, OperationContext], LoopAction | None],
        setup: Callable[[Any, OperationContext], Any] | None = None,
        teardown: Callable[[Any, OperationContext], Any] | None = None,
    ) -> None:
        self._add(LoopTask(name, setup, loop, teardown))

    def post(self, call_id: str, action: str, payload: Any = None) -> None:
        """Send an envelope to the controller; *payload* is deep-copied."""
        self._post(Envelope(id=call_id, action=str(action), payload=clone(payload)))

    def import_program(self, location: str) -> None:
        """Synchronously load another program file into this scope."""
        self._importer(self, location)

    def enable_console_forwarding(self) -> bool:
        return self.console.install_forwarding(self._forward_console)

    def _forward_console(self, level: str, args: list[Any]) -> None:
        self.post(self.current_call_id, Kind.CONSOLE, {"level": level, "args": args})

    def _add(self, operation: Operation) -> None:
        if operation.name in self.operations:
            msg = f"Operation {operation.name!r} is already registered"
            raise ValueError(msg)
        self.operations[operation.name] = operation


__all__ = [
    "AbortHandle",
    "Console",
    "ForwardingHandler",
    "LoopAction",
    "LoopTask",
    "Operation",
    "OperationContext",
    "WorkerScope",
]
