"""Public RPC surface: create a worker, call named operations, terminate it."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from workerlink.backends.emulated import EmulatedBackend
from workerlink.backends.process import ProcessBackend
from workerlink.config import WorkerOptions
from workerlink.endpoint import Endpoint
from workerlink.errors import (
    CANCELLED_TYPE,
    CallCancelledError,
    ConfigurationError,
    ExecutionError,
    InitializationError,
    RemoteError,
    TerminationError,
)
from workerlink.program import ProgramSource
from workerlink.protocol import RESERVED_ACTIONS, Action, Envelope, Kind, clone, error_detail
from workerlink.registry import CorrelationRegistry

if TYPE_CHECKING:
    from collections.abc import Callable, Generator, Mapping
    from pathlib import Path

    from workerlink.backends.base import Backend
    from workerlink.program import Program

logger = logging.getLogger(__name__)


def _remote_error(kind: str, payload: Any) -> RemoteError:
    detail = payload if isinstance(payload, dict) else {"message": str(payload)}
    if kind == Kind.INIT_ERROR:
        return InitializationError(detail)
    if detail.get("type") == CANCELLED_TYPE:
        return CallCancelledError(detail)
    return ExecutionError(detail)


class CallHandle:
    """One in-flight call: await it for the result, or ``cancel()`` it.

    Usage::

        call = worker.call("pi", {"iterations": 100_000})
        result = await call
    """

    def __init__(
        self,
        call_id: str,
        action: str,
        future: asyncio.Future[Any],
        request_cancel: Callable[[str], bool],
    ) -> None:
        self.id = call_id
        self.action = action
        self._future = future
        self._request_cancel = request_cancel

    @property
    def future(self) -> asyncio.Future[Any]:
        return self._future

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        """Ask the worker to stop this call.

        Fire-and-forget: returns whether a cancel envelope was posted. The
        future settles when the worker acknowledges (``CallCancelledError``) or
        when the operation finishes first.
        """
        if self._future.done():
            return False
        return self._request_cancel(self.id)

    def __await__(self) -> Generator[Any, None, Any]:
        return self._future.__await__()

    def __repr__(self) -> str:
        state = "done" if self._future.done() else "pending"
        return f"CallHandle(id={self.id!r}, action={self.action!r}, {state})"


class WorkerHandle:
    """Controller-side handle returned by :func:`create`.

    Usage::

        async with await create(ProgramSource(path="tasks.py")) as worker:
            total = await worker.call("sum", {"values": [1, 2, 3]})
    """

    def __init__(self, endpoint: Endpoint, options: WorkerOptions, *, name: str) -> None:
        self.name = name
        self._endpoint = endpoint
        self._options = options
        self._registry = CorrelationRegistry()
        self._ids = itertools.count()
        self._terminated = False
        self._exit_task: asyncio.Task[None] | None = None
        endpoint.on_envelope(self._dispatch)
        endpoint.on_exit(self._on_backend_exit)

    async def __aenter__(self) -> WorkerHandle:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.terminate()

    @property
    def options(self) -> WorkerOptions:
        return self._options

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def is_terminated(self) -> bool:
        return self._terminated

    @property
    def pending_count(self) -> int:
        return len(self._registry)

    def call(self, action: str, payload: Any = None) -> CallHandle:
        """Dispatch *action* with *payload* and return its :class:`CallHandle`.

        Raises:
            TerminationError: If the handle was terminated; no backend is contacted.
            CloneError: If *payload* cannot cross the worker boundary.
            ValueError: If *action* is a reserved control action.
        """
        if self._terminated:
            msg = f"Worker {self.name} already terminated"
            raise TerminationError(msg)
        if action in RESERVED_ACTIONS:
            msg = f"{action!r} is a reserved action"
            raise ValueError(msg)

        payload = clone(payload)
        call_id = str(next(self._ids))
        future = self._registry.register(call_id, self._options.timeout_ms)
        self._endpoint.post_envelope(Envelope(id=call_id, action=action, payload=payload))
        return CallHandle(call_id, action, future, self._request_cancel)

    async def terminate(self) -> None:
        """Reject every pending call with ``TerminationError``, then stop the backend."""
        if not self._terminated:
            self._terminated = True
            drained = self._registry.drain_all(
                lambda call_id: TerminationError(f"Worker terminated before call {call_id} settled")
            )
            if drained:
                logger.info("Terminated worker %s with %d pending call(s)", self.name, drained)
        await self._endpoint.shutdown()

    def _request_cancel(self, call_id: str) -> bool:
        if self._terminated or call_id not in self._registry:
            return False
        return self._endpoint.post_envelope(Envelope(id=call_id, action=Action.CANCEL))

    def _dispatch(self, envelope: Envelope) -> None:
        kind = envelope.action
        if kind == Kind.CONSOLE:
            self._deliver_console(envelope.payload)
            return
        if envelope.id not in self._registry:
            logger.debug("Ignoring %s envelope for call %s: not pending", kind, envelope.id)
            return

        match kind:
            case Kind.PROGRESS_LIVE:
                self._invoke(self._options.on_live_progress, envelope.payload)
            case Kind.PROGRESS_DEFERRED:
                self._invoke(self._options.on_deferred_progress, envelope.payload)
            case Kind.RESULT:
                self._registry.settle(envelope.id, result=envelope.payload)
            case Kind.ERROR | Kind.INIT_ERROR:
                self._registry.settle(envelope.id, error=_remote_error(kind, envelope.payload))
            case _:
                logger.debug("Dropped envelope with unrecognized kind %r", kind)

    def _deliver_console(self, payload: Any) -> None:
        if self._options.on_console is None:
            return
        if not isinstance(payload, dict):
            logger.debug("Dropped malformed console payload: %.200r", payload)
            return
        args = payload.get("args")
        self._invoke(
            self._options.on_console,
            str(payload.get("level", "log")),
            args if isinstance(args, list) else [args],
        )

    @staticmethod
    def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Worker callback %r raised", callback)

    def _on_backend_exit(self, returncode: int | None) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._registry.drain_all(
            lambda call_id: TerminationError(
                f"Worker process exited with code {returncode} before call {call_id} settled"
            )
        )
        self._exit_task = asyncio.get_running_loop().create_task(self._endpoint.shutdown())


def _build_backend(program: Program, options: WorkerOptions) -> Backend:
    if options.use_real_backend:
        return ProcessBackend(
            program,
            forward_console=options.console_forwarding,
            python_executable=options.python_executable,
        )
    return EmulatedBackend(
        program,
        scheduler=options.scheduler,
        forward_console=options.console_forwarding,
    )


def _coerce_options(
    options: WorkerOptions | Mapping[str, Any] | None, overrides: Mapping[str, Any]
) -> WorkerOptions:
    if isinstance(options, WorkerOptions):
        if not overrides:
            return options
        base = {field: getattr(options, field) for field in WorkerOptions.model_fields}
        return WorkerOptions.from_mapping(base, **overrides)
    return WorkerOptions.from_mapping(options, **overrides)


def _coerce_source(source: ProgramSource | Mapping[str, Any]) -> ProgramSource:
    if isinstance(source, ProgramSource):
        return source
    try:
        return ProgramSource.model_validate(source)
    except ValidationError as exc:
        msg = f"Invalid program source: {exc}"
        raise ConfigurationError(msg) from exc


async def create(
    source: ProgramSource | Mapping[str, Any],
    options: WorkerOptions | Mapping[str, Any] | None = None,
    **overrides: Any,
) -> WorkerHandle:
    """Load a program and start a worker for it.

    Args:
        source: Exactly one of ``path``, ``text`` or ``fragment``.
        options: ``WorkerOptions`` or a mapping of its fields.
        **overrides: Individual option fields, applied on top of *options*.

    Raises:
        ConfigurationError: For a missing/ambiguous source or invalid options,
            before any backend is constructed.
        InitializationError: If the worker process cannot be spawned.
    """
    program = _coerce_source(source).load()
    resolved = _coerce_options(options, overrides)
    endpoint = Endpoint(_build_backend(program, resolved))
    handle = WorkerHandle(endpoint, resolved, name=program.name)
    try:
        await endpoint.start()
    except OSError as exc:
        await handle.terminate()
        raise InitializationError(error_detail(exc)) from exc
    logger.debug(
        "Worker %s ready (backend=%s)",
        program.name,
        "process" if resolved.use_real_backend else "emulated",
    )
    return handle


async def create_from_file(
    path: str | Path, options: WorkerOptions | Mapping[str, Any] | None = None, **overrides: Any
) -> WorkerHandle:
    return await create(ProgramSource(path=path), options, **overrides)


async def create_from_text(
    text: str, options: WorkerOptions | Mapping[str, Any] | None = None, **overrides: Any
) -> WorkerHandle:
    return await create(ProgramSource(text=text), options, **overrides)


async def create_from_fragment(
    reference: str, options: WorkerOptions | Mapping[str, Any] | None = None, **overrides: Any
) -> WorkerHandle:
    """Create a worker from a fenced block, e.g. ``"README.md#pi"``."""
    return await create(ProgramSource(fragment=reference), options, **overrides)


__all__ = [
    "CallHandle",
    "WorkerHandle",
    "create",
    "create_from_file",
    "create_from_fragment",
    "create_from_text",
]
