"""Exception hierarchy shared by the controller and the worker runtime."""

from __future__ import annotations

from typing import Any


class WorkerLinkError(Exception):
    """Base class for every error raised by workerlink."""


class ConfigurationError(WorkerLinkError):
    """Program source or options are missing, ambiguous, or invalid."""


class CloneError(WorkerLinkError, TypeError):
    """A value cannot cross the envelope boundary."""


class TerminationError(WorkerLinkError):
    """The worker handle was terminated (or its backend exited) before the call settled."""


class CallTimeoutError(WorkerLinkError, TimeoutError):
    """No terminal envelope arrived within the configured timeout."""

    def __init__(self, call_id: str, timeout_ms: float) -> None:
        self.call_id = call_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Call {call_id} timed out after {timeout_ms:g}ms")


class RemoteError(WorkerLinkError):
    """Failure reported by the backend through an envelope.

    ``detail`` is the wire payload: ``{"type", "message", "stack"}``.
    """

    def __init__(self, detail: dict[str, Any] | None) -> None:
        self.detail: dict[str, Any] = dict(detail or {})
        super().__init__(self.message)

    @property
    def message(self) -> str:
        return str(self.detail.get("message") or "Worker error")

    @property
    def remote_type(self) -> str | None:
        value = self.detail.get("type")
        return value if isinstance(value, str) else None

    @property
    def remote_stack(self) -> str | None:
        value = self.detail.get("stack")
        return value if isinstance(value, str) else None


class InitializationError(RemoteError):
    """The worker program failed to load or initialize."""


class ExecutionError(RemoteError):
    """A named operation raised inside the worker."""


class CallCancelledError(ExecutionError):
    """The worker observed a cancel request and stopped the operation."""


class EmulationError(WorkerLinkError):
    """The program used a facility that only a real worker process provides."""


CANCELLED_TYPE = "CallCancelled"


__all__ = [
    "CANCELLED_TYPE",
    "CallCancelledError",
    "CallTimeoutError",
    "CloneError",
    "ConfigurationError",
    "EmulationError",
    "ExecutionError",
    "InitializationError",
    "RemoteError",
    "TerminationError",
    "WorkerLinkError",
]
