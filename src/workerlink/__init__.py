"""workerlink: correlated RPC between an asyncio controller and a worker.

The worker is a child process or a time-sliced emulation on the controller's
own event loop; both look the same through :func:`create`.
"""

from workerlink.client import (
    CallHandle,
    WorkerHandle,
    create,
    create_from_file,
    create_from_fragment,
    create_from_text,
)
from workerlink.config import SchedulerConfig, WorkerOptions
from workerlink.errors import (
    CallCancelledError,
    CallTimeoutError,
    CloneError,
    ConfigurationError,
    EmulationError,
    ExecutionError,
    InitializationError,
    RemoteError,
    TerminationError,
    WorkerLinkError,
)
from workerlink.limits import installed_version
from workerlink.program import ProgramSource
from workerlink.scope import LoopAction

__version__ = installed_version()

__all__ = [
    "CallCancelledError",
    "CallHandle",
    "CallTimeoutError",
    "CloneError",
    "ConfigurationError",
    "EmulationError",
    "ExecutionError",
    "InitializationError",
    "LoopAction",
    "ProgramSource",
    "RemoteError",
    "SchedulerConfig",
    "TerminationError",
    "WorkerHandle",
    "WorkerLinkError",
    "WorkerOptions",
    "create",
    "create_from_file",
    "create_from_fragment",
    "create_from_text",
]
