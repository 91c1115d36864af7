"""Worker backends: a real child process or a cooperative in-loop emulation."""

from __future__ import annotations

from workerlink.backends.base import Backend
from workerlink.backends.emulated import Backoff, EmulatedBackend
from workerlink.backends.process import ProcessBackend

__all__ = ["Backend", "Backoff", "EmulatedBackend", "ProcessBackend"]
