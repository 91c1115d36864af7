"""Real backend: the program runs in a child Python process speaking JSON lines."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from typing import TYPE_CHECKING

from workerlink.limits import DEBUG_BUILD, LOG_LEVEL_ENV, SHUTDOWN_TIMEOUT, SUBPROCESS_LIMIT
from workerlink.protocol import Action, Envelope, encode_line, load_line

if TYPE_CHECKING:
    from workerlink.backends.base import ExitCallback, Receiver
    from workerlink.program import Program

logger = logging.getLogger(__name__)

RUNTIME_MODULE = "workerlink.runtime"


class ProcessBackend:
    """Adapter over a genuinely parallel worker process.

    The child is ``<python> -m workerlink.runtime``. Its stdin carries requests
    (the first line is a ``load`` envelope with the program), its stdout carries
    responses, and its stderr is inherited so worker-side logging stays visible.
    """

    def __init__(
        self,
        program: Program,
        *,
        forward_console: bool = False,
        python_executable: str | None = None,
    ) -> None:
        self._program = program
        self._forward_console = forward_console
        self._python = python_executable or sys.executable
        self._process: asyncio.subprocess.Process | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._receiver: Receiver | None = None
        self._exit_callback: ExitCallback | None = None
        self._closing = False

    @property
    def is_running(self) -> bool:
        return (
            not self._closing and self._process is not None and self._process.returncode is None
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    def set_receiver(self, receiver: Receiver) -> None:
        self._receiver = receiver

    def set_exit_callback(self, callback: ExitCallback) -> None:
        self._exit_callback = callback

    async def start(self) -> None:
        if self._process is not None:
            msg = "Worker process already started"
            raise RuntimeError(msg)

        env = os.environ.copy()
        env.setdefault(LOG_LEVEL_ENV, "DEBUG" if DEBUG_BUILD else "WARNING")
        PIPE = asyncio.subprocess.PIPE
        self._process = await asyncio.create_subprocess_exec(
            self._python,
            "-m",
            RUNTIME_MODULE,
            stdin=PIPE,
            stdout=PIPE,
            stderr=None,
            env=env,
            limit=SUBPROCESS_LIMIT,
        )
        logger.info(
            "Worker process started for program %s with PID %s",
            self._program.name,
            self._process.pid,
        )
        self._write(
            Envelope(
                id="",
                action=Action.LOAD,
                payload={
                    "name": self._program.name,
                    "text": self._program.text,
                    "path": self._program.path,
                    "forward_console": self._forward_console,
                },
            )
        )
        self._read_task = asyncio.create_task(
            self._read_loop(), name=f"workerlink-reader-{self._process.pid}"
        )

    def send(self, envelope: Envelope) -> None:
        if not self.is_running:
            logger.warning(
                "Dropped %s envelope for call %s: worker process is not running",
                envelope.action,
                envelope.id,
            )
            return
        self._write(envelope)

    def _write(self, envelope: Envelope) -> None:
        assert self._process is not None and self._process.stdin is not None
        try:
            self._process.stdin.write(encode_line(envelope))
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Worker process pipe closed while sending %s: %s", envelope.id, exc)

    async def _read_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError:
                logger.warning("Worker process sent a line over the framing limit; dropped")
                continue
            if not line:
                break
            data = load_line(line)
            if self._receiver is not None:
                self._receiver(data if data is not None else line)

        returncode = await self._process.wait()
        if self._closing:
            return
        logger.warning(
            "Worker process for program %s exited unexpectedly (code %s)",
            self._program.name,
            returncode,
        )
        if self._exit_callback is not None:
            self._exit_callback(returncode)

    async def shutdown(self) -> None:
        if self._closing:
            return
        self._closing = True
        process = self._process
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                with contextlib.suppress(OSError):
                    process.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=SHUTDOWN_TIMEOUT)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._read_task
        if process is not None:
            logger.info("Worker process %s stopped (code %s)", process.pid, process.returncode)


__all__ = ["ProcessBackend"]
