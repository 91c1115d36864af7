"""Worker process entry point: ``python -m workerlink.runtime``.

The first stdin line must be a ``load`` envelope carrying the program. After
that a reader thread turns request lines into executions (handling ``cancel``
on the spot) and the main thread runs them one at a time, like the message
loop of a real worker.
"""

from __future__ import annotations

import logging
import os
import queue
import sys
import threading
from typing import IO, TYPE_CHECKING

from workerlink.execution import OperationRuntime
from workerlink.limits import LOG_LEVEL_ENV
from workerlink.program import Program, import_into_scope
from workerlink.protocol import Action, decode_line, encode_line
from workerlink.scope import WorkerScope

if TYPE_CHECKING:
    from workerlink.execution import Execution
    from workerlink.protocol import Envelope

logger = logging.getLogger("workerlink.runtime")


class StdioChannel:
    """Thread-safe writer of response envelopes to the protocol stream."""

    def __init__(self, stream: IO[bytes]) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def post(self, envelope: Envelope) -> None:
        line = encode_line(envelope)
        with self._lock:
            self._stream.write(line)
            self._stream.flush()


def read_requests(
    stream: IO[bytes],
    runtime: OperationRuntime,
    inbox: queue.Queue[Execution | None],
) -> None:
    """Reader thread body: route stdin lines until EOF, then post the stop marker."""
    try:
        for raw in iter(stream.readline, b""):
            envelope = decode_line(raw)
            if envelope is None:
                logger.debug("Dropped malformed request line (%d bytes)", len(raw))
                continue
            execution = runtime.accept(envelope)
            if execution is not None:
                inbox.put(execution)
    finally:
        inbox.put(None)


def load_program(stream: IO[bytes]) -> tuple[Program, bool] | None:
    bootstrap = decode_line(stream.readline())
    if bootstrap is None or bootstrap.action != Action.LOAD:
        return None
    payload = bootstrap.payload
    if not isinstance(payload, dict):
        return None
    program = Program(
        name=str(payload.get("name") or "program"),
        text=str(payload.get("text") or ""),
        path=payload.get("path"),
    )
    return program, bool(payload.get("forward_console"))


def main() -> int:
    protocol_out = sys.stdout.buffer
    # Program output must never reach the protocol stream.
    sys.stdout = sys.stderr
    logging.basicConfig(
        stream=sys.stderr,
        level=os.environ.get(LOG_LEVEL_ENV, "WARNING").upper(),
        format="[worker %(process)d] %(levelname)s %(name)s: %(message)s",
    )

    stdin = sys.stdin.buffer
    loaded = load_program(stdin)
    if loaded is None:
        logger.error("Expected a load envelope as the first line")
        return 2
    program, forward_console = loaded

    channel = StdioChannel(protocol_out)
    scope = WorkerScope(program.name, channel.post, importer=import_into_scope)
    if forward_console:
        scope.enable_console_forwarding()
    runtime = OperationRuntime(scope)
    runtime.load(program)

    inbox: queue.Queue[Execution | None] = queue.Queue()
    reader = threading.Thread(
        target=read_requests,
        args=(stdin, runtime, inbox),
        name="workerlink-reader",
        daemon=True,
    )
    reader.start()

    while (execution := inbox.get()) is not None:
        execution.run_slice(None)
    logger.debug("Input closed; worker for %s exiting", program.name)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
