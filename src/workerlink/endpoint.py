"""Endpoint: the controller's single, backend-agnostic channel to a worker."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from workerlink.protocol import clone_envelope, parse_envelope

if TYPE_CHECKING:
    from collections.abc import Callable

    from workerlink.backends.base import Backend, ExitCallback
    from workerlink.protocol import Envelope

    EnvelopeHandler = Callable[[Envelope], None]

logger = logging.getLogger(__name__)


class Endpoint:
    """Wraps a backend with clone-on-send, inbound validation and one dispatcher.

    Outbound envelopes are deep-copied before the backend sees them, and the
    backend delivers them asynchronously, so a caller can always register a
    pending call right after posting. Inbound messages without a string ``id``
    and ``action`` are dropped.
    """

    def __init__(self, backend: Backend) -> None:
        self._backend = backend
        self._handler: EnvelopeHandler | None = None
        self._closed = False
        self.dropped_count = 0
        backend.set_receiver(self._receive)

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def is_closed(self) -> bool:
        return self._closed

    def on_envelope(self, handler: EnvelopeHandler) -> None:
        """Subscribe the dispatcher; only one is allowed."""
        if self._handler is not None:
            msg = "Endpoint already has an envelope handler"
            raise RuntimeError(msg)
        self._handler = handler

    def on_exit(self, callback: ExitCallback) -> None:
        self._backend.set_exit_callback(callback)

    async def start(self) -> None:
        await self._backend.start()

    def post_envelope(self, envelope: Envelope) -> bool:
        """Send a copy of *envelope*; returns ``False`` once the endpoint is shut down."""
        if self._closed:
            logger.warning(
                "Refused %s envelope for call %s: endpoint is shut down",
                envelope.action,
                envelope.id,
            )
            return False
        self._backend.send(clone_envelope(envelope))
        logger.debug("Posted %s envelope for call %s", envelope.action, envelope.id)
        return True

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._backend.shutdown()

    def _receive(self, data: object) -> None:
        if self._closed:
            return
        envelope = parse_envelope(data)
        if envelope is None:
            self.dropped_count += 1
            logger.debug("Dropped malformed message from worker: %.200r", data)
            return
        if self._handler is None:
            logger.debug("No handler for %s envelope %s", envelope.action, envelope.id)
            return
        self._handler(envelope)


__all__ = ["Endpoint"]
