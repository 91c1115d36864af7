"""Backend protocol shared by the process and emulated implementations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

    from workerlink.protocol import Envelope

    Receiver = Callable[[object], None]
    ExitCallback = Callable[[int | None], None]


class Backend(Protocol):
    """An execution context that runs named operations.

    ``send`` must never deliver within the calling turn, and inbound messages
    reach the receiver on the controller's event loop in send order.
    """

    @property
    def is_running(self) -> bool:
        """Whether the backend accepts envelopes."""
        ...

    def set_receiver(self, receiver: Receiver) -> None:
        """Install the callback that gets every raw inbound message."""
        ...

    def set_exit_callback(self, callback: ExitCallback) -> None:
        """Install the callback fired when the backend dies on its own."""
        ...

    async def start(self) -> None:
        """Acquire resources and load the program."""
        ...

    def send(self, envelope: Envelope) -> None:
        """Queue *envelope* for asynchronous delivery to the program."""
        ...

    async def shutdown(self) -> None:
        """Release resources. Safe to call more than once."""
        ...


__all__ = ["Backend"]
