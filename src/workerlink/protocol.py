"""Envelope shape, reserved vocabulary, clone primitive and JSON-line framing."""

from __future__ import annotations

import json
import traceback
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError

from workerlink.errors import CloneError
from workerlink.limits import MAX_LINE_BYTES


class Kind(StrEnum):
    """Reserved response kinds sent from a worker to the controller."""

    RESULT = "result"
    ERROR = "error"
    INIT_ERROR = "init-error"
    PROGRESS_LIVE = "progress-live"
    PROGRESS_DEFERRED = "progress-deferred"
    CONSOLE = "console"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_KINDS


_TERMINAL_KINDS = frozenset({Kind.RESULT, Kind.ERROR, Kind.INIT_ERROR})


class Action(StrEnum):
    """Reserved request actions sent from the controller to a worker."""

    CANCEL = "cancel"
    LOAD = "load"


RESERVED_ACTIONS = frozenset(Action)


class Envelope(BaseModel):
    """The unit of message exchange in both directions.

    ``id`` correlates a request with its progress and terminal responses;
    ``action`` is the operation name on requests and a :class:`Kind` on
    responses; ``payload`` is clonable data.
    """

    model_config = ConfigDict(frozen=True)

    id: StrictStr
    action: StrictStr
    payload: Any = None

    def to_wire(self) -> dict[str, Any]:
        """Return the plain mapping that crosses the boundary."""
        return {"id": self.id, "action": self.action, "payload": self.payload}


def parse_envelope(data: object) -> Envelope | None:
    """Validate an inbound message, returning ``None`` for foreign traffic."""
    if isinstance(data, Envelope):
        return data
    if not isinstance(data, Mapping):
        return None
    try:
        return Envelope.model_validate(dict(data))
    except ValidationError:
        return None


def _check_keys(value: Any) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                msg = f"mapping key {key!r} is not a string"
                raise CloneError(msg)
            _check_keys(item)
    elif isinstance(value, list | tuple):
        for item in value:
            _check_keys(item)


def clone(value: Any) -> Any:
    """Deep-copy *value* under JSON data semantics.

    Tuples arrive as lists. Mappings with non-string keys, anything else that
    JSON cannot represent, and cyclic structures raise :class:`CloneError`.
    """
    try:
        _check_keys(value)
        return json.loads(json.dumps(value, allow_nan=True))
    except (TypeError, ValueError, RecursionError) as exc:
        msg = f"Value cannot cross the worker boundary: {exc}"
        raise CloneError(msg) from exc


def clone_envelope(envelope: Envelope) -> Envelope:
    return Envelope(id=envelope.id, action=envelope.action, payload=clone(envelope.payload))


def encode_line(envelope: Envelope) -> bytes:
    """Serialise an envelope as a single newline-terminated JSON line."""
    try:
        text = json.dumps(envelope.to_wire(), separators=(",", ":"), allow_nan=True)
    except (TypeError, ValueError, RecursionError) as exc:
        msg = f"Envelope {envelope.id}/{envelope.action} cannot be serialised: {exc}"
        raise CloneError(msg) from exc
    return text.encode("utf-8") + b"\n"


def load_line(raw: bytes) -> object | None:
    """Decode one JSON line without validating its shape."""
    if len(raw) > MAX_LINE_BYTES:
        return None
    line = raw.strip()
    if not line:
        return None
    try:
        return json.loads(line.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def decode_line(raw: bytes) -> Envelope | None:
    """Parse one JSON line; malformed, oversized or foreign lines yield ``None``."""
    return parse_envelope(load_line(raw))


def error_detail(exc: BaseException, *, type_name: str | None = None) -> dict[str, str]:
    """Diagnostic payload for ``error`` and ``init-error`` envelopes."""
    name = type_name or type(exc).__name__
    return {
        "type": name,
        "message": str(exc) or name,
        "stack": "".join(traceback.format_exception(exc)),
    }


__all__ = [
    "RESERVED_ACTIONS",
    "Action",
    "Envelope",
    "Kind",
    "clone",
    "clone_envelope",
    "decode_line",
    "encode_line",
    "error_detail",
    "load_line",
    "parse_envelope",
]
