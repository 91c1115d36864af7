"""Program sources: where a worker's code comes from and how it is executed."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from workerlink.errors import ConfigurationError, EmulationError
from workerlink.scope import LoopAction

if TYPE_CHECKING:
    from workerlink.scope import WorkerScope

_FENCE_RE = re.compile(
    r"^(?P<fence>`{3,}|~{3,})[ \t]*python[ \t]+(?P<name>[\w.-]+)[ \t]*\n"
    r"(?P<body>.*?)^(?P=fence)[ \t]*$",
    re.MULTILINE | re.DOTALL,
)


@dataclass(frozen=True, slots=True)
class Program:
    """Loaded program text, ready to run against a scope."""

    name: str
    text: str
    path: str | None = None

    def execute(self, scope: WorkerScope) -> None:
        """Run the program with ``worker`` bound to *scope*."""
        code = compile(self.text, self.path or f"<{self.name}>", "exec")
        namespace: dict[str, object] = {
            "__name__": f"workerlink.program.{self.name}",
            "worker": scope,
            "LoopAction": LoopAction,
        }
        if self.path is not None:
            namespace["__file__"] = self.path
        exec(code, namespace)  # noqa: S102


class ProgramSource(BaseModel):
    """Exactly one of ``path``, ``text`` or ``fragment``.

    ``fragment`` has the form ``"document.md#name"`` and selects the fenced
    code block whose info string is ``python name``.
    """

    model_config = ConfigDict(frozen=True)

    path: Path | None = Field(default=None, description="Program file to load")
    text: str | None = Field(default=None, description="Inline program source")
    fragment: str | None = Field(default=None, description="document#name of an embedded block")
    name: str | None = Field(default=None, description="Display name used in logs")

    def load(self) -> Program:
        """Resolve the source to program text.

        Raises:
            ConfigurationError: If zero or several sources are set, or the
                file/fragment cannot be read.
        """
        candidates = (("path", self.path), ("text", self.text), ("fragment", self.fragment))
        provided = [key for key, value in candidates if value]
        if not provided:
            msg = "A program path, text, or fragment must be provided"
            raise ConfigurationError(msg)
        if len(provided) > 1:
            msg = (
                "Ambiguous program source: only one of path, text, fragment allowed "
                f"(got {', '.join(provided)})"
            )
            raise ConfigurationError(msg)

        if self.path is not None:
            return load_program_file(self.path, name=self.name)
        if self.fragment is not None:
            return _load_fragment(self.fragment, name=self.name)
        assert self.text is not None
        return Program(name=self.name or "inline", text=self.text)


def load_program_file(path: str | Path, *, name: str | None = None) -> Program:
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read program file {file_path}: {exc}"
        raise ConfigurationError(msg) from exc
    return Program(name=name or file_path.stem, text=text, path=str(file_path.absolute()))


def extract_fragment(document: str, fragment_name: str) -> str | None:
    """Return the body of the ``python <fragment_name>`` fenced block, if any."""
    for match in _FENCE_RE.finditer(document):
        if match.group("name") == fragment_name:
            return match.group("body")
    return None


def _load_fragment(reference: str, *, name: str | None) -> Program:
    document_path, sep, fragment_name = reference.rpartition("#")
    if not sep or not document_path or not fragment_name:
        msg = f"Fragment reference must look like 'document.md#name', got {reference!r}"
        raise ConfigurationError(msg)
    try:
        document = Path(document_path).read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read document {document_path}: {exc}"
        raise ConfigurationError(msg) from exc
    body = extract_fragment(document, fragment_name)
    if body is None:
        msg = f"Fragment {fragment_name!r} not found in {document_path}"
        raise ConfigurationError(msg)
    return Program(name=name or fragment_name, text=body)


def import_into_scope(scope: WorkerScope, location: str) -> None:
    """Synchronous import used by the process runtime."""
    load_program_file(location).execute(scope)


def refuse_import(scope: WorkerScope, location: str) -> None:
    """Import hook of the emulated backend, which cannot block on external resources."""
    msg = (
        f"Program {scope.name} tried to import {location!r} synchronously; "
        "this requires a real worker process (use_real_backend=True)"
    )
    raise EmulationError(msg)


__all__ = [
    "Program",
    "ProgramSource",
    "extract_fragment",
    "import_into_scope",
    "load_program_file",
    "refuse_import",
]
