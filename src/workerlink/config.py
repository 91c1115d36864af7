"""Worker options: callbacks, timeout and emulated scheduler tuning."""

from __future__ import annotations

import tomllib
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator

from workerlink.errors import ConfigurationError
from workerlink.limits import (
    ABORT_CHECK_INTERVAL,
    BACKOFF_CAP_MS,
    BACKOFF_FLOOR_MS,
    BACKOFF_RATIO,
    DEFAULT_TIMEOUT_MS,
    SLICE_BUDGET_MS,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path


class SchedulerConfig(BaseModel):
    """Time-slicing parameters of the emulated backend."""

    slice_budget_ms: float = Field(
        default=SLICE_BUDGET_MS, gt=0, description="Wall-clock budget of one slice"
    )
    backoff_floor_ms: float = Field(
        default=BACKOFF_FLOOR_MS, ge=0, description="Delay before the second slice of a call"
    )
    backoff_ratio: float = Field(
        default=BACKOFF_RATIO, ge=1.0, description="Growth factor of the inter-slice delay"
    )
    backoff_cap_ms: float = Field(
        default=BACKOFF_CAP_MS, ge=0, description="Upper bound of the inter-slice delay"
    )
    abort_check_interval: int = Field(
        default=ABORT_CHECK_INTERVAL, ge=1, description="Steps between abort-flag reads"
    )

    @field_validator("backoff_cap_ms")
    @classmethod
    def validate_cap(cls, value: float, info: ValidationInfo) -> float:
        floor = info.data.get("backoff_floor_ms", BACKOFF_FLOOR_MS)
        return max(value, floor)


class WorkerOptions(BaseModel):
    """Options accepted by :func:`workerlink.create`."""

    use_real_backend: bool = Field(
        default=True, description="Run in a child process; False emulates on the event loop"
    )
    timeout_ms: float = Field(
        default=DEFAULT_TIMEOUT_MS, gt=0, description="Per-call timeout in milliseconds"
    )
    on_live_progress: Callable[[Any], None] | None = Field(default=None, exclude=True)
    on_deferred_progress: Callable[[Any], None] | None = Field(default=None, exclude=True)
    on_console: Callable[[str, list[Any]], None] | None = Field(default=None, exclude=True)
    forward_console: bool | None = Field(
        default=None, description="Forward program console calls (default: when on_console is set)"
    )
    python_executable: str | None = Field(
        default=None, description="Interpreter for the worker process (default: sys.executable)"
    )
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    @property
    def console_forwarding(self) -> bool:
        if self.forward_console is None:
            return self.on_console is not None
        return self.forward_console

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None = None, **overrides: Any) -> WorkerOptions:
        """Validate *data* merged with *overrides*, raising ConfigurationError."""
        merged = {**(data or {}), **overrides}
        try:
            return cls.model_validate(merged)
        except ValidationError as exc:
            msg = f"Invalid worker options: {exc}"
            raise ConfigurationError(msg) from exc

    @classmethod
    def load(cls, config_path: Path, **overrides: Any) -> WorkerOptions:
        """Load the ``[worker]`` table of a TOML file; callbacks come from *overrides*."""
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            msg = f"Cannot load worker options from {config_path}: {exc}"
            raise ConfigurationError(msg) from exc
        return cls.from_mapping(data.get("worker", {}), **overrides)


__all__ = ["SchedulerConfig", "WorkerOptions"]
