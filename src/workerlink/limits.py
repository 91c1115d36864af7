"""Numeric limits, timeouts and scheduler defaults - no circular dependencies."""

from __future__ import annotations

import os
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version


@lru_cache(maxsize=1)
def installed_version() -> str:
    """Distribution version from package metadata, or ``"dev"`` for a source checkout."""
    try:
        return version("workerlink")
    except PackageNotFoundError:
        return "dev"


def _is_debug_build() -> bool:
    """Check if debug logging should be the default.

    Debug mode is enabled when WORKERLINK_DEBUG is set to "1" or "true", or
    when the installed version is a pre-release (dev, a, b, rc).
    """
    env_debug = os.environ.get("WORKERLINK_DEBUG", "").lower()
    if env_debug in ("1", "true"):
        return True
    if env_debug in ("0", "false"):
        return False

    version_lower = installed_version().lower()
    return any(indicator in version_lower for indicator in ("dev", "a", "b", "rc"))


DEBUG_BUILD: bool = _is_debug_build()
"""True for pre-release builds or when WORKERLINK_DEBUG is set."""

LOG_LEVEL_ENV = "WORKERLINK_LOG_LEVEL"


DEFAULT_TIMEOUT_MS = 30000
SHUTDOWN_TIMEOUT = 5.0


# Emulated scheduler
SLICE_BUDGET_MS = 20.0
BACKOFF_FLOOR_MS = 10.0
BACKOFF_RATIO = 1.618
BACKOFF_CAP_MS = 500.0
ABORT_CHECK_INTERVAL = 256


DEFERRED_BATCH_SIZE = 50
MAX_LINE_BYTES = 16 * 1024 * 1024  # 16 MiB per JSON line
SUBPROCESS_LIMIT = MAX_LINE_BYTES + 1  # Include trailing newline separator.
