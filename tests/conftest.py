"""Pytest fixtures for workerlink tests."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest
from hypothesis import Phase, Verbosity, settings

from tests.helpers.fakes import FakeBackend
from tests.helpers.programs import EXTRA_PROGRAM, TEST_PROGRAM

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable
    from pathlib import Path

    from workerlink.client import WorkerHandle


settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)
settings.register_profile(
    "dev",
    max_examples=20,
    deadline=500,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


@pytest.fixture
def fake_backend() -> FakeBackend:
    """A backend that records sent envelopes and lets tests inject replies."""
    return FakeBackend()


@pytest.fixture
async def fake_worker(
    fake_backend: FakeBackend,
) -> AsyncGenerator[Callable[..., WorkerHandle], None]:
    """Factory for started WorkerHandles over the fake backend."""
    from workerlink.client import WorkerHandle
    from workerlink.config import WorkerOptions
    from workerlink.endpoint import Endpoint

    handles: list[WorkerHandle] = []

    def _factory(**options: object) -> WorkerHandle:
        handle = WorkerHandle(
            Endpoint(fake_backend), WorkerOptions.from_mapping(options), name="fake"
        )
        fake_backend.running = True
        handles.append(handle)
        return handle

    yield _factory
    for handle in handles:
        await handle.terminate()


@pytest.fixture
def program_file(tmp_path: Path) -> Path:
    """The shared test program written to disk."""
    path = tmp_path / "tasks.py"
    path.write_text(TEST_PROGRAM, encoding="utf-8")
    return path


@pytest.fixture
def extra_program_file(tmp_path: Path) -> Path:
    """A second program that ``load_more`` imports at runtime."""
    path = tmp_path / "extra.py"
    path.write_text(EXTRA_PROGRAM, encoding="utf-8")
    return path
