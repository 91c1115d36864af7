"""Test helpers package."""

from tests.helpers.fakes import FakeBackend, RecordingPost
from tests.helpers.programs import BROKEN_PROGRAM, EXTRA_PROGRAM, TEST_PROGRAM
from tests.helpers.wait import ci_timeout, drain_loop, wait_until

__all__ = [
    "BROKEN_PROGRAM",
    "EXTRA_PROGRAM",
    "TEST_PROGRAM",
    "FakeBackend",
    "RecordingPost",
    "ci_timeout",
    "drain_loop",
    "wait_until",
]
