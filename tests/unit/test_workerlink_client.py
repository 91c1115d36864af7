"""Unit tests for WorkerHandle dispatch over a fake backend."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeAlias
from unittest.mock import MagicMock

import pytest

from tests.helpers.wait import drain_loop
from workerlink.client import WorkerHandle, create
from workerlink.errors import (
    CallCancelledError,
    CallTimeoutError,
    CloneError,
    ConfigurationError,
    ExecutionError,
    InitializationError,
    TerminationError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from tests.helpers.fakes import FakeBackend

pytestmark = pytest.mark.unit

WorkerFactory: TypeAlias = "Callable[..., WorkerHandle]"


class TestCall:
    """Requests are registered before they are posted and settle exactly once."""

    async def test_result_resolves_call(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()

        call = worker.call("add", {"a": 1, "b": 2})
        fake_backend.reply(call.id, "result", 3)

        assert await call == 3
        assert worker.pending_count == 0

    async def test_ids_are_unique(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()

        calls = [worker.call("echo", i) for i in range(5)]

        assert len({call.id for call in calls}) == 5
        assert [env.id for env in fake_backend.sent] == [call.id for call in calls]
        assert worker.pending_count == 5

    async def test_payload_is_copied_at_call_time(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        payload = {"values": [1]}

        worker.call("sum", payload)
        payload["values"].append(2)

        assert fake_backend.sent[0].payload == {"values": [1]}

    async def test_unclonable_payload_raises_synchronously(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()

        with pytest.raises(CloneError):
            worker.call("echo", object())

        assert fake_backend.sent == []
        assert worker.pending_count == 0

    @pytest.mark.parametrize("action", ["cancel", "load"])
    async def test_reserved_actions_are_refused(
        self, fake_worker: WorkerFactory, action: str
    ) -> None:
        worker = fake_worker()

        with pytest.raises(ValueError, match="reserved"):
            worker.call(action)

    async def test_error_envelope_rejects_with_execution_error(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("fail")

        fake_backend.reply(
            call.id, "error", {"type": "ValueError", "message": "boom", "stack": "trace"}
        )

        with pytest.raises(ExecutionError, match="boom") as exc_info:
            await call
        assert exc_info.value.remote_type == "ValueError"
        assert exc_info.value.remote_stack == "trace"

    async def test_init_error_rejects_with_initialization_error(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("anything")

        fake_backend.reply(call.id, "init-error", {"type": "SyntaxError", "message": "bad"})

        with pytest.raises(InitializationError, match="bad"):
            await call

    async def test_non_mapping_error_payload(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("fail")

        fake_backend.reply(call.id, "error", "plain text")

        with pytest.raises(ExecutionError, match="plain text"):
            await call

    async def test_reentrant_call_from_progress_callback(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        nested: list[Any] = []
        worker: WorkerHandle

        def on_progress(value: Any) -> None:
            nested.append(worker.call("echo", value))

        worker = fake_worker(on_live_progress=on_progress)
        outer = worker.call("count")

        fake_backend.reply(outer.id, "progress-live", "step")
        fake_backend.reply(nested[0].id, "result", "inner")
        fake_backend.reply(outer.id, "result", "outer")

        assert await nested[0] == "inner"
        assert await outer == "outer"


class TestForeignTraffic:
    async def test_malformed_message_changes_nothing(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("echo")

        fake_backend.inject({"action": "x"})

        assert worker.pending_count == 1
        assert not call.done()
        assert worker.endpoint.dropped_count == 1

    async def test_unknown_id_is_ignored(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        on_progress = MagicMock()
        worker = fake_worker(on_live_progress=on_progress)
        call = worker.call("echo")

        fake_backend.reply("999", "result", "stray")
        fake_backend.reply("999", "progress-live", 1)

        assert not call.done()
        on_progress.assert_not_called()

    async def test_unrecognized_kind_is_ignored(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("echo")

        fake_backend.reply(call.id, "mystery", 1)

        assert not call.done()


class TestProgressAndConsole:
    async def test_live_progress_before_result(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        events: list[tuple[str, Any]] = []
        worker = fake_worker(on_live_progress=lambda value: events.append(("live", value)))
        call = worker.call("count")
        call.future.add_done_callback(lambda future: events.append(("done", future.result())))

        fake_backend.reply(call.id, "progress-live", 1)
        fake_backend.reply(call.id, "progress-live", 2)
        fake_backend.reply(call.id, "result", "ok")
        await call
        await drain_loop()

        assert events == [("live", 1), ("live", 2), ("done", "ok")]

    async def test_deferred_progress_delivers_batches(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        on_deferred = MagicMock()
        worker = fake_worker(on_deferred_progress=on_deferred)
        call = worker.call("batched")

        fake_backend.reply(call.id, "progress-deferred", [1, 2, 3])

        on_deferred.assert_called_once_with([1, 2, 3])

    async def test_progress_without_callback_is_harmless(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("count")

        fake_backend.reply(call.id, "progress-live", 1)
        fake_backend.reply(call.id, "result", 1)

        assert await call == 1

    async def test_raising_callback_does_not_break_dispatch(
        self,
        fake_worker: WorkerFactory,
        fake_backend: FakeBackend,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        worker = fake_worker(on_live_progress=MagicMock(side_effect=RuntimeError("oops")))
        call = worker.call("count")

        with caplog.at_level(logging.ERROR, logger="workerlink.client"):
            fake_backend.reply(call.id, "progress-live", 1)
        fake_backend.reply(call.id, "result", "fine")

        assert await call == "fine"
        assert "raised" in caplog.text

    async def test_console_is_delivered_regardless_of_id(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        on_console = MagicMock()
        worker = fake_worker(on_console=on_console)
        assert worker.pending_count == 0

        fake_backend.reply("", "console", {"level": "info", "args": ["hello", 1]})

        on_console.assert_called_once_with("info", ["hello", 1])

    async def test_malformed_console_payload_is_dropped(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        on_console = MagicMock()
        fake_worker(on_console=on_console)

        fake_backend.reply("", "console", "not a mapping")

        on_console.assert_not_called()


class TestTimeout:
    async def test_call_times_out(self, fake_worker: WorkerFactory) -> None:
        worker = fake_worker(timeout_ms=10)
        call = worker.call("spin")

        with pytest.raises(CallTimeoutError):
            await call
        assert worker.pending_count == 0

    async def test_late_result_after_timeout_is_silent(
        self,
        fake_worker: WorkerFactory,
        fake_backend: FakeBackend,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        worker = fake_worker(timeout_ms=10)
        call = worker.call("slow")
        with pytest.raises(CallTimeoutError):
            await call

        with caplog.at_level(logging.WARNING):
            fake_backend.reply(call.id, "result", "late")

        assert worker.pending_count == 0
        assert [record for record in caplog.records if record.levelno >= logging.WARNING] == []

    async def test_timeouts_are_per_call(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker(timeout_ms=30)
        slow = worker.call("slow")
        fast = worker.call("fast")

        fake_backend.reply(fast.id, "result", "fast")

        assert await fast == "fast"
        with pytest.raises(CallTimeoutError):
            await slow


class TestCancel:
    async def test_cancel_posts_cancel_envelope(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("spin")

        assert call.cancel() is True

        assert fake_backend.sent[-1].id == call.id
        assert fake_backend.sent[-1].action == "cancel"
        assert not call.done()

    async def test_cancel_acknowledgement_rejects_call(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("spin")
        call.cancel()

        fake_backend.reply(call.id, "error", {"type": "CallCancelled", "message": "cancelled"})

        with pytest.raises(CallCancelledError):
            await call

    async def test_cancel_after_settle_is_a_no_op(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("echo")
        fake_backend.reply(call.id, "result", None)
        await call

        assert call.cancel() is False
        assert len(fake_backend.sent) == 1

    async def test_awaiter_cancellation_forgets_call(self, fake_worker: WorkerFactory) -> None:
        worker = fake_worker()
        call = worker.call("spin")

        call.future.cancel()
        await drain_loop()

        assert worker.pending_count == 0


class TestTerminate:
    async def test_terminate_rejects_pending_calls(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        calls = [worker.call("spin") for _ in range(3)]

        await worker.terminate()

        for call in calls:
            with pytest.raises(TerminationError):
                await call
        assert fake_backend.shutdown_count == 1
        assert worker.is_terminated

    async def test_call_after_terminate_raises(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        await worker.terminate()

        with pytest.raises(TerminationError):
            worker.call("echo")
        assert fake_backend.sent == []

    async def test_terminate_is_idempotent(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()

        await worker.terminate()
        await worker.terminate()

        assert fake_backend.shutdown_count == 1

    async def test_cancel_after_terminate_is_refused(self, fake_worker: WorkerFactory) -> None:
        worker = fake_worker()
        call = worker.call("spin")
        await worker.terminate()
        with pytest.raises(TerminationError):
            await call

        assert call.cancel() is False

    async def test_backend_exit_drains_pending_calls(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        worker = fake_worker()
        call = worker.call("spin")

        fake_backend.crash(3)

        with pytest.raises(TerminationError, match="exited with code 3"):
            await call
        assert worker.is_terminated
        await drain_loop()
        assert fake_backend.shutdown_count == 1

    async def test_context_manager_terminates(
        self, fake_worker: WorkerFactory, fake_backend: FakeBackend
    ) -> None:
        async with fake_worker() as worker:
            call = worker.call("spin")

        with pytest.raises(TerminationError):
            await call
        assert fake_backend.shutdown_count == 1


class TestCreateValidation:
    """Configuration problems surface before any backend is built."""

    async def test_missing_source(self, monkeypatch: pytest.MonkeyPatch) -> None:
        build = MagicMock()
        monkeypatch.setattr("workerlink.client._build_backend", build)

        with pytest.raises(ConfigurationError):
            await create({})

        build.assert_not_called()

    async def test_ambiguous_source(self, monkeypatch: pytest.MonkeyPatch) -> None:
        build = MagicMock()
        monkeypatch.setattr("workerlink.client._build_backend", build)

        with pytest.raises(ConfigurationError, match="Ambiguous"):
            await create({"text": "x = 1", "fragment": "doc.md#x"})

        build.assert_not_called()

    async def test_invalid_options(self, monkeypatch: pytest.MonkeyPatch) -> None:
        build = MagicMock()
        monkeypatch.setattr("workerlink.client._build_backend", build)

        with pytest.raises(ConfigurationError):
            await create({"text": "x = 1"}, {"timeout_ms": -1})

        build.assert_not_called()

    async def test_unknown_source_field(self) -> None:
        with pytest.raises(ConfigurationError, match="Invalid program source"):
            await create({"text": 5})

    async def test_spawn_failure_becomes_initialization_error(self) -> None:
        with pytest.raises(InitializationError):
            await create(
                {"text": "x = 1"}, python_executable="/nonexistent/python-for-workerlink-tests"
            )
