"""Tests for beebridge.core.coordinator: admission control and routing.

The worker process is replaced by :class:`FakeWorker`, an in-memory object
with the same surface as :class:`~beebridge.core.worker.WorkerProcess`.
Tests push worker output with :meth:`FakeWorker.emit` and observe the
session the coordinator routes it to.
"""

from __future__ import annotations

import itertools
import queue
import threading
import time

import pytest

from beebridge.core.coordinator import SessionCoordinator
from beebridge.core.errors import (
    AlreadyActiveError,
    DecodeError,
    LaunchError,
    NotActiveError,
    ValidationError,
    WriteError,
)
from beebridge.core.models import Cancelled, Completed, GenerationRequest, SessionState

_pids = itertools.count(1000)


class FakeWorker:
    def __init__(self, argv, cwd=None, hold_writes=False):
        self.argv = list(argv)
        self.cwd = cwd
        self.pid = next(_pids)
        self.sent: list[str] = []
        self.returncode: int | None = None
        self.fail_writes = False
        self.terminated = threading.Event()
        self.writing = threading.Event()
        self.write_gate = threading.Event()
        if not hold_writes:
            self.write_gate.set()
        self._output: queue.Queue = queue.Queue()

    def send(self, line: str) -> None:
        # Blocks like a full pipe until the gate opens or the worker dies.
        self.writing.set()
        self.write_gate.wait()
        if self.fail_writes or self.returncode is not None:
            raise WriteError("Worker input pipe is closed")
        self.sent.append(line)

    def lines(self):
        while True:
            item = self._output.get()
            if item is None:
                return
            yield item

    def emit(self, line: str) -> None:
        self._output.put(line)

    def exit(self, code: int) -> None:
        self.returncode = code
        self.write_gate.set()
        self._output.put(None)

    def wait(self, timeout=None) -> int | None:
        return self.returncode

    def terminate(self, grace_period: float = 5.0) -> int | None:
        if self.returncode is None:
            self.exit(-15)
        self.terminated.set()
        return self.returncode

    @property
    def is_running(self) -> bool:
        return self.returncode is None


class FakeFactory:
    def __init__(self):
        self.workers: list[FakeWorker] = []
        self.error: Exception | None = None
        self.hold_writes = False

    def __call__(self, argv, cwd=None) -> FakeWorker:
        if self.error is not None:
            raise self.error
        worker = FakeWorker(argv, cwd, hold_writes=self.hold_writes)
        self.workers.append(worker)
        return worker

    @property
    def last(self) -> FakeWorker:
        return self.workers[-1]


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def coordinator(test_config, factory):
    c = SessionCoordinator(test_config, worker_factory=factory)
    yield c
    c.shutdown()


def request(**overrides) -> GenerationRequest:
    values = dict(prompt="a cat", num_inference_steps=10)
    values.update(overrides)
    return GenerationRequest(**values)


class TestStartGeneration:
    """Test admission into the single session slot."""

    def test_start_spawns_worker_and_sends_command(self, coordinator, factory, test_config):
        session = coordinator.start_generation(request())
        assert session.state is SessionState.INITIALIZING
        assert factory.last.argv == test_config.worker_command()
        assert len(factory.last.sent) == 1
        assert factory.last.sent[0].startswith("b2py t2im ")

    def test_accepts_raw_mapping(self, coordinator):
        session = coordinator.start_generation({"prompt": "a cat", "num_inference_steps": 10})
        assert session.request.prompt == "a cat"

    def test_invalid_request_leaves_slot_empty(self, coordinator, factory):
        with pytest.raises(ValidationError):
            coordinator.start_generation({"prompt": "a cat", "img_width": 8000})
        assert coordinator.active_session is None
        assert factory.workers == []

    def test_overlong_prompt_rejected(self, coordinator):
        with pytest.raises(ValidationError, match="too long"):
            coordinator.start_generation(request(prompt="x" * 100001))

    def test_second_start_while_running_rejected(self, coordinator):
        first = coordinator.start_generation(request())
        with pytest.raises(AlreadyActiveError, match="still"):
            coordinator.start_generation(request())
        assert coordinator.active_session is first

    def test_start_before_clear_rejected(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.emit('sdbk nwim {"generated_img_path": "/out/1.png"}')
        assert session.wait(2.0)
        with pytest.raises(AlreadyActiveError, match="has not been cleared"):
            coordinator.start_generation(request())

    def test_worker_reused_after_clear(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.emit('sdbk nwim {"generated_img_path": "/out/1.png"}')
        assert session.wait(2.0)
        coordinator.clear_session()

        coordinator.start_generation(request())
        assert len(factory.workers) == 1
        assert len(factory.last.sent) == 2

    def test_launch_error_yields_failed_session(self, coordinator, factory):
        factory.error = LaunchError("No such file: backend.py")
        session = coordinator.start_generation(request())
        assert session.state is SessionState.FAILED
        assert session.outcome.kind == "LaunchError"
        assert "backend.py" in session.outcome.error

    def test_write_error_on_start_yields_failed_session(self, coordinator, factory):
        coordinator.start_generation(request())
        factory.last.emit('sdbk nwim {"generated_img_path": "/out/1.png"}')
        assert coordinator.active_session.wait(2.0)
        coordinator.clear_session()

        factory.last.fail_writes = True
        session = coordinator.start_generation(request())
        assert session.state is SessionState.FAILED
        assert session.outcome.kind == "WriteError"
        assert factory.last.terminated.wait(2.0)
        assert not coordinator.is_worker_running


class TestRouting:
    """Test delivery of worker output to the active session."""

    def test_progress_routed(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.emit('sdbk dnpr {"current_step": 4, "total_steps": 10}')
        assert wait_for(lambda: session.snapshot().current_step == 4)
        assert coordinator.query_progress().state is SessionState.RUNNING

    def test_completion(self, coordinator, factory):
        session = coordinator.start_generation(request(num_imgs=2))
        factory.last.emit("Loading pipeline...")
        factory.last.emit('sdbk nwim {"generated_img_paths": ["/a.png", "/b.png"]}')
        assert session.wait(2.0)
        assert session.outcome == Completed(paths=("/a.png", "/b.png"))

    def test_output_without_session_dropped(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.emit('sdbk nwim {"generated_img_path": "/out/1.png"}')
        assert session.wait(2.0)
        coordinator.clear_session()

        factory.last.emit('sdbk errr {"error": "stray"}')
        time.sleep(0.05)
        assert coordinator.query_progress().state is SessionState.IDLE

    def test_worker_exit_fails_session(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.emit('sdbk dnpr {"current_step": 2}')
        factory.last.exit(1)
        assert session.wait(2.0)
        assert session.state is SessionState.FAILED
        assert "code 1" in session.outcome.error
        assert wait_for(lambda: not coordinator.is_worker_running)

    def test_worker_respawned_after_exit(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.exit(1)
        assert session.wait(2.0)
        assert wait_for(lambda: not coordinator.is_worker_running)
        coordinator.clear_session()

        coordinator.start_generation(request())
        assert len(factory.workers) == 2


class TestCancel:
    """Test cancel_active."""

    def test_cancel_without_session(self, coordinator):
        with pytest.raises(NotActiveError):
            coordinator.cancel_active()

    def test_cancel_marks_cancelled_and_retires_worker(self, coordinator, factory):
        session = coordinator.start_generation(request())
        worker = factory.last
        snapshot = coordinator.cancel_active()

        assert snapshot.is_cancelled
        assert session.outcome == Cancelled()
        assert worker.terminated.wait(2.0)
        assert worker.sent[-1] == "b2py stop {}\n"

    def test_cancel_terminal_session_rejected(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.emit('sdbk nwim {"generated_img_path": "/out/1.png"}')
        assert session.wait(2.0)
        with pytest.raises(NotActiveError):
            coordinator.cancel_active()
        assert session.state is SessionState.COMPLETED

    def test_next_start_uses_fresh_worker(self, coordinator, factory):
        coordinator.start_generation(request())
        coordinator.cancel_active()
        coordinator.clear_session()

        coordinator.start_generation(request())
        assert len(factory.workers) == 2
        assert factory.workers[0].terminated.wait(2.0)


class TestQueryAndClear:
    """Test query_progress and clear_session."""

    def test_idle_when_empty(self, coordinator):
        snapshot = coordinator.query_progress()
        assert snapshot.state is SessionState.IDLE
        assert not snapshot.is_terminal

    def test_terminal_snapshot_kept_until_cleared(self, coordinator):
        coordinator.start_generation(request())
        coordinator.cancel_active()
        assert coordinator.query_progress().is_cancelled
        assert coordinator.query_progress().is_cancelled

    def test_clear_empty(self, coordinator):
        with pytest.raises(NotActiveError):
            coordinator.clear_session()

    def test_clear_running(self, coordinator):
        coordinator.start_generation(request())
        with pytest.raises(AlreadyActiveError):
            coordinator.clear_session()

    def test_clear_returns_session(self, coordinator):
        session = coordinator.start_generation(request())
        coordinator.cancel_active()
        assert coordinator.clear_session() is session
        assert coordinator.query_progress().state is SessionState.IDLE


class TestSubscribe:
    """Test the coordinator-wide progress feed."""

    def test_updates_delivered(self, coordinator, factory):
        received = []
        coordinator.subscribe(received.append)
        session = coordinator.start_generation(request())
        factory.last.emit('sdbk dnpr {"current_step": 5}')
        factory.last.emit('sdbk nwim {"generated_img_path": "/out/1.png"}')
        assert session.wait(2.0)
        assert wait_for(lambda: received and received[-1].snapshot.is_complete)
        assert all(u.snapshot.session_id == session.session_id for u in received)

    def test_unsubscribe(self, coordinator, factory):
        received = []
        unsubscribe = coordinator.subscribe(received.append)
        unsubscribe()
        session = coordinator.start_generation(request())
        coordinator.cancel_active()
        assert session.is_terminal
        time.sleep(0.05)
        assert received == []


class TestShutdown:
    """Test shutdown."""

    def test_shutdown_cancels_and_stops_worker(self, test_config, factory):
        coordinator = SessionCoordinator(test_config, worker_factory=factory)
        session = coordinator.start_generation(request())
        coordinator.shutdown()
        assert session.outcome == Cancelled()
        assert factory.last.terminated.is_set()


class TestWorkerAfterFailure:
    """A worker that failed a session is retired, never handed to the next one."""

    def test_decode_storm_retires_worker(self, coordinator, factory):
        session = coordinator.start_generation(request())
        worker = factory.last
        for _ in range(3):
            worker.emit("sdbk dnpr {oops")
        assert session.wait(2.0)
        assert session.outcome.kind == "DecodeError"
        assert worker.terminated.wait(2.0)
        assert worker.sent[-1] == "b2py stop {}\n"
        assert not coordinator.is_worker_running

    def test_stale_result_does_not_reach_next_session(self, coordinator, factory):
        """Output of the failed job keeps coming; the next session never sees it."""
        first = coordinator.start_generation(request())
        old = factory.last
        for _ in range(3):
            old.emit("sdbk dnpr {not json")
        assert first.wait(2.0)
        coordinator.clear_session()

        second = coordinator.start_generation(request())
        old.emit('sdbk nwim {"generated_img_path": "/old/job_a.png"}')
        time.sleep(0.05)

        assert len(factory.workers) == 2
        assert second.state is SessionState.INITIALIZING
        assert second.outcome is None

        factory.last.emit('sdbk nwim {"generated_img_path": "/new/job_b.png"}')
        assert second.wait(2.0)
        assert second.outcome == Completed(paths=("/new/job_b.png",))

    def test_worker_error_retires_worker(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.emit('sdbk errr {"error": "CUDA out of memory"}')
        assert session.wait(2.0)
        assert factory.last.terminated.wait(2.0)

        coordinator.clear_session()
        coordinator.start_generation(request())
        assert len(factory.workers) == 2

    def test_clear_retires_worker_of_failed_session(self, coordinator, factory):
        """Clearing a failure never leaves its worker available for reuse."""
        session = coordinator.start_generation(request())
        session.fail(DecodeError("unparseable output"))
        coordinator.clear_session()
        assert factory.workers[0].terminated.wait(2.0)

        coordinator.start_generation(request())
        assert len(factory.workers) == 2

    def test_completed_worker_kept(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.emit('sdbk nwim {"generated_img_path": "/out/1.png"}')
        assert session.wait(2.0)
        time.sleep(0.05)
        assert not factory.last.terminated.is_set()
        assert coordinator.is_worker_running


def in_thread(fn, *args) -> queue.Queue:
    """Run *fn* on a daemon thread; its result arrives on the returned queue."""
    results: queue.Queue = queue.Queue()
    threading.Thread(target=lambda: results.put(fn(*args)), daemon=True).start()
    return results


class TestStalledWorker:
    """A start blocked on the worker's stdin does not block anything else."""

    def test_query_while_start_is_writing(self, coordinator, factory):
        factory.hold_writes = True
        started = in_thread(coordinator.start_generation, request(prompt="x" * 90000))
        assert wait_for(lambda: factory.workers and factory.last.writing.is_set())

        snapshot = in_thread(coordinator.query_progress).get(timeout=1.0)
        assert snapshot.state is SessionState.INITIALIZING
        assert in_thread(lambda: coordinator.is_worker_running).get(timeout=1.0)

        factory.last.write_gate.set()
        session = started.get(timeout=2.0)
        assert session.state is SessionState.INITIALIZING
        assert factory.last.sent[0].startswith("b2py t2im ")

    def test_cancel_while_start_is_writing(self, coordinator, factory):
        factory.hold_writes = True
        started = in_thread(coordinator.start_generation, request())
        assert wait_for(lambda: factory.workers and factory.last.writing.is_set())

        snapshot = in_thread(coordinator.cancel_active).get(timeout=1.0)
        assert snapshot.is_cancelled

        # Retiring the worker unblocks the pending write.
        session = started.get(timeout=5.0)
        assert session.outcome == Cancelled()
        assert factory.last.terminated.wait(5.0)

    def test_cancel_does_not_wait_for_stop_delivery(self, coordinator, factory):
        session = coordinator.start_generation(request())
        factory.last.write_gate.clear()

        snapshot = in_thread(coordinator.cancel_active).get(timeout=1.0)
        assert snapshot.is_cancelled
        assert session.outcome == Cancelled()
        assert factory.last.terminated.wait(5.0)


class TestHistory:
    """Test the bounded history of cleared sessions."""

    def test_newest_first(self, coordinator, factory):
        first = coordinator.start_generation(request(prompt="first"))
        factory.last.emit('sdbk nwim {"generated_img_path": "/out/1.png"}')
        assert first.wait(2.0)
        coordinator.clear_session()

        second = coordinator.start_generation(request(prompt="second"))
        coordinator.cancel_active()
        coordinator.clear_session()

        assert coordinator.history == [second, first]

    def test_bounded(self, worker_config, factory):
        config = worker_config("success", history_size=2)
        coordinator = SessionCoordinator(config, worker_factory=factory)
        try:
            for n in range(3):
                coordinator.start_generation(request(prompt=f"cat {n}"))
                coordinator.cancel_active()
                coordinator.clear_session()
            assert [s.request.prompt for s in coordinator.history] == ["cat 2", "cat 1"]
        finally:
            coordinator.shutdown()

    def test_uncleared_session_not_listed(self, coordinator):
        coordinator.start_generation(request())
        assert coordinator.history == []
