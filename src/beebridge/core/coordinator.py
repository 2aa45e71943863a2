"""Admission control and routing for generation sessions.

:class:`SessionCoordinator` is the single owner of two one-slot resources:

- the **session slot**, holding at most one :class:`GenerationSession`.  A
  start claims it; :meth:`SessionCoordinator.clear_session` releases it once
  the caller has consumed the terminal outcome, so unread results are never
  silently discarded.
- the **worker slot**, holding at most one live :class:`WorkerProcess`.  The
  worker is spawned lazily and kept between sessions.  A dedicated reader
  thread per worker routes its output to the session started on it.

A worker is only reused after a Completed session.  Cancelling, or a failure
while the worker is still alive, retires it in the background (stop command,
then the terminate grace period), so output from an abandoned job can never
leak into the next session.  A worker that exits on its own fails the session
routed to it; it is not respawned until the next start.

The coordinator lock only guards the slots.  Commands are written to the
worker after it is released, so a worker that stops reading its stdin cannot
stall queries, cancels or output routing.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from collections import deque
from collections.abc import Callable
from typing import Any

from .config import BridgeConfig
from .errors import AlreadyActiveError, LaunchError, NotActiveError, WriteError
from .models import Completed, GenerationRequest, ProgressSnapshot, SessionState
from .protocol import encode_stop
from .progress import ProgressSynchronizer, ProgressUpdate, Subscriber
from .session import GenerationSession
from .validation import validate_generation_request, validate_prompt_content
from .worker import WorkerProcess

logger = logging.getLogger(__name__)

WorkerFactory = Callable[..., WorkerProcess]

# Seconds to wait for the exit code after a worker closes stdout.
_EXIT_CODE_TIMEOUT = 1.0


def _worker_unavailable(line: str) -> None:
    raise WriteError("Worker is not running")


class SessionCoordinator:
    """Owns the active session and the worker process.

    Attributes:
        _config (BridgeConfig):
            Worker command, timing constants and decode tolerance.
        _session (GenerationSession | None):
            The session slot.
        _worker (WorkerProcess | None):
            The live worker, or ``None`` before first use and after it exits
            or is retired.
        _history (deque[GenerationSession]):
            Cleared sessions, newest first, bounded by ``history_size``.
    """

    def __init__(self, config: BridgeConfig, worker_factory: WorkerFactory | None = None) -> None:
        """Create an idle coordinator.

        No worker is started here; the first :meth:`start_generation` spawns it.

        Args:
            config: Application configuration.
            worker_factory: Replacement for :meth:`WorkerProcess.spawn`,
                called as ``factory(argv, cwd=...)``.
        """
        self._config = config
        self._spawn = worker_factory or WorkerProcess.spawn

        self._lock = threading.Lock()
        self._session: GenerationSession | None = None
        self._session_worker: WorkerProcess | None = None
        self._synchronizer: ProgressSynchronizer | None = None
        self._worker: WorkerProcess | None = None
        self._background: list[threading.Thread] = []
        self._history: deque[GenerationSession] = deque(maxlen=config.history_size)

        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()

    # -- UI-facing operations -----------------------------------------------

    def start_generation(self, request: GenerationRequest | dict[str, Any]) -> GenerationSession:
        """Validate *request*, claim the slot and send the start command.

        Returns immediately with the new session in the ``INITIALIZING``
        state (or ``FAILED`` if the worker could not be launched or written
        to).  Completion is observed through :meth:`query_progress` or the
        subscription feed.

        Raises:
            ValidationError: If a request field is missing or out of range.
            AlreadyActiveError: If the slot holds a running session, or a
                finished one that has not been cleared yet.
        """
        request = validate_generation_request(request)
        validate_prompt_content(request.prompt)

        with self._lock:
            current = self._session
            if current is not None:
                if not current.is_terminal:
                    raise AlreadyActiveError(
                        f"Generation {current.session_id} is still {current.state.value}"
                    )
                raise AlreadyActiveError(
                    f"Generation {current.session_id} finished ({current.state.value}) "
                    "but has not been cleared"
                )

            launch_error: LaunchError | None = None
            try:
                worker = self._ensure_worker()
                send = worker.send
            except LaunchError as e:
                worker = None
                send = _worker_unavailable
                launch_error = e

            session = GenerationSession(
                request,
                send,
                decode_error_threshold=self._config.decode_error_threshold,
            )
            self._session = session
            self._session_worker = worker

            synchronizer = ProgressSynchronizer(session, interval=self._config.poll_interval)
            synchronizer.subscribe(self._broadcast)
            self._synchronizer = synchronizer

        # The slot is claimed; the command may block on a stalled pipe.
        if launch_error is not None:
            session.fail(launch_error)
        else:
            session.start()
            if session.state is SessionState.FAILED:
                self._discard_worker(worker)

        synchronizer.start()
        return session

    def cancel_active(self) -> ProgressSnapshot:
        """Cancel the running session.

        The session flips to ``CANCELLED`` before this returns.  The worker
        gets a stop command and is then retired in the background, so this
        never waits on the worker's pipe.

        Returns:
            The session's snapshot after the cancel.

        Raises:
            NotActiveError: If no running session occupies the slot.
        """
        with self._lock:
            session = self._session
            if session is None or session.is_terminal:
                raise NotActiveError("No generation in progress")

            if not session.cancel(send_stop=False):
                raise NotActiveError("Generation finished before it could be cancelled")
            worker = self._detach_worker(self._session_worker)

        if worker is not None:
            self._retire(worker)
        return session.snapshot()

    def query_progress(self) -> ProgressSnapshot:
        """Return the slot's current snapshot, or the idle snapshot."""
        with self._lock:
            session = self._session
        if session is None:
            return ProgressSnapshot.idle()
        return session.snapshot()

    def clear_session(self) -> GenerationSession:
        """Release the slot after the caller has consumed the outcome.

        Returns:
            The finished session.

        Raises:
            NotActiveError: If the slot is empty.
            AlreadyActiveError: If the session is still running.
        """
        with self._lock:
            session = self._session
            if session is None:
                raise NotActiveError("No generation to clear")
            if not session.is_terminal:
                raise AlreadyActiveError(
                    f"Generation {session.session_id} is still {session.state.value}"
                )
            # Only a worker that completed its job may serve the next session.
            stale = None
            if not isinstance(session.outcome, Completed):
                stale = self._detach_worker(self._session_worker)
            synchronizer = self._synchronizer
            self._session = None
            self._session_worker = None
            self._synchronizer = None
            self._history.appendleft(session)

        if stale is not None:
            logger.info("Retiring worker %r after a failed session.", stale)
            self._retire(stale)
        if synchronizer is not None:
            synchronizer.stop(timeout=self._config.poll_interval * 4)
        logger.info("Cleared session %s (%s).", session.session_id, session.state.value)
        return session

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Receive every progress update for every session.

        Returns:
            A callable that removes the subscription.
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def shutdown(self) -> None:
        """Cancel any running session and stop the worker."""
        with self._lock:
            session = self._session
            synchronizer = self._synchronizer
            worker = self._worker
            self._worker = None
            background = list(self._background)

        if session is not None and not session.is_terminal:
            session.cancel(send_stop=False)
        if synchronizer is not None:
            synchronizer.stop(timeout=self._config.poll_interval * 4)
        if worker is not None:
            self._stop_worker(worker)
        for thread in background:
            thread.join(self._config.terminate_grace_period * 2 + 5.0)
        logger.info("SessionCoordinator shut down.")

    # -- Properties ---------------------------------------------------------

    @property
    def active_session(self) -> GenerationSession | None:
        """Session occupying the slot (running or awaiting clear)."""
        with self._lock:
            return self._session

    @property
    def history(self) -> list[GenerationSession]:
        """Cleared sessions, newest first."""
        with self._lock:
            return list(self._history)

    @property
    def is_worker_running(self) -> bool:
        with self._lock:
            worker = self._worker
        return worker is not None and worker.is_running

    # -- Internals ----------------------------------------------------------

    def _ensure_worker(self) -> WorkerProcess:
        # Caller holds self._lock.
        if self._worker is not None and self._worker.is_running:
            return self._worker

        worker = self._spawn(self._config.worker_command(), cwd=self._config.worker_cwd)
        self._worker = worker

        reader = threading.Thread(
            target=self._read_worker,
            args=(worker,),
            name=f"worker-reader-{worker.pid}",
            daemon=True,
        )
        reader.start()
        return worker

    def _route(self, worker: WorkerProcess) -> GenerationSession | None:
        with self._lock:
            if self._session_worker is worker:
                return self._session
            return None

    def _read_worker(self, worker: WorkerProcess) -> None:
        try:
            for line in worker.lines():
                session = self._route(worker)
                if session is None:
                    logger.debug("Worker output with no session attached: %s", line)
                    continue
                session.handle_line(line)
                if session.state is SessionState.FAILED:
                    self._discard_worker(worker)
        except Exception:
            logger.exception("Reader for worker %r crashed.", worker)
        finally:
            self._on_worker_exit(worker)

    def _on_worker_exit(self, worker: WorkerProcess) -> None:
        try:
            returncode = worker.wait(timeout=_EXIT_CODE_TIMEOUT)
        except subprocess.TimeoutExpired:
            # stdout closed but the process lingers; it is unusable either way.
            returncode = None

        with self._lock:
            if self._worker is worker:
                self._worker = None
            session = self._session if self._session_worker is worker else None

        if session is not None:
            session.handle_stream_end(returncode)
        logger.info("Worker %r output ended (code %s).", worker, returncode)
        worker.terminate(self._config.terminate_grace_period)

    def _detach_worker(self, worker: WorkerProcess | None) -> WorkerProcess | None:
        # Caller holds self._lock.  Returns the worker if it was still the live one.
        if worker is not None and worker is self._worker:
            self._worker = None
            return worker
        return None

    def _discard_worker(self, worker: WorkerProcess) -> None:
        # A failed session's job may still be running on this worker.
        with self._lock:
            detached = self._detach_worker(worker)
        if detached is not None:
            logger.info("Retiring worker %r after a failed session.", detached)
            self._retire(detached)

    def _stop_worker(self, worker: WorkerProcess) -> None:
        grace = self._config.terminate_grace_period
        sender = threading.Thread(
            target=self._send_stop,
            args=(worker,),
            name=f"worker-stop-{worker.pid}",
            daemon=True,
        )
        sender.start()
        sender.join(grace)
        if sender.is_alive():
            logger.warning("Stop command to worker %r is blocked, terminating.", worker)
        worker.terminate(grace)

    @staticmethod
    def _send_stop(worker: WorkerProcess) -> None:
        try:
            worker.send(encode_stop())
        except WriteError as e:
            logger.debug("Could not deliver stop command to %r: %s", worker, e)

    def _retire(self, worker: WorkerProcess) -> None:
        thread = threading.Thread(
            target=self._stop_worker,
            args=(worker,),
            name=f"worker-retire-{worker.pid}",
            daemon=True,
        )
        with self._lock:
            self._background = [t for t in self._background if t.is_alive()]
            self._background.append(thread)
        thread.start()

    def _broadcast(self, update: ProgressUpdate) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(update)
            except Exception:
                logger.exception("Progress subscriber %r raised.", callback)
