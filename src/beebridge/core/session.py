"""Generation session state machine.

A :class:`GenerationSession` tracks one in-flight generation from the moment
its command is sent until it reaches a terminal state::

    INITIALIZING ──progress──▶ RUNNING ──progress──▶ RUNNING
         │                        │
         ├──────── result ────────┼──▶ COMPLETED
         ├── error / decode storm / worker exit / I/O error ──▶ FAILED
         └──────── cancel ────────┴──▶ CANCELLED

The session never raises across its public surface once started: worker
errors, malformed lines and I/O failures are folded into its terminal
:data:`~beebridge.core.models.Outcome`.  Readers poll :meth:`snapshot`,
which returns an immutable :class:`~beebridge.core.models.ProgressSnapshot`
swapped in under the session lock.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable

from . import protocol
from .errors import BridgeError, DecodeError, WorkerReportedError, WriteError
from .models import (
    Cancelled,
    Completed,
    Failed,
    GenerationRequest,
    Outcome,
    ProgressSnapshot,
    SessionState,
)

logger = logging.getLogger(__name__)

STATUS_INITIALIZING = "Initializing..."
STATUS_COMPLETE = "Complete"
STATUS_CANCELLED = "Cancelled"


class GenerationSession:
    """State machine for one generation request.

    Attributes:
        session_id (str):
            Opaque handle identifying the session.
        request (GenerationRequest):
            The validated request this session was started for.
        started_at (float):
            Clock reading taken when the session was created.
    """

    def __init__(
        self,
        request: GenerationRequest,
        send: Callable[[str], None],
        *,
        decode_error_threshold: int = 3,
        session_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create a session in the ``INITIALIZING`` state.

        Args:
            request: Validated generation request.
            send: Callable writing one line to the worker (raises WriteError).
            decode_error_threshold: Consecutive malformed protocol lines that
                fail the session.
            session_id: Explicit handle; a random one is generated otherwise.
            clock: Monotonic clock, injectable for tests.
        """
        self.session_id = session_id or uuid.uuid4().hex
        self.request = request
        self._send = send
        self._decode_error_threshold = decode_error_threshold
        self._clock = clock

        self._lock = threading.Lock()
        self._finished = threading.Event()

        self._state = SessionState.INITIALIZING
        self._current_step = 0
        self._status = STATUS_INITIALIZING
        self._paths: list[str] = []
        self._outcome: Outcome | None = None
        self._consecutive_decode_errors = 0

        self.started_at = clock()
        self.finished_at: float | None = None

        self._snapshot = self._build_snapshot()

    # -- Commands -----------------------------------------------------------

    def start(self) -> None:
        """Send the generation command to the worker.

        A write failure is fatal to the session and becomes its outcome.
        Nothing is sent if the session was cancelled before it started.
        """
        with self._lock:
            if self._state.is_terminal:
                logger.info("Session %s ended before its command was sent.", self.session_id)
                return
        try:
            self._send(protocol.encode_generation(self.request))
        except WriteError as e:
            self.fail(e)
            return
        logger.info(
            "Session %s started: %dx%d, %d steps, guidance=%.1f.",
            self.session_id,
            self.request.img_width,
            self.request.img_height,
            self.request.num_inference_steps,
            self.request.guidance_scale,
        )

    def cancel(self, send_stop: bool = True) -> bool:
        """Cancel the session.

        The session is marked ``CANCELLED`` immediately so observers see the
        change without waiting for the worker; the stop command is sent
        afterwards on a best-effort basis.

        Args:
            send_stop: Write the stop command through ``send``.  Pass
                ``False`` when the caller delivers it itself, so the call
                never blocks on the worker's pipe.

        Returns:
            ``True`` if the cancel was accepted, ``False`` if the session had
            already reached a terminal state.
        """
        with self._lock:
            if self._state.is_terminal:
                return False
            self._finish(SessionState.CANCELLED, Cancelled(), STATUS_CANCELLED)

        logger.info("Session %s cancelled.", self.session_id)
        if not send_stop:
            return True
        try:
            self._send(protocol.encode_stop())
        except WriteError as e:
            # The outcome is already Cancelled; the worker will be retired anyway.
            logger.warning("Could not deliver stop command for %s: %s", self.session_id, e)
        return True

    def fail(self, error: BridgeError) -> bool:
        """Move the session to ``FAILED`` with *error* as the outcome.

        Returns:
            ``True`` if this call produced the terminal transition.
        """
        with self._lock:
            if self._state.is_terminal:
                logger.debug(
                    "Ignoring failure for finished session %s: %s", self.session_id, error
                )
                return False
            self._finish(
                SessionState.FAILED,
                Failed(error=str(error), kind=type(error).__name__),
                f"Failed: {error}",
            )
        logger.error("Session %s failed: %s", self.session_id, error)
        return True

    # -- Worker input -------------------------------------------------------

    def handle_line(self, line: str) -> None:
        """Feed one raw stdout line from the worker into the state machine."""
        try:
            response = protocol.decode_line(line)
        except DecodeError as e:
            self._on_decode_error(e)
            return

        if response is None:
            logger.debug("Skipping non-protocol worker output: %s", line)
            return

        with self._lock:
            self._consecutive_decode_errors = 0

        if isinstance(response, protocol.Progress):
            self._on_progress(response)
        elif isinstance(response, protocol.NewImage):
            self._on_new_image(response)
        elif isinstance(response, protocol.WorkerError):
            self.fail(WorkerReportedError(response.message))
        else:
            logger.info(
                "Session %s: ignoring unrecognized response '%s' %s",
                self.session_id,
                response.code,
                response.payload,
            )

    def handle_stream_end(self, returncode: int | None = None) -> None:
        """Record that the worker's output ended.

        If the session has not reached a terminal state the worker died
        mid-generation, which fails the session.
        """
        if returncode is None:
            message = "Worker process exited before finishing the generation"
        else:
            message = f"Worker process exited before finishing the generation (code {returncode})"
        with self._lock:
            if self._state.is_terminal:
                return
        self.fail(BridgeError(message))

    def _on_decode_error(self, error: DecodeError) -> None:
        with self._lock:
            if self._state.is_terminal:
                logger.debug("Malformed line after session end: %s", error)
                return
            self._consecutive_decode_errors += 1
            count = self._consecutive_decode_errors
        logger.warning(
            "Session %s: malformed worker line (%d/%d): %s",
            self.session_id,
            count,
            self._decode_error_threshold,
            error,
        )
        if count >= self._decode_error_threshold:
            self.fail(
                DecodeError(f"Worker sent {count} consecutive unparseable lines; last: {error}")
            )

    def _on_progress(self, progress: protocol.Progress) -> None:
        with self._lock:
            if self._state.is_terminal:
                logger.debug("Session %s: late progress ignored.", self.session_id)
                return

            total = self.request.num_inference_steps
            step = progress.current_step
            if progress.total_steps is not None and progress.total_steps != total:
                logger.debug(
                    "Session %s: worker reports %d total steps, keeping %d.",
                    self.session_id,
                    progress.total_steps,
                    total,
                )

            if step < self._current_step:
                logger.warning(
                    "Session %s: step went backwards (%d -> %d), keeping %d.",
                    self.session_id,
                    self._current_step,
                    step,
                    self._current_step,
                )
                step = self._current_step
            elif step > total:
                logger.warning(
                    "Session %s: step %d exceeds total %d, clamping.",
                    self.session_id,
                    step,
                    total,
                )
                step = total

            self._state = SessionState.RUNNING
            self._current_step = step
            if progress.status:
                self._status = progress.status
            self._snapshot = self._build_snapshot()

    def _on_new_image(self, image: protocol.NewImage) -> None:
        with self._lock:
            if self._state.is_terminal:
                # Accepted but never overrides a terminal outcome.
                logger.info(
                    "Session %s: result %s arrived after %s, outcome unchanged.",
                    self.session_id,
                    list(image.paths),
                    self._state.value,
                )
                return

            self._paths.extend(image.paths)
            wanted = self.request.num_imgs
            if len(self._paths) >= wanted:
                self._finish(SessionState.COMPLETED, Completed(tuple(self._paths)), STATUS_COMPLETE)
                completed = True
            else:
                self._state = SessionState.RUNNING
                self._status = f"Saved image {len(self._paths)} of {wanted}"
                self._snapshot = self._build_snapshot()
                completed = False

        if completed:
            logger.info("Session %s completed: %s", self.session_id, self._paths)

    # -- Queries ------------------------------------------------------------

    def snapshot(self) -> ProgressSnapshot:
        """Return the latest read-consistent progress snapshot."""
        with self._lock:
            return self._snapshot

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the session is terminal.

        Returns:
            ``True`` if the session finished within *timeout*.
        """
        return self._finished.wait(timeout)

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def outcome(self) -> Outcome | None:
        """Terminal outcome, or ``None`` while the session is in flight."""
        with self._lock:
            return self._outcome

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def elapsed(self) -> float:
        """Seconds since the session started (frozen once terminal)."""
        end = self.finished_at if self.finished_at is not None else self._clock()
        return max(0.0, end - self.started_at)

    # -- Internals ----------------------------------------------------------

    def _finish(self, state: SessionState, outcome: Outcome, status: str) -> None:
        # Caller holds self._lock and has checked the session is not terminal.
        self._state = state
        self._outcome = outcome
        self._status = status
        self.finished_at = self._clock()
        self._snapshot = self._build_snapshot()
        self._finished.set()

    def _build_snapshot(self) -> ProgressSnapshot:
        error = self._outcome.error if isinstance(self._outcome, Failed) else None
        paths = self._outcome.paths if isinstance(self._outcome, Completed) else ()
        return ProgressSnapshot(
            session_id=self.session_id,
            state=self._state,
            current_step=self._current_step,
            total_steps=self.request.num_inference_steps,
            status=self._status,
            error=error,
            output_paths=paths,
        )

    def __repr__(self) -> str:
        return f"GenerationSession(id={self.session_id}, state={self.state.value})"
