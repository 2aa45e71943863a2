"""Progress polling and fan-out to observers.

Sessions do not push updates.  A :class:`ProgressSynchronizer` polls one
session on a fixed wall-clock cadence, publishes each *changed* snapshot to
its subscribers together with an estimate of the time remaining, and stops
after publishing the session's terminal snapshot.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from .models import ProgressSnapshot
from .session import GenerationSession

logger = logging.getLogger(__name__)

Subscriber = Callable[["ProgressUpdate"], None]


def estimate_remaining(elapsed: float, completed_steps: int, total_steps: int) -> float | None:
    """Estimate seconds remaining as ``elapsed / completed * remaining``.

    Returns:
        ``None`` when no step has completed yet.
    """
    if completed_steps <= 0:
        return None
    remaining = max(total_steps - completed_steps, 0)
    return elapsed / completed_steps * remaining


@dataclass(frozen=True)
class ProgressUpdate:
    """A published snapshot with timing information."""

    snapshot: ProgressSnapshot
    elapsed_seconds: float
    eta_seconds: float | None

    def to_dict(self) -> dict:
        data = self.snapshot.to_dict()
        data["elapsed_seconds"] = round(self.elapsed_seconds, 3)
        data["eta_seconds"] = None if self.eta_seconds is None else round(self.eta_seconds, 3)
        return data


class ProgressSynchronizer:
    """Polls a session and republishes changed snapshots.

    Polling runs on a daemon thread started by :meth:`start`; tests may call
    :meth:`poll_once` directly instead.
    """

    def __init__(self, session: GenerationSession, interval: float = 0.5) -> None:
        self._session = session
        self._interval = interval

        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()

        self._last: ProgressSnapshot | None = None
        self._poll_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def session(self) -> GenerationSession:
        return self._session

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for every published update.

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

    def poll_once(self) -> ProgressUpdate | None:
        """Read the session once and publish if the snapshot changed.

        Returns:
            The published update, or ``None`` if nothing changed.
        """
        with self._poll_lock:
            snapshot = self._session.snapshot()
            if snapshot == self._last:
                return None
            self._last = snapshot

            elapsed = self._session.elapsed()
            update = ProgressUpdate(
                snapshot=snapshot,
                elapsed_seconds=elapsed,
                eta_seconds=estimate_remaining(
                    elapsed, snapshot.current_step, snapshot.total_steps
                ),
            )
            # Published under the lock so observers see updates in order.
            self._publish(update)
            return update

    def start(self) -> None:
        """Start polling on a background thread."""
        if self._thread is not None:
            raise RuntimeError("ProgressSynchronizer already started")
        self._thread = threading.Thread(
            target=self._run,
            name=f"progress-{self._session.session_id[:8]}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop polling and wait for the thread to exit.

        If the session is already terminal but its final snapshot has not
        been published yet, it is published before returning.
        """
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        if self._session.is_terminal:
            self.poll_once()

    def join(self, timeout: float | None = None) -> None:
        """Wait for polling to end on its own (after the terminal snapshot)."""
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_snapshot(self) -> ProgressSnapshot | None:
        """Most recently published snapshot."""
        return self._last

    def _run(self) -> None:
        while True:
            self.poll_once()
            if self._last is not None and self._last.is_terminal:
                logger.debug("Session %s finished, polling stopped.", self._session.session_id)
                return
            if self._stop_event.wait(self._interval):
                return

    def _publish(self, update: ProgressUpdate) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(update)
            except Exception:
                # Remaining observers still receive the update.
                logger.exception("Progress subscriber %r raised.", callback)
