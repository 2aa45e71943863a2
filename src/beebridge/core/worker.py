"""Worker subprocess lifecycle management.

This module provides :class:`WorkerProcess`, the single owner of one
long-running generation worker.  The worker is an external program reached
only through its standard streams: encoded commands go in on stdin, protocol
lines (mixed with whatever the worker's libraries print) come out on stdout.

Key Responsibilities
--------------------
- **Spawn**: start the worker with line-buffered UTF-8 pipes.  Failure to
  start is reported as :class:`~beebridge.core.errors.LaunchError`.
- **Send**: write one line to stdin.  A closed pipe or an exited worker is
  reported as :class:`~beebridge.core.errors.WriteError`.
- **Lines**: a lazy, single-pass iterator over stdout lines that ends when
  the worker closes stdout or exits.
- **Terminate**: close stdin (the cooperative signal), wait a bounded grace
  period, then SIGTERM and finally SIGKILL.  The process is never left
  running once :meth:`WorkerProcess.terminate` returns or raises.
- **stderr**: drained on a daemon thread and logged at DEBUG so that a
  chatty worker can never block on a full stderr pipe.

Usage
-----
::

    from beebridge.core.worker import WorkerProcess

    worker = WorkerProcess.spawn(["python", "backend.py"])
    worker.send('b2py t2im {"prompt": "a cat"}')
    for line in worker.lines():
        print(line)
    worker.terminate(grace_period=5.0)
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from collections.abc import Iterator, Sequence
from pathlib import Path

from .errors import LaunchError, WriteError

logger = logging.getLogger(__name__)

# Seconds to wait after SIGTERM before escalating to SIGKILL.
_SIGTERM_TIMEOUT = 2.0

# Seconds terminate() waits for a writer blocked on a full stdin pipe before
# skipping the EOF step.
_STDIN_CLOSE_TIMEOUT = 1.0


class WorkerProcess:
    """Owns exactly one worker OS process.

    Attributes:
        argv (list[str]):
            Command line the worker was started with.
        _process (subprocess.Popen):
            The underlying process handle.
    """

    def __init__(self, process: subprocess.Popen, argv: Sequence[str]) -> None:
        """Wrap an already started process.

        Use :meth:`spawn` rather than calling this directly.

        Args:
            process: Process started with text-mode stdin/stdout/stderr pipes.
            argv: Command line used to start it (for logging).
        """
        self.argv = list(argv)
        self._process = process

        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._lines_taken = False

        self._stderr_thread: threading.Thread | None = None
        if process.stderr is not None:
            self._stderr_thread = threading.Thread(
                target=self._drain_stderr,
                name=f"worker-stderr-{process.pid}",
                daemon=True,
            )
            self._stderr_thread.start()

    # -- Construction -------------------------------------------------------

    @classmethod
    def spawn(
        cls,
        argv: Sequence[str],
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
    ) -> WorkerProcess:
        """Start the worker process.

        The child inherits the current environment merged with *env*, plus
        ``PYTHONUNBUFFERED=1`` so that Python workers flush every line.

        Args:
            argv: Executable followed by its arguments.
            cwd: Working directory for the worker.
            env: Extra environment variables.

        Returns:
            A running :class:`WorkerProcess`.

        Raises:
            LaunchError: If the executable cannot be started.
        """
        argv = list(argv)
        if not argv:
            raise LaunchError("Worker command is empty")

        full_env = os.environ.copy()
        full_env["PYTHONUNBUFFERED"] = "1"
        if env:
            full_env.update(env)

        logger.info("Spawning worker: %s", " ".join(argv))
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except (OSError, ValueError) as e:
            logger.error("Failed to spawn worker %s: %s", argv[0], e)
            raise LaunchError(f"Could not start worker '{argv[0]}': {e}") from e

        logger.info("Worker started (pid=%d).", process.pid)
        return cls(process, argv)

    # -- Public interface ---------------------------------------------------

    def send(self, line: str) -> None:
        """Write one line to the worker's stdin and flush it.

        A terminator is appended if *line* does not already end with one.

        Args:
            line: Encoded protocol line.

        Raises:
            WriteError: If the worker has exited or its stdin is closed.
        """
        if not line.endswith("\n"):
            line += "\n"

        with self._write_lock:
            stdin = self._process.stdin
            if stdin is None or stdin.closed:
                raise WriteError("Worker input pipe is closed")

            returncode = self._process.poll()
            if returncode is not None:
                raise WriteError(f"Worker has exited (code {returncode})")

            try:
                stdin.write(line)
                stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                raise WriteError(f"Failed to write to worker: {e}") from e

        logger.debug("-> worker: %s", line.rstrip("\n"))

    def lines(self) -> Iterator[str]:
        """Return an iterator over the worker's stdout lines.

        Lines are yielded without their terminator.  The iterator ends when
        the worker closes stdout or exits.  It may be taken only once per
        process; a respawned worker gets a new :class:`WorkerProcess` and
        therefore a new stream.

        Raises:
            RuntimeError: If the stream has already been taken.
        """
        with self._state_lock:
            if self._lines_taken:
                raise RuntimeError("Worker output stream can only be consumed once")
            self._lines_taken = True
        return self._iter_stdout()

    def terminate(self, grace_period: float = 5.0) -> int | None:
        """Shut the worker down, cooperatively first and forcibly if needed.

        Sequence:

        1. Close stdin.  A well-behaved worker treats EOF as a request to
           exit (any cancel command should already have been sent).  If
           another thread is stuck writing to a worker that stopped reading,
           this step is skipped; the signals below unblock that writer.
        2. Wait up to *grace_period* seconds.
        3. Send SIGTERM and wait briefly.
        4. Send SIGKILL and reap the process.

        Safe to call more than once and on a worker that already exited.

        Args:
            grace_period: Seconds to wait for a cooperative exit.

        Returns:
            The worker's exit code.
        """
        process = self._process
        try:
            if process.poll() is None:
                logger.info("Stopping worker (pid=%d).", process.pid)
                if not self._close_stdin(timeout=_STDIN_CLOSE_TIMEOUT):
                    logger.warning(
                        "Worker (pid=%d) stdin is blocked by a pending write, skipping EOF.",
                        process.pid,
                    )
                try:
                    process.wait(timeout=grace_period)
                except subprocess.TimeoutExpired:
                    logger.warning(
                        "Worker (pid=%d) still running after %.1fs, sending SIGTERM.",
                        process.pid,
                        grace_period,
                    )
                    process.terminate()
                    try:
                        process.wait(timeout=_SIGTERM_TIMEOUT)
                    except subprocess.TimeoutExpired:
                        logger.warning("Worker (pid=%d) ignored SIGTERM, killing.", process.pid)
                        process.kill()
                        process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
            self._close_stdin()

        logger.info("Worker (pid=%d) exited with code %s.", process.pid, process.returncode)
        return process.returncode

    def wait(self, timeout: float | None = None) -> int:
        """Block until the worker exits and return its exit code.

        Raises:
            subprocess.TimeoutExpired: If *timeout* elapses first.
        """
        return self._process.wait(timeout=timeout)

    # -- Properties ---------------------------------------------------------

    @property
    def pid(self) -> int:
        """OS process identifier."""
        return self._process.pid

    @property
    def is_running(self) -> bool:
        """Whether the worker process is still alive."""
        return self._process.poll() is None

    @property
    def returncode(self) -> int | None:
        """Exit code, or ``None`` while the worker is running."""
        return self._process.poll()

    # -- Internals ----------------------------------------------------------

    def _iter_stdout(self) -> Iterator[str]:
        stdout = self._process.stdout
        if stdout is None:
            return
        try:
            for raw in stdout:
                yield raw.rstrip("\r\n")
        except (OSError, ValueError) as e:
            logger.debug("Worker stdout closed while reading: %s", e)
        finally:
            try:
                stdout.close()
            except OSError:
                pass

    def _drain_stderr(self) -> None:
        stderr = self._process.stderr
        try:
            for raw in stderr:
                logger.debug("worker stderr: %s", raw.rstrip("\r\n"))
        except (OSError, ValueError):
            pass
        finally:
            try:
                stderr.close()
            except OSError:
                pass

    def _close_stdin(self, timeout: float | None = None) -> bool:
        # Returns False if a blocked writer still holds the pipe after *timeout*.
        if not self._write_lock.acquire(timeout=-1 if timeout is None else timeout):
            return False
        try:
            stdin = self._process.stdin
            if stdin is not None and not stdin.closed:
                try:
                    stdin.close()
                except OSError:
                    # Broken pipe on flush of a dead worker.
                    pass
        finally:
            self._write_lock.release()
        return True

    def __enter__(self) -> WorkerProcess:
        return self

    def __exit__(self, *exc_info) -> None:
        self.terminate()

    def __repr__(self) -> str:
        state = "running" if self.is_running else f"exited({self.returncode})"
        return f"WorkerProcess(pid={self.pid}, {state})"
