"""Core generation orchestration.

This package holds everything between the UI-facing surface and the worker
process:

- **protocol**: line codec for the worker's ``<marker> <code> <json>`` format
- **worker**: :class:`WorkerProcess`, owner of the worker subprocess
- **session**: :class:`GenerationSession`, the per-generation state machine
- **coordinator**: :class:`SessionCoordinator`, single-slot admission control
- **progress**: :class:`ProgressSynchronizer`, polling and ETA estimation
- **settings_store**: :class:`SettingsStore`, persisted user defaults
- **config**: :class:`BridgeConfig`, environment-based configuration

Control Flow
------------
1. The UI calls ``SessionCoordinator.start_generation(request)``.
2. The coordinator validates the request, claims its session slot, spawns
   (or reuses) the worker and sends the encoded ``t2im`` command.
3. A reader thread feeds the worker's stdout into the session.
4. A :class:`ProgressSynchronizer` polls the session every
   ``config.poll_interval`` seconds and publishes changed snapshots.
5. The UI may cancel; the session flips to ``CANCELLED`` at once and the
   worker is retired in the background.
6. The UI consumes the terminal outcome and calls ``clear_session()``.

Usage Example
-------------
::

    from beebridge.core import GenerationRequest, SessionCoordinator, config

    coordinator = SessionCoordinator(config)
    session = coordinator.start_generation(GenerationRequest(prompt="a cat"))
    session.wait()
    print(session.outcome)
    coordinator.clear_session()
"""

from beebridge.core.config import BridgeConfig, config
from beebridge.core.coordinator import SessionCoordinator
from beebridge.core.errors import (
    AlreadyActiveError,
    BridgeError,
    DecodeError,
    LaunchError,
    NotActiveError,
    ValidationError,
    WorkerReportedError,
    WriteError,
)
from beebridge.core.models import (
    AppSettings,
    Cancelled,
    Completed,
    Failed,
    GenerationRequest,
    ProgressSnapshot,
    SessionState,
)
from beebridge.core.progress import ProgressSynchronizer, ProgressUpdate
from beebridge.core.session import GenerationSession
from beebridge.core.settings_store import SettingsStore
from beebridge.core.worker import WorkerProcess

__all__ = [
    "AlreadyActiveError",
    "AppSettings",
    "BridgeConfig",
    "BridgeError",
    "Cancelled",
    "Completed",
    "config",
    "DecodeError",
    "Failed",
    "GenerationRequest",
    "GenerationSession",
    "LaunchError",
    "NotActiveError",
    "ProgressSnapshot",
    "ProgressSynchronizer",
    "ProgressUpdate",
    "SessionCoordinator",
    "SessionState",
    "SettingsStore",
    "ValidationError",
    "WorkerProcess",
    "WorkerReportedError",
    "WriteError",
]
