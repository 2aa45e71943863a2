"""beebridge: local FastAPI surface for the desktop UI.

This module defines the FastAPI ``app`` instance the UI talks to, all REST
routes, and the ``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Generation** is delegated to a single
  :class:`~beebridge.core.coordinator.SessionCoordinator` created in the
  application lifespan.  Route handlers are plain ``def`` functions, so
  FastAPI runs them in its thread pool and process spawns and pipe writes
  never block the event loop.
- **Progress** can be pulled (``GET /api/progress``) or streamed as
  Server-Sent Events (``GET /api/progress/stream``).
- **Settings** are held by a :class:`~beebridge.core.settings_store.SettingsStore`
  loaded once at startup and overwritten wholesale on save.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/api/status``               Version, worker and session state
POST      ``/api/generate``             Start a generation
POST      ``/api/cancel``               Cancel the running generation
GET       ``/api/progress``             Latest progress snapshot
GET       ``/api/progress/stream``      Progress feed (Server-Sent Events)
POST      ``/api/session/clear``        Consume the outcome, free the slot
GET       ``/api/settings``             Current settings
PUT       ``/api/settings``             Replace settings
POST      ``/api/settings/reset``       Restore default settings
GET       ``/api/models``               Available and active models
POST      ``/api/models/active``        Select the active model
GET       ``/api/history``              Recently cleared generations
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    beebridge

Direct invocation::

    python -m beebridge.api.main
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import pydantic
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from beebridge import __version__
from beebridge.api.models import ActiveModelRequest
from beebridge.core.config import config
from beebridge.core.coordinator import SessionCoordinator
from beebridge.core.errors import AlreadyActiveError, NotActiveError, ValidationError
from beebridge.core.models import AppSettings, Cancelled, Completed, Failed, GenerationRequest
from beebridge.core.progress import ProgressUpdate
from beebridge.core.settings_store import SettingsStore
from beebridge.core.validation import format_validation_error

logger = logging.getLogger(__name__)

# Seconds between keep-alive comments on an idle progress stream.
STREAM_KEEPALIVE_SECONDS = 15.0

# ---------------------------------------------------------------------------
# Application lifecycle: coordinator and settings setup and teardown.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown lifecycle.

    On startup:
        Loads the persisted settings and creates the
        :class:`SessionCoordinator`.  No worker is spawned yet; that happens
        on the first ``POST /api/generate``.

    On shutdown:
        Cancels any running generation and stops the worker so that no
        worker process outlives the server.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control back to the application for the duration of its lifetime.
    """
    # --- Startup -----------------------------------------------------------
    store = SettingsStore(config.settings_file)
    store.load()
    app.state.settings_store = store
    app.state.coordinator = SessionCoordinator(config)
    logger.info("SessionCoordinator initialised (worker not started yet).")

    yield  # Application runs here.

    # --- Shutdown ----------------------------------------------------------
    app.state.coordinator.shutdown()
    logger.info("SessionCoordinator shut down.")


app = FastAPI(
    title="beebridge",
    description="Generation orchestration API between the desktop UI and the diffusion worker.",
    version=__version__,
    lifespan=lifespan,
)


def _coordinator() -> SessionCoordinator:
    return app.state.coordinator


def _settings_store() -> SettingsStore:
    return app.state.settings_store


def _outcome_dict(outcome) -> dict:
    """Serialise a terminal outcome for the UI."""
    if isinstance(outcome, Completed):
        return {"kind": "completed", "paths": list(outcome.paths)}
    if isinstance(outcome, Cancelled):
        return {"kind": "cancelled"}
    if isinstance(outcome, Failed):
        return {"kind": "failed", "error": outcome.error, "error_type": outcome.kind}
    return {"kind": "none"}


def _sse(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@app.get("/api/status")
def get_status() -> dict:
    """Return the version, worker liveness, and the current session state."""
    coordinator = _coordinator()
    snapshot = coordinator.query_progress()
    return {
        "version": __version__,
        "worker_running": coordinator.is_worker_running,
        "state": snapshot.state.value,
        "session_id": snapshot.session_id or None,
    }


@app.post("/api/generate")
def generate(body: dict[str, Any] = Body(...)) -> dict:
    """Start a generation.

    Fields the UI leaves out are filled from the persisted settings, so a
    body of ``{"prompt": "a cat"}`` uses the user's default size, steps and
    guidance scale.

    Returns:
        Dictionary with ``session_id`` and the session's initial ``progress``.

    Raises:
        HTTPException: 422 for invalid fields, 409 if a generation is active
            or its result has not been cleared.
    """
    settings = _settings_store().current
    overrides = {key: value for key, value in body.items() if key != "prompt"}
    try:
        request = GenerationRequest.from_settings(body.get("prompt", ""), settings, **overrides)
    except pydantic.ValidationError as e:
        detail = format_validation_error(e)
        logger.warning(f"Rejected generation request: {detail}")
        raise HTTPException(status_code=422, detail=detail) from e

    try:
        session = _coordinator().start_generation(request)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except AlreadyActiveError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e

    return {"session_id": session.session_id, "progress": session.snapshot().to_dict()}


@app.post("/api/cancel")
def cancel() -> dict:
    """Cancel the running generation.

    Raises:
        HTTPException: 409 if no generation is running.
    """
    try:
        snapshot = _coordinator().cancel_active()
    except NotActiveError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return {"success": True, "progress": snapshot.to_dict()}


@app.get("/api/progress")
def get_progress() -> dict:
    """Return the latest snapshot, or the idle snapshot if nothing is running."""
    return _coordinator().query_progress().to_dict()


@app.post("/api/session/clear")
def clear_session() -> dict:
    """Consume the finished generation's outcome and free the slot.

    Raises:
        HTTPException: 409 if there is nothing to clear or it is still running.
    """
    try:
        session = _coordinator().clear_session()
    except (NotActiveError, AlreadyActiveError) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return {"session_id": session.session_id, "outcome": _outcome_dict(session.outcome)}


@app.get("/api/history")
def get_history() -> dict:
    """Return the outcomes of recently cleared generations, newest first."""
    return {
        "items": [
            {
                "session_id": session.session_id,
                "prompt": session.request.prompt,
                "outcome": _outcome_dict(session.outcome),
            }
            for session in _coordinator().history
        ]
    }


@app.get("/api/progress/stream")
async def stream_progress(request: Request, follow: bool = True) -> StreamingResponse:
    """Stream progress updates as Server-Sent Events.

    The current snapshot is sent first.  With ``follow=false`` the stream
    closes after the first terminal (or idle) snapshot; otherwise it keeps
    streaming across sessions until the client disconnects.
    """
    coordinator = _coordinator()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ProgressUpdate] = asyncio.Queue()

    def on_update(update: ProgressUpdate) -> None:
        # Called on the synchronizer thread.
        loop.call_soon_threadsafe(queue.put_nowait, update)

    async def events() -> AsyncIterator[str]:
        # Subscribed here so the finally block always pairs with it.
        unsubscribe = coordinator.subscribe(on_update)
        try:
            current = coordinator.query_progress()
            yield _sse(current.to_dict())
            if not follow and (current.is_terminal or not current.session_id):
                return

            while True:
                if await request.is_disconnected():
                    return
                try:
                    update = await asyncio.wait_for(queue.get(), timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(update.to_dict())
                if not follow and update.snapshot.is_terminal:
                    return
        finally:
            unsubscribe()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/api/settings")
def get_settings() -> dict:
    """Return the current settings."""
    return _settings_store().current.model_dump()


@app.put("/api/settings")
def save_settings(settings: AppSettings) -> dict:
    """Replace the persisted settings wholesale.

    Raises:
        HTTPException: 422 if a default is out of range.
    """
    try:
        saved = _settings_store().save(settings)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return saved.model_dump()


@app.post("/api/settings/reset")
def reset_settings() -> dict:
    """Restore and persist the default settings."""
    return _settings_store().reset().model_dump()


@app.get("/api/models")
def get_models() -> dict:
    """Return the configured model identifiers and the active one."""
    return {
        "models": list(config.available_models),
        "active": _settings_store().current.model_path or None,
    }


@app.post("/api/models/active")
def set_active_model(req: ActiveModelRequest) -> dict:
    """Select the active model and persist the choice.

    Raises:
        HTTPException: 404 if the model is not in the configured list.
    """
    if req.model_id not in config.available_models:
        raise HTTPException(status_code=404, detail=f"Unknown model: {req.model_id}")
    _settings_store().update(model_path=req.model_id)
    return {"success": True, "active": req.model_id}


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~beebridge.core.config.config`
    (``BEEBRIDGE_SERVER_HOST``, ``BEEBRIDGE_SERVER_PORT``,
    ``BEEBRIDGE_LOG_LEVEL``).  Defaults to ``127.0.0.1:7861``.

    This function is registered as the ``beebridge`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "beebridge.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
