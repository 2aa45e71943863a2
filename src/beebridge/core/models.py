"""Data models for generation requests, progress snapshots and settings.

Requests and settings are Pydantic models so that bounded fields are checked
at construction time.  Snapshots and outcomes are frozen dataclasses: they are
produced by a session under its lock and handed to readers as immutable
values, so a reader can never observe a torn update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# Bounds shared by requests and persisted defaults.
MIN_DIMENSION = 256
MAX_DIMENSION = 1024
DEFAULT_DIMENSION = 512
MIN_STEPS = 10
MAX_STEPS = 50
DEFAULT_STEPS = 20
MIN_GUIDANCE = 1.0
MAX_GUIDANCE = 20.0
DEFAULT_GUIDANCE = 7.5
MAX_IMAGES = 10
MAX_SEED = 2**32 - 1


class GenerationRequest(BaseModel):
    """Parameters for one text-to-image generation.

    Field names match the worker's payload keys so that the model can be
    dumped straight into a protocol line.

    Attributes:
        prompt: Text prompt; must contain non-whitespace characters.
        img_width: Image width in pixels (256-1024).
        img_height: Image height in pixels (256-1024).
        num_imgs: Number of images to generate (1-10).
        num_inference_steps: Number of diffusion steps (10-50).
        guidance_scale: Classifier-free guidance scale (1.0-20.0).
        input_image_path: Optional initial image for image-to-image.
        mask_image_path: Optional mask for inpainting.
        strength: Optional image-to-image strength (0.0-1.0).
        seed: Optional seed; the worker picks one when omitted.
        negative_prompt: Optional text describing what to avoid.
    """

    prompt: str = Field(..., description="Text prompt (non-empty).")
    img_width: int = Field(default=DEFAULT_DIMENSION, ge=MIN_DIMENSION, le=MAX_DIMENSION)
    img_height: int = Field(default=DEFAULT_DIMENSION, ge=MIN_DIMENSION, le=MAX_DIMENSION)
    num_imgs: int = Field(default=1, ge=1, le=MAX_IMAGES)
    num_inference_steps: int = Field(default=DEFAULT_STEPS, ge=MIN_STEPS, le=MAX_STEPS)
    guidance_scale: float = Field(default=DEFAULT_GUIDANCE, ge=MIN_GUIDANCE, le=MAX_GUIDANCE)
    input_image_path: str | None = Field(default=None)
    mask_image_path: str | None = Field(default=None)
    strength: float | None = Field(default=None, ge=0.0, le=1.0)
    seed: int | None = Field(default=None, ge=0, le=MAX_SEED)
    negative_prompt: str | None = Field(default=None)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Prompt cannot be empty")
        return value.strip()

    @classmethod
    def from_settings(cls, prompt: str, settings: AppSettings, **overrides) -> GenerationRequest:
        """Build a request whose defaults come from the user's settings.

        Args:
            prompt: Text prompt.
            settings: Persisted user defaults.
            **overrides: Explicit field values that win over the settings.

        Returns:
            A validated request.
        """
        values = {
            "prompt": prompt,
            "img_width": settings.default_width,
            "img_height": settings.default_height,
            "num_inference_steps": settings.default_inference_steps,
            "guidance_scale": settings.default_guidance_scale,
        }
        values.update(overrides)
        return cls(**values)

    def to_payload(self) -> dict:
        """Return the worker payload, omitting unset optional fields."""
        return self.model_dump(exclude_none=True)


class AppSettings(BaseModel):
    """User-configurable defaults persisted between runs.

    Loaded once at startup and overwritten wholesale on save.
    """

    # ``model_path`` would otherwise trip pydantic's protected namespace check.
    model_config = ConfigDict(protected_namespaces=())

    default_width: int = Field(default=DEFAULT_DIMENSION, ge=MIN_DIMENSION, le=MAX_DIMENSION)
    default_height: int = Field(default=DEFAULT_DIMENSION, ge=MIN_DIMENSION, le=MAX_DIMENSION)
    default_inference_steps: int = Field(default=DEFAULT_STEPS, ge=MIN_STEPS, le=MAX_STEPS)
    default_guidance_scale: float = Field(
        default=DEFAULT_GUIDANCE, ge=MIN_GUIDANCE, le=MAX_GUIDANCE
    )
    output_directory: str = Field(default="")
    model_path: str = Field(default="")


class SessionState(str, Enum):
    """Lifecycle state of a generation session.

    ``IDLE`` is never held by a session object; it is reported when the
    coordinator's slot is empty.
    """

    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


@dataclass(frozen=True)
class Completed:
    """Terminal outcome: the worker produced every requested image."""

    paths: tuple[str, ...]


@dataclass(frozen=True)
class Cancelled:
    """Terminal outcome: the user cancelled before a terminal response."""

    pass


@dataclass(frozen=True)
class Failed:
    """Terminal outcome: the session failed.

    Attributes:
        error: Human-readable message for the UI.
        kind: Name of the error class that caused the failure.
    """

    error: str
    kind: str = "BridgeError"


Outcome = Union[Completed, Cancelled, Failed]


@dataclass(frozen=True)
class ProgressSnapshot:
    """Read-consistent view of a session's progress.

    ``total_steps`` is copied from the originating request and never changes
    for the lifetime of a session; ``current_step`` never exceeds it.
    """

    session_id: str
    state: SessionState
    current_step: int
    total_steps: int
    status: str
    error: str | None = None
    output_paths: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_complete(self) -> bool:
        return self.state is SessionState.COMPLETED

    @property
    def is_cancelled(self) -> bool:
        return self.state is SessionState.CANCELLED

    @property
    def is_failed(self) -> bool:
        return self.state is SessionState.FAILED

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @classmethod
    def idle(cls) -> ProgressSnapshot:
        """Snapshot reported when no session is active."""
        return cls(
            session_id="",
            state=SessionState.IDLE,
            current_step=0,
            total_steps=0,
            status="No generation in progress",
        )

    def to_dict(self) -> dict:
        """Serialise for JSON transports, including the derived flags."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "status": self.status,
            "is_complete": self.is_complete,
            "is_cancelled": self.is_cancelled,
            "is_failed": self.is_failed,
            "error": self.error,
            "output_paths": list(self.output_paths),
        }
