"""Validation utilities for generation requests and settings."""

import logging
from typing import Any

import pydantic

from .errors import ValidationError
from .models import AppSettings, GenerationRequest

logger = logging.getLogger(__name__)


def format_validation_error(exc: pydantic.ValidationError) -> str:
    """Collapse a pydantic error into one line suitable for the UI."""
    parts = []
    for err in exc.errors():
        location = ".".join(str(loc) for loc in err.get("loc", ())) or "request"
        message = err.get("msg", "invalid value")
        # Strip pydantic's "Value error, " prefix from custom validators.
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        parts.append(f"{location}: {message}")
    return "; ".join(parts)


def validate_generation_request(request: GenerationRequest | dict[str, Any]) -> GenerationRequest:
    """Validate a generation request with user-friendly messages.

    Requests are re-validated even when already constructed, since a model
    instance can be mutated after construction.

    Args:
        request: Request model or raw field mapping

    Returns:
        A freshly validated GenerationRequest

    Raises:
        ValidationError: If any field is missing or out of range
    """
    data = request.model_dump() if isinstance(request, GenerationRequest) else request
    try:
        return GenerationRequest.model_validate(data)
    except pydantic.ValidationError as e:
        message = format_validation_error(e)
        logger.warning(f"Rejected generation request: {message}")
        raise ValidationError(message) from e


def validate_settings(settings: AppSettings | dict[str, Any]) -> AppSettings:
    """Validate persisted defaults before they are saved.

    Args:
        settings: Settings model or raw field mapping

    Returns:
        A freshly validated AppSettings

    Raises:
        ValidationError: If any default is out of range
    """
    data = settings.model_dump() if isinstance(settings, AppSettings) else settings
    try:
        return AppSettings.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(format_validation_error(e)) from e


def validate_prompt_content(prompt: str, max_length: int = 100000) -> None:
    """Validate prompt text content.

    Note:
        Character count is a poor proxy for token count, so the limit is very
        high; the worker's tokenizer enforces the real limit.

    Args:
        prompt: Prompt text to validate
        max_length: Maximum allowed prompt length (default: 100,000 characters)

    Raises:
        ValidationError: If prompt is too long
    """
    if len(prompt) > max_length:
        raise ValidationError(
            f"Prompt is too long ({len(prompt)} characters). Maximum is {max_length} characters."
        )
