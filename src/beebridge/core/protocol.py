"""Line protocol codec for the generation worker.

Every message is a single UTF-8 line made of three space-separated parts: a
4-character marker, a 4-character code, and a JSON object payload.

Outbound (bridge → worker)::

    b2py t2im {"prompt": "a cat", "img_width": 512, ...}
    b2py stop {}

Inbound (worker → bridge)::

    sdbk dnpr {"current_step": 3, "total_steps": 20, "status": "Building image..."}
    sdbk nwim {"generated_img_path": "/out/1.png"}
    sdbk errr {"error": "CUDA out of memory"}

Decoding
--------
:func:`decode_line` turns a worker line into one of the response variants
below.  The worker's stdout is shared with whatever its libraries print, so
lines that do not start with the ``sdbk`` marker are *noise*: they decode to
``None`` rather than raising.  A line that does carry the marker but is
malformed raises :class:`~beebridge.core.errors.DecodeError`.  Codes other
than ``dnpr``, ``nwim`` and ``errr`` decode to :class:`Unrecognized` so the
session can log them without failing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import DecodeError
from .models import GenerationRequest

logger = logging.getLogger(__name__)

SOURCE_MARKER = "b2py"
DESTINATION_MARKER = "sdbk"

# Command codes (bridge → worker).
CMD_TEXT_TO_IMAGE = "t2im"
CMD_STOP = "stop"

# Response codes (worker → bridge).
RESP_PROGRESS = "dnpr"
RESP_NEW_IMAGE = "nwim"
RESP_ERROR = "errr"

TOKEN_LENGTH = 4


@dataclass(frozen=True)
class Progress:
    """Step update for the running generation."""

    current_step: int
    total_steps: int | None = None
    status: str = ""


@dataclass(frozen=True)
class NewImage:
    """One or more finished output images."""

    paths: tuple[str, ...]
    aux_path: str | None = None


@dataclass(frozen=True)
class WorkerError:
    """Explicit error reported by the worker."""

    message: str


@dataclass(frozen=True)
class Unrecognized:
    """Well-formed line with a code this bridge does not interpret."""

    code: str
    payload: dict[str, Any] = field(default_factory=dict)


Response = Union[Progress, NewImage, WorkerError, Unrecognized]


def _check_token(token: str, kind: str) -> None:
    if len(token) != TOKEN_LENGTH or " " in token:
        raise ValueError(f"{kind} must be exactly {TOKEN_LENGTH} characters, got {token!r}")


def encode_command(code: str, payload: dict[str, Any], marker: str = SOURCE_MARKER) -> str:
    """Encode an outbound command as a single newline-terminated line.

    Args:
        code: 4-character command code, e.g. ``"t2im"``.
        payload: JSON-serialisable mapping.
        marker: 4-character source marker.

    Returns:
        ``"<marker> <code> <json>\\n"``.  ``json.dumps`` escapes embedded
        newlines, so the result always contains exactly one terminator.

    Raises:
        ValueError: If the marker or code is not 4 characters long.
    """
    _check_token(marker, "marker")
    _check_token(code, "command code")
    return f"{marker} {code} {json.dumps(payload, ensure_ascii=False)}\n"


def encode_generation(request: GenerationRequest) -> str:
    """Encode a text-to-image command for *request*."""
    return encode_command(CMD_TEXT_TO_IMAGE, request.to_payload())


def encode_stop() -> str:
    """Encode the cooperative cancel command."""
    return encode_command(CMD_STOP, {})


def split_line(line: str) -> tuple[str, str, dict[str, Any]]:
    """Split a protocol line into ``(marker, code, payload)``.

    Args:
        line: A line with or without its trailing terminator.

    Returns:
        The marker, the code and the decoded JSON object.

    Raises:
        DecodeError: If the line is not three tokens with a JSON object last.
    """
    stripped = line.rstrip("\r\n")
    parts = stripped.split(" ", 2)
    if len(parts) != 3:
        raise DecodeError(f"Expected '<marker> <code> <json>', got {stripped!r}", stripped)

    marker, code, raw_payload = parts
    if len(marker) != TOKEN_LENGTH or len(code) != TOKEN_LENGTH:
        raise DecodeError(f"Marker and code must be {TOKEN_LENGTH} characters: {stripped!r}", stripped)

    try:
        payload = json.loads(raw_payload)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON payload for '{code}': {e}", stripped) from e

    if not isinstance(payload, dict):
        raise DecodeError(f"Payload for '{code}' is not a JSON object", stripped)

    return marker, code, payload


def _as_int(payload: dict[str, Any], key: str, code: str, line: str) -> int:
    value = payload.get(key)
    # bool is an int subclass; a worker sending true/false here is malformed.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"'{code}' payload field '{key}' must be a number", line)
    return int(value)


def _decode_response(code: str, payload: dict[str, Any], line: str) -> Response:
    if code == RESP_PROGRESS:
        current = _as_int(payload, "current_step", code, line)
        total = payload.get("total_steps")
        return Progress(
            current_step=current,
            total_steps=_as_int(payload, "total_steps", code, line) if total is not None else None,
            status=str(payload.get("status", "")),
        )

    if code == RESP_NEW_IMAGE:
        paths: list[str] = []
        single = payload.get("generated_img_path")
        if single:
            paths.append(str(single))
        many = payload.get("generated_img_paths")
        if isinstance(many, list):
            paths.extend(str(p) for p in many if p)
        if not paths:
            raise DecodeError("'nwim' payload carries no output path", line)
        aux = payload.get("aux_output_image_path")
        return NewImage(paths=tuple(paths), aux_path=str(aux) if aux else None)

    if code == RESP_ERROR:
        message = payload.get("error") or payload.get("message") or "Worker reported an error"
        return WorkerError(message=str(message))

    return Unrecognized(code=code, payload=payload)


def decode_line(line: str, marker: str = DESTINATION_MARKER) -> Response | None:
    """Decode one line of worker output.

    Args:
        line: Raw line from the worker's stdout.
        marker: Destination marker identifying protocol lines.

    Returns:
        A response variant, or ``None`` if the line is not a protocol line.

    Raises:
        DecodeError: If a protocol line is malformed.
    """
    stripped = line.rstrip("\r\n")
    if stripped.split(" ", 1)[0] != marker:
        return None

    _, code, payload = split_line(stripped)
    return _decode_response(code, payload, stripped)
