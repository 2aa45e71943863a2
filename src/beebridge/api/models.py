"""Pydantic request models for the bridge API.

Generation requests and settings bodies reuse the core models
(:class:`~beebridge.core.models.GenerationRequest`,
:class:`~beebridge.core.models.AppSettings`); only the API-specific payloads
live here.

Models
------
ActiveModelRequest
    Payload for ``POST /api/models/active``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ActiveModelRequest(BaseModel):
    """Request body for the ``POST /api/models/active`` endpoint.

    Attributes:
        model_id: Identifier of the model to make active (must be one of
            ``config.available_models``).
    """

    model_id: str = Field(
        ...,
        min_length=1,
        description="Model identifier from the configured model list.",
    )
