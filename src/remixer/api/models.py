"""Pydantic request models for the Remixer API.

FastAPI uses these for request validation and OpenAPI documentation.
Malformed bodies are rejected with a 422 before any queue or generation
state is written.

Models
------
GenerateRequest
    Payload for ``POST /api/generate``.  Creates ``count`` independent
    generation/queue-item pairs from one composed prompt.
RemixRequest
    Payload for ``POST /api/remix``.  Queues a fork or replace remix of a
    finished generation.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from remixer.core.queue_manager import MIN_BATCH_COUNT


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/generate`` endpoint.

    Attributes:
        prompt_json: Composed prompt document.  Stored and forwarded
            verbatim; the queue never interprets its contents.
        reference_photo_ids: Reference photos to send with the prompt.
        inline_reference_paths: Inline component reference files, relative
            to the data directory.
        components_used: Components the prompt was composed from (provenance
            only).
        google_search: Allow the provider to ground the prompt with search.
        safety_override: Keep images the provider's safety filter flags.
        count: Number of generations to create.  Out-of-range values are
            clamped by the queue manager to ``1..max_batch_count`` rather
            than rejected.
    """

    prompt_json: dict[str, Any] = Field(
        ...,
        description="Composed prompt document (component category -> value).",
    )
    reference_photo_ids: list[str] | None = Field(
        default=None,
        description="Reference photo IDs to send with the prompt.",
    )
    inline_reference_paths: list[str] | None = Field(
        default=None,
        description="Inline component reference paths, relative to the data dir.",
    )
    components_used: list[Any] | None = Field(
        default=None,
        description="Components the prompt was built from.",
    )
    google_search: bool = Field(
        default=False,
        description="Allow search grounding (providers that support it).",
    )
    safety_override: bool = Field(
        default=False,
        description="Return images even when the safety checker flags them.",
    )
    count: int = Field(
        default=1,
        description="Number of generations to create (clamped to 1..max_batch_count).",
    )

    @field_validator("count", mode="before")
    @classmethod
    def default_missing_count(cls, value: Any) -> Any:
        return MIN_BATCH_COUNT if value is None else value


class RemixRequest(BaseModel):
    """Request body for the ``POST /api/remix`` endpoint.

    Attributes:
        source_id: Generation to remix.  Must exist and have an image.
        edit_instructions: What to change.  Must not be blank.
        mode: ``"fork"`` creates a new child generation; ``"replace"``
            overwrites the source's image in place.
        safety_override: Keep images the provider's safety filter flags.
    """

    source_id: str = Field(..., description="ID of the generation to remix.")
    edit_instructions: str = Field(..., description="Edit instructions for the remix.")
    mode: Literal["fork", "replace"] = Field(
        default="fork",
        description="'fork' creates a lineage child, 'replace' overwrites the source.",
    )
    safety_override: bool = Field(
        default=False,
        description="Return images even when the safety checker flags them.",
    )
