"""Image provider interface consumed by the queue processor.

A provider is a black box: given a prompt and optional reference images it
returns encoded image bytes or an error.  Providers may also raise; the
processor treats an exception exactly like an unsuccessful result.

Implementations
---------------
- :class:`~remixer.core.model_manager.DiffusersProvider` runs a local
  HuggingFace diffusers pipeline.
- Tests supply small in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from PIL import Image


@dataclass
class ProviderRequest:
    """Everything a provider needs for one queue item.

    Attributes:
        prompt_json: The composed prompt document, unmodified.
        prompt_text: ``prompt_json`` compiled to text (see
            :func:`~remixer.core.prompt_compiler.compile_prompt`).
        reference_images: Selected reference photos and inline component
            references, already loaded.
        source_image: Image of the remix source generation, if remixing.
        edit_instructions: Remix edit instructions, if remixing.
        google_search: Whether the provider may ground the prompt with search.
        safety_override: Whether a safety-filter hit should still be returned.
    """

    prompt_json: dict[str, Any]
    prompt_text: str
    reference_images: list[Image.Image] = field(default_factory=list)
    source_image: Image.Image | None = None
    edit_instructions: str | None = None
    google_search: bool = False
    safety_override: bool = False


@dataclass
class ProviderResult:
    success: bool
    image_bytes: bytes | None = None
    mime_type: str = "image/png"
    text_response: str | None = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str, text_response: str | None = None) -> "ProviderResult":
        return cls(success=False, error=error, text_response=text_response)


class ImageProvider(ABC):
    """Abstract base class for image providers."""

    name: str = "provider"

    @abstractmethod
    def generate(self, request: ProviderRequest) -> ProviderResult:
        """Produce one image for ``request``.

        May block for seconds to minutes.  Must not touch the database.
        """

    def close(self) -> None:
        """Release provider resources.  Default is a no-op."""
