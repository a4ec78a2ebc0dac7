"""Local diffusers image provider for the Remixer queue.

This module provides :class:`ModelManager`, the single point of control for
loading and invoking HuggingFace diffusers pipelines, and
:class:`DiffusersProvider`, which adapts it to the
:class:`~remixer.core.provider.ImageProvider` interface the queue processor
consumes.

Key Responsibilities
--------------------
- **Lazy model loading** — the pipeline is only loaded when the first queue
  item is processed (or ``load_model()`` is called explicitly).
- **Text-to-image and image-to-image** — plain submissions run the
  text-to-image pipeline; remixes and submissions with reference images run
  an image-to-image pipeline that shares the loaded weights.
- **Turbo-model enforcement** — models whose HuggingFace ID contains
  ``"turbo"`` (case-insensitive) have their ``guidance_scale`` forced to 0.0.
- **Safety checker** — pipelines that report ``nsfw_content_detected`` cause
  the item to fail.  Submissions that set ``safety_override`` run with the
  checker detached and receive the unfiltered image.
- **CUDA memory management** — on unload the pipeline reference is deleted,
  garbage-collected, and ``torch.cuda.empty_cache()`` is called.

Usage
-----
::

    from remixer.core.config import config
    from remixer.core.model_manager import DiffusersProvider

    provider = DiffusersProvider(config)
    result = provider.generate(request)
    provider.close()
"""

from __future__ import annotations

import gc
import io
import logging
import random

from PIL import Image

from remixer.core.config import RemixerConfig
from remixer.core.provider import ImageProvider, ProviderRequest, ProviderResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Dtype string → torch dtype mapping.
# Built lazily so ``torch`` is only imported once a model is actually needed.
# ---------------------------------------------------------------------------
_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the dtype string → ``torch.dtype`` mapping.

    Returns:
        Dictionary mapping ``"bfloat16"``, ``"float16"``, and ``"float32"``
        to their corresponding ``torch.dtype`` values.
    """
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


class ModelManager:
    """Manages the lifecycle of a single diffusers pipeline.

    At any given time, at most one model is loaded in memory.  The
    image-to-image pipeline is derived from the text-to-image pipeline with
    ``from_pipe`` so both share the same weights.

    Attributes:
        _config (RemixerConfig):
            Application configuration — device, dtype, paths, and
            performance flags.
        _pipeline:
            The loaded text-to-image pipeline, or ``None``.
        _img2img_pipeline:
            Image-to-image view of ``_pipeline``, created on first use.
        _current_model_id (str | None):
            HuggingFace identifier of the currently loaded model.
    """

    def __init__(self, config: RemixerConfig) -> None:
        self._config = config
        self._pipeline = None
        self._img2img_pipeline = None
        self._current_model_id: str | None = None

    # -- Public interface ---------------------------------------------------

    def load_model(self, hf_id: str) -> None:
        """Load a diffusers pipeline by HuggingFace model identifier.

        If the requested model is already loaded this method is a no-op.
        If a *different* model is loaded it is unloaded first.

        Args:
            hf_id: HuggingFace model identifier, e.g. ``"stabilityai/sdxl-turbo"``.

        Raises:
            RuntimeError: If the model cannot be loaded (network error, out
                of memory, incompatible model format, etc.).
        """
        if self._current_model_id == hf_id and self._pipeline is not None:
            logger.info("Model '%s' is already loaded — skipping.", hf_id)
            return

        if self._pipeline is not None:
            logger.info(
                "Switching from '%s' to '%s' — unloading current model.",
                self._current_model_id,
                hf_id,
            )
            self.unload()

        import torch
        from diffusers import AutoPipelineForText2Image

        dtype_map = _get_dtype_map()
        torch_dtype = dtype_map.get(self._config.torch_dtype, torch.bfloat16)

        logger.info(
            "Loading model '%s' (dtype=%s, device=%s, cache=%s).",
            hf_id,
            self._config.torch_dtype,
            self._config.device,
            self._config.models_dir,
        )

        try:
            pipeline = AutoPipelineForText2Image.from_pretrained(
                hf_id,
                torch_dtype=torch_dtype,
                cache_dir=str(self._config.models_dir),
            )

            if self._config.enable_model_cpu_offload:
                pipeline.enable_sequential_cpu_offload()
                logger.info("Sequential CPU offloading enabled.")
            else:
                pipeline = pipeline.to(self._config.device)

            if self._config.enable_attention_slicing:
                pipeline.enable_attention_slicing()
                logger.info("Attention slicing enabled.")

            self._pipeline = pipeline
            self._current_model_id = hf_id
            logger.info("Model '%s' loaded successfully.", hf_id)

        except Exception:
            # Leave a clean state so the next item retries the load.
            self._pipeline = None
            self._img2img_pipeline = None
            self._current_model_id = None
            logger.exception("Failed to load model '%s'.", hf_id)
            raise

    def generate(
        self,
        prompt: str,
        width: int,
        height: int,
        steps: int,
        guidance_scale: float,
        seed: int,
        init_image: Image.Image | None = None,
        strength: float = 0.6,
        safety_checker: bool = True,
    ) -> tuple[Image.Image, bool]:
        """Generate a single image using the loaded pipeline.

        Args:
            prompt: Text prompt describing the desired image.
            width: Output width in pixels.
            height: Output height in pixels.
            steps: Number of diffusion inference steps.
            guidance_scale: Classifier-free guidance scale.  Forced to 0.0
                for turbo models.
            seed: Random seed for reproducible generation.
            init_image: Starting image.  When given, the image-to-image
                pipeline is used and the image is resized to the output size.
            strength: How far image-to-image output may drift from
                ``init_image`` (0-1).
            safety_checker: Run the pipeline's safety checker.  When
                ``False`` the checker is detached for this call, so the
                unfiltered image is returned instead of a blacked-out one.

        Returns:
            Tuple of the generated image and whether the pipeline's safety
            checker flagged it.

        Raises:
            RuntimeError: If no model is currently loaded.
        """
        if self._pipeline is None:
            raise RuntimeError("No model is loaded.  Call load_model(hf_id) before generate().")

        import torch

        if self._current_model_id and "turbo" in self._current_model_id.lower():
            if guidance_scale != 0.0:
                logger.warning(
                    "Turbo model detected ('%s') — forcing guidance_scale from %.1f to 0.0.",
                    self._current_model_id,
                    guidance_scale,
                )
                guidance_scale = 0.0

        generator = torch.Generator(device=self._config.device).manual_seed(seed)

        pipeline_kwargs: dict = {
            "prompt": prompt,
            "num_inference_steps": steps,
            "guidance_scale": guidance_scale,
            "generator": generator,
        }

        if init_image is not None:
            pipeline = self._get_img2img_pipeline()
            pipeline_kwargs["image"] = init_image.convert("RGB").resize((width, height))
            pipeline_kwargs["strength"] = strength
            logger.info(
                "Remixing image: %dx%d, strength=%.2f, seed=%d.", width, height, strength, seed
            )
        else:
            pipeline = self._pipeline
            pipeline_kwargs["width"] = width
            pipeline_kwargs["height"] = height
            logger.info("Generating image: %dx%d, %d steps, seed=%d.", width, height, steps, seed)

        checker = getattr(pipeline, "safety_checker", None)
        if not safety_checker and checker is not None:
            pipeline.safety_checker = None
        try:
            output = pipeline(**pipeline_kwargs)
        finally:
            if checker is not None:
                pipeline.safety_checker = checker
        image: Image.Image = output.images[0]

        # Pipelines without a safety checker have no flags (or None).
        flags = getattr(output, "nsfw_content_detected", None)
        flagged = isinstance(flags, (list, tuple)) and bool(flags) and bool(flags[0])

        return image, flagged

    def _get_img2img_pipeline(self):
        if self._img2img_pipeline is None:
            from diffusers import AutoPipelineForImage2Image

            self._img2img_pipeline = AutoPipelineForImage2Image.from_pipe(self._pipeline)
        return self._img2img_pipeline

    def unload(self) -> None:
        """Unload the current model and free GPU memory.

        This method is safe to call when no model is loaded (no-op).
        """
        if self._pipeline is None:
            return

        model_id = self._current_model_id
        logger.info("Unloading model '%s'.", model_id)

        self._pipeline = None
        self._img2img_pipeline = None
        self._current_model_id = None

        gc.collect()

        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
                torch.cuda.synchronize()
                logger.info("CUDA cache cleared after unloading '%s'.", model_id)
        except ImportError:
            pass

    # -- Properties ---------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        """Whether a model pipeline is currently loaded in memory."""
        return self._pipeline is not None

    @property
    def current_model_id(self) -> str | None:
        """HuggingFace ID of the currently loaded model, or ``None``."""
        return self._current_model_id


class DiffusersProvider(ImageProvider):
    """Image provider backed by a local diffusers pipeline.

    Reference images are used as the starting image for image-to-image
    generation: the remix source image when present, otherwise the first
    reference image.  ``google_search`` has no local equivalent and is
    ignored.
    """

    name = "diffusers"

    def __init__(self, config: RemixerConfig, model_manager: ModelManager | None = None) -> None:
        self._config = config
        self._manager = model_manager or ModelManager(config)

    def generate(self, request: ProviderRequest) -> ProviderResult:
        self._manager.load_model(self._config.model_id)

        init_image = request.source_image
        if init_image is None and request.reference_images:
            init_image = request.reference_images[0]

        seed = random.randint(0, 2**32 - 1)
        image, flagged = self._manager.generate(
            prompt=request.prompt_text,
            width=self._config.default_width,
            height=self._config.default_height,
            steps=self._config.num_inference_steps,
            guidance_scale=self._config.guidance_scale,
            seed=seed,
            init_image=init_image,
            strength=self._config.img2img_strength,
            safety_checker=not request.safety_override,
        )

        if flagged and not request.safety_override:
            return ProviderResult.failure("Image blocked by the safety checker")

        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return ProviderResult(
            success=True,
            image_bytes=buffer.getvalue(),
            mime_type="image/png",
            text_response=f"seed={seed}",
        )

    def close(self) -> None:
        self._manager.unload()
