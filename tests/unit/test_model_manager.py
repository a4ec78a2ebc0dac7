"""Tests for remixer.core.model_manager — diffusers pipeline and provider.

All tests use mocked torch and diffusers imports so that no real model
loading or GPU access occurs.  Tests cover:

- Initial state (no model loaded).
- Model loading, pipeline configuration, and model switching.
- Turbo model guidance enforcement.
- Text-to-image vs. image-to-image dispatch.
- Safety checker flag detection.
- Error handling during model loading.
- ``DiffusersProvider`` result mapping and safety override.

Implementation Note
-------------------
``ModelManager`` imports ``torch`` and ``diffusers`` lazily inside its
methods.  To mock these we use ``sys.modules`` injection rather than
``@patch`` decorators, since the module-level names don't exist until the
import statement executes.
"""

from __future__ import annotations

import io
import sys
from unittest.mock import MagicMock

import pytest
from PIL import Image

from remixer.core.config import RemixerConfig
from remixer.core.model_manager import DiffusersProvider, ModelManager
from remixer.core.provider import ProviderRequest

# ---------------------------------------------------------------------------
# Shared helpers for mocking torch and diffusers.
# ---------------------------------------------------------------------------


def _create_mock_torch() -> MagicMock:
    """Create a mock ``torch`` module with the attributes ModelManager uses."""
    mock_torch = MagicMock()
    mock_torch.bfloat16 = "mock_bfloat16"
    mock_torch.float16 = "mock_float16"
    mock_torch.float32 = "mock_float32"

    mock_generator = MagicMock()
    mock_generator.manual_seed.return_value = mock_generator
    mock_torch.Generator.return_value = mock_generator

    mock_torch.cuda.is_available.return_value = False
    return mock_torch


def _mock_output(flags=None) -> MagicMock:
    output = MagicMock()
    output.images = [Image.new("RGB", (64, 64), color=(255, 0, 0))]
    output.nsfw_content_detected = flags
    return output


class _MockContext:
    """Context manager that injects mock torch and diffusers into sys.modules."""

    def __init__(self):
        self.mock_torch = _create_mock_torch()

        self.mock_pipeline = MagicMock()
        self.mock_pipeline.return_value = _mock_output()
        self.mock_pipeline.to.return_value = self.mock_pipeline

        self.mock_img2img = MagicMock()
        self.mock_img2img.return_value = _mock_output()

        self.mock_diffusers = MagicMock()
        self.mock_diffusers.AutoPipelineForText2Image.from_pretrained.return_value = (
            self.mock_pipeline
        )
        self.mock_diffusers.AutoPipelineForImage2Image.from_pipe.return_value = (
            self.mock_img2img
        )

        self._saved: dict[str, object] = {}

    @property
    def from_pretrained(self) -> MagicMock:
        return self.mock_diffusers.AutoPipelineForText2Image.from_pretrained

    def __enter__(self):
        import remixer.core.model_manager as mm

        mm._DTYPE_MAP = None
        for name, module in (("torch", self.mock_torch), ("diffusers", self.mock_diffusers)):
            self._saved[name] = sys.modules.get(name)
            sys.modules[name] = module
        return self

    def __exit__(self, *args):
        for name, module in self._saved.items():
            if module is not None:
                sys.modules[name] = module
            else:
                sys.modules.pop(name, None)

        import remixer.core.model_manager as mm

        mm._DTYPE_MAP = None


def _generate(mgr: ModelManager, **overrides):
    kwargs = {
        "prompt": "test",
        "width": 512,
        "height": 512,
        "steps": 4,
        "guidance_scale": 7.5,
        "seed": 42,
    }
    kwargs.update(overrides)
    return mgr.generate(**kwargs)


# ---------------------------------------------------------------------------
# ModelManager tests.
# ---------------------------------------------------------------------------


class TestModelManagerInit:
    def test_no_model_loaded_initially(self, test_config: RemixerConfig):
        mgr = ModelManager(test_config)
        assert mgr.is_loaded is False
        assert mgr.current_model_id is None


class TestModelLoading:
    def test_load_model_sets_state(self, test_config: RemixerConfig):
        with _MockContext():
            mgr = ModelManager(test_config)
            mgr.load_model("stabilityai/sdxl-turbo")

            assert mgr.is_loaded is True
            assert mgr.current_model_id == "stabilityai/sdxl-turbo"

    def test_load_uses_configured_dtype_and_cache(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            ModelManager(test_config).load_model("some/model")

            kwargs = ctx.from_pretrained.call_args[1]
            assert kwargs["torch_dtype"] == "mock_float32"
            assert kwargs["cache_dir"] == str(test_config.models_dir)
            ctx.mock_pipeline.to.assert_called_once_with("cpu")

    def test_load_same_model_is_noop(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            mgr = ModelManager(test_config)
            mgr.load_model("some/model")
            mgr.load_model("some/model")

            assert ctx.from_pretrained.call_count == 1

    def test_switching_unloads_previous(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            mgr = ModelManager(test_config)
            mgr.load_model("model-a")
            mgr.load_model("model-b")

            assert mgr.current_model_id == "model-b"
            assert ctx.from_pretrained.call_count == 2

    def test_cpu_offload_and_attention_slicing(self, test_config: RemixerConfig):
        test_config.enable_model_cpu_offload = True
        test_config.enable_attention_slicing = True
        with _MockContext() as ctx:
            ModelManager(test_config).load_model("some/model")

            ctx.mock_pipeline.enable_sequential_cpu_offload.assert_called_once()
            ctx.mock_pipeline.enable_attention_slicing.assert_called_once()
            ctx.mock_pipeline.to.assert_not_called()

    def test_load_failure_clears_state(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            ctx.from_pretrained.side_effect = RuntimeError("Out of memory")
            mgr = ModelManager(test_config)

            with pytest.raises(RuntimeError, match="Out of memory"):
                mgr.load_model("some/model")

            assert mgr.is_loaded is False
            assert mgr.current_model_id is None

    def test_unload_clears_state(self, test_config: RemixerConfig):
        with _MockContext():
            mgr = ModelManager(test_config)
            mgr.load_model("some/model")
            mgr.unload()

            assert mgr.is_loaded is False
            assert mgr.current_model_id is None

    def test_unload_without_model_is_noop(self, test_config: RemixerConfig):
        ModelManager(test_config).unload()


class TestGeneration:
    def test_generate_without_model_raises(self, test_config: RemixerConfig):
        mgr = ModelManager(test_config)
        with pytest.raises(RuntimeError, match="No model is loaded"):
            _generate(mgr)

    def test_text_to_image(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            mgr = ModelManager(test_config)
            mgr.load_model("some/model")

            image, flagged = _generate(mgr)

            assert isinstance(image, Image.Image)
            assert flagged is False
            kwargs = ctx.mock_pipeline.call_args[1]
            assert kwargs["width"] == 512
            assert kwargs["height"] == 512
            assert "image" not in kwargs
            ctx.mock_torch.Generator.return_value.manual_seed.assert_called_with(42)

    def test_init_image_uses_img2img(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            mgr = ModelManager(test_config)
            mgr.load_model("some/model")
            source = Image.new("RGBA", (100, 50))

            _generate(mgr, init_image=source, strength=0.4)
            _generate(mgr, init_image=source)

            # The image-to-image view is built once and reused.
            ctx.mock_diffusers.AutoPipelineForImage2Image.from_pipe.assert_called_once_with(
                ctx.mock_pipeline
            )
            kwargs = ctx.mock_img2img.call_args_list[0][1]
            assert kwargs["image"].size == (512, 512)
            assert kwargs["image"].mode == "RGB"
            assert kwargs["strength"] == 0.4
            ctx.mock_pipeline.assert_not_called()

    def test_safety_flag_detected(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            ctx.mock_pipeline.return_value = _mock_output(flags=[True])
            mgr = ModelManager(test_config)
            mgr.load_model("some/model")

            _, flagged = _generate(mgr)

            assert flagged is True

    def test_unflagged_output(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            ctx.mock_pipeline.return_value = _mock_output(flags=[False])
            mgr = ModelManager(test_config)
            mgr.load_model("some/model")

            assert _generate(mgr)[1] is False

    def test_safety_checker_detached_for_call(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            checker = MagicMock(name="safety_checker")
            ctx.mock_pipeline.safety_checker = checker
            seen = []

            def run(**kwargs):
                seen.append(ctx.mock_pipeline.safety_checker)
                return _mock_output()

            ctx.mock_pipeline.side_effect = run
            mgr = ModelManager(test_config)
            mgr.load_model("some/model")

            _, flagged = _generate(mgr, safety_checker=False)

            assert seen == [None]
            assert flagged is False
            assert ctx.mock_pipeline.safety_checker is checker

    def test_safety_checker_kept_by_default(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            checker = MagicMock(name="safety_checker")
            ctx.mock_pipeline.safety_checker = checker
            seen = []

            def run(**kwargs):
                seen.append(ctx.mock_pipeline.safety_checker)
                return _mock_output()

            ctx.mock_pipeline.side_effect = run
            mgr = ModelManager(test_config)
            mgr.load_model("some/model")

            _generate(mgr)

            assert seen == [checker]


class TestTurboEnforcement:
    def test_turbo_forces_guidance_zero(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            mgr = ModelManager(test_config)
            mgr.load_model("stabilityai/SDXL-Turbo")

            _generate(mgr, guidance_scale=7.5)

            assert ctx.mock_pipeline.call_args[1]["guidance_scale"] == 0.0

    def test_non_turbo_keeps_guidance(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            mgr = ModelManager(test_config)
            mgr.load_model("stabilityai/stable-diffusion-xl-base-1.0")

            _generate(mgr, guidance_scale=7.5)

            assert ctx.mock_pipeline.call_args[1]["guidance_scale"] == 7.5


# ---------------------------------------------------------------------------
# DiffusersProvider tests.
# ---------------------------------------------------------------------------


def _request(**overrides) -> ProviderRequest:
    fields = {"prompt_json": {"character": "a goblin"}, "prompt_text": "Character: a goblin"}
    fields.update(overrides)
    return ProviderRequest(**fields)


class TestDiffusersProvider:
    def test_success_returns_png(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            provider = DiffusersProvider(test_config)

            result = provider.generate(_request())

            assert result.success is True
            assert result.mime_type == "image/png"
            assert result.text_response.startswith("seed=")
            with Image.open(io.BytesIO(result.image_bytes)) as img:
                assert img.format == "PNG"
            ctx.from_pretrained.assert_called_once()
            assert ctx.from_pretrained.call_args[0][0] == test_config.model_id

    def test_uses_configured_generation_settings(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            DiffusersProvider(test_config).generate(_request())

            kwargs = ctx.mock_pipeline.call_args[1]
            assert kwargs["prompt"] == "Character: a goblin"
            assert kwargs["num_inference_steps"] == test_config.num_inference_steps
            assert kwargs["width"] == test_config.default_width

    def test_source_image_preferred_over_references(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            source = Image.new("RGB", (10, 10), color=(0, 255, 0))
            reference = Image.new("RGB", (10, 10), color=(0, 0, 255))

            DiffusersProvider(test_config).generate(
                _request(source_image=source, reference_images=[reference])
            )

            init = ctx.mock_img2img.call_args[1]["image"]
            assert init.getpixel((0, 0)) == (0, 255, 0)

    def test_first_reference_used_without_source(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            reference = Image.new("RGB", (10, 10), color=(0, 0, 255))

            DiffusersProvider(test_config).generate(_request(reference_images=[reference]))

            assert ctx.mock_img2img.call_args[1]["image"].getpixel((0, 0)) == (0, 0, 255)

    def test_flagged_image_fails(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            ctx.mock_pipeline.return_value = _mock_output(flags=[True])

            result = DiffusersProvider(test_config).generate(_request())

            assert result.success is False
            assert "safety" in result.error
            assert result.image_bytes is None

    def test_safety_override_keeps_flagged_image(self, test_config: RemixerConfig):
        with _MockContext() as ctx:
            ctx.mock_pipeline.return_value = _mock_output(flags=[True])

            result = DiffusersProvider(test_config).generate(_request(safety_override=True))

            assert result.success is True

    def test_safety_override_detaches_checker(self, test_config: RemixerConfig):
        with _MockContext():
            manager = MagicMock()
            manager.generate.return_value = (Image.new("RGB", (8, 8)), False)
            provider = DiffusersProvider(test_config, manager)

            provider.generate(_request(safety_override=True))
            provider.generate(_request())

            calls = manager.generate.call_args_list
            assert calls[0][1]["safety_checker"] is False
            assert calls[1][1]["safety_checker"] is True

    def test_close_unloads(self, test_config: RemixerConfig):
        with _MockContext():
            manager = ModelManager(test_config)
            provider = DiffusersProvider(test_config, manager)
            provider.generate(_request())

            provider.close()

            assert manager.is_loaded is False
