"""Tests for image_generator.py - mflux wrapper and local generation backend."""

import json
import sys
import threading
from types import ModuleType
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_image
from image_generator import (
    MODEL_DEFAULTS,
    MODEL_PATHS,
    SUPPORTED_MODELS,
    LocalGenerationBackend,
    generate_image,
    clear_model_cache,
    _get_model,
    _model_cache,
)


class TestModelConstants:
    """Tests for model configuration constants."""

    def test_model_defaults_has_all_supported_models(self):
        """All supported models should have defaults."""
        for model in SUPPORTED_MODELS:
            assert model in MODEL_DEFAULTS
            assert "steps" in MODEL_DEFAULTS[model]

    def test_model_paths_has_all_supported_models(self):
        """All supported models should have a path entry (can be None)."""
        for model in SUPPORTED_MODELS:
            assert model in MODEL_PATHS


class TestGetModel:
    """Tests for model instantiation."""

    def teardown_method(self):
        """Clear cache after each test."""
        clear_model_cache()

    @patch("image_generator._model_cache", {})
    def test_get_model_unsupported(self):
        """Test error for unsupported model."""
        with pytest.raises(ValueError, match="Unsupported model"):
            _get_model("nonexistent-model", quantize=8)

    def test_get_model_cache_hit(self):
        """Test that cached models are reused."""
        mock_model = MagicMock()
        _model_cache[("z-image-turbo", 8, True)] = mock_model

        assert _get_model("z-image-turbo", quantize=8, tiled_vae=True) is mock_model

    @patch("image_generator._model_cache", {})
    def test_get_model_z_image_turbo_creation(self):
        """Test z-image-turbo model creation with a fake mflux module tree."""
        mock_instance = MagicMock()

        module_model_config = ModuleType("mflux.models.common.config.model_config")
        module_model_config.ModelConfig = MagicMock()

        module_z_image = ModuleType("mflux.models.z_image")
        module_z_image.ZImageTurbo = MagicMock(return_value=mock_instance)

        module_tiling = ModuleType("mflux.models.common.vae.tiling_config")
        module_tiling.TilingConfig = MagicMock()

        with patch.dict(sys.modules, {
            "mflux.models.common.config.model_config": module_model_config,
            "mflux.models.z_image": module_z_image,
            "mflux.models.common.vae.tiling_config": module_tiling,
        }):
            result = _get_model("z-image-turbo", quantize=8, tiled_vae=True)

        module_z_image.ZImageTurbo.assert_called_once()
        module_tiling.TilingConfig.assert_called_once()
        assert result is mock_instance


class TestGenerateImage:
    """Tests for single image generation."""

    def test_generate_image_unsupported_model(self):
        with pytest.raises(ValueError, match="Unsupported model"):
            generate_image(prompt="test", model="nonexistent-model")

    @patch("image_generator._get_model")
    def test_generate_image_default_steps(self, mock_get_model):
        """Test that default steps are used when not specified."""
        mock_flux = MagicMock()
        mock_get_model.return_value = mock_flux

        generate_image(prompt="test", model="z-image-turbo")

        assert mock_flux.generate_image.call_args.kwargs.get("num_inference_steps") == 9

    @patch("image_generator._get_model")
    @patch("image_generator.random.randint")
    def test_generate_image_random_seed(self, mock_randint, mock_get_model):
        """Test that random seed is generated when not specified."""
        mock_randint.return_value = 12345
        mock_flux = MagicMock()
        mock_get_model.return_value = mock_flux

        generate_image(prompt="test", seed=None)

        assert mock_flux.generate_image.call_args.kwargs.get("seed") == 12345

    @patch("image_generator._get_model")
    def test_generate_image_returns_pil_image(self, mock_get_model):
        """z-image-turbo returns a PIL image, which is passed through."""
        image = make_image()
        mock_get_model.return_value.generate_image.return_value = image

        assert generate_image(prompt="test", model="z-image-turbo") is image

    @patch("image_generator._get_model")
    def test_generate_image_unwraps_generated_image(self, mock_get_model):
        """flux2 models return a wrapper holding the image."""
        result = MagicMock()
        mock_get_model.return_value.generate_image.return_value = result

        assert generate_image(prompt="test", model="flux2-klein-4b") is result.image


class TestLocalGenerationBackend:
    """Tests for the thread pool backend."""

    def _submit(self, backend, params, timeout=60.0):
        outputs, errors = [], []
        future = backend.submit(
            params, "1", None,
            lambda image, metadata: outputs.append((image, metadata)),
            errors.append,
            timeout,
        )
        future.result(timeout=5)
        return outputs, errors

    def test_output(self):
        generate = MagicMock(return_value=make_image())
        backend = LocalGenerationBackend(default_width=256, default_height=128, generate=generate)
        try:
            outputs, errors = self._submit(backend, {"prompt": "a cat", "seed": "7", "steps": ""})
        finally:
            backend.shutdown()

        assert errors == []
        kwargs = generate.call_args.kwargs
        assert kwargs["prompt"] == "a cat"
        assert kwargs["seed"] == 7
        assert kwargs["steps"] is None
        assert (kwargs["width"], kwargs["height"]) == (256, 128)
        assert json.loads(outputs[0][1])["model"] == "z-image-turbo"

    def test_generation_failure(self):
        backend = LocalGenerationBackend(generate=MagicMock(side_effect=RuntimeError("out of memory")))
        try:
            outputs, errors = self._submit(backend, {"prompt": "a cat"})
        finally:
            backend.shutdown()

        assert outputs == []
        assert errors == ["Generation failed: out of memory"]

    def test_timeout_while_queued(self):
        generate = MagicMock(return_value=make_image())
        backend = LocalGenerationBackend(generate=generate)
        try:
            outputs, errors = self._submit(backend, {"prompt": "a cat"}, timeout=-1)
        finally:
            backend.shutdown()

        assert outputs == []
        assert "timed out" in errors[0]
        generate.assert_not_called()

    def test_queued_requests(self):
        started = threading.Event()
        release = threading.Event()

        def slow_generate(**kwargs):
            started.set()
            release.wait(5)
            return make_image()

        backend = LocalGenerationBackend(workers=1, generate=slow_generate)
        try:
            first = backend.submit({"prompt": "a"}, "1", None, lambda *a: None, lambda m: None, 60)
            assert started.wait(5)
            second = backend.submit({"prompt": "b"}, "2", None, lambda *a: None, lambda m: None, 60)
            assert backend.queued_requests == 1
            release.set()
            first.result(timeout=5)
            second.result(timeout=5)
            assert backend.queued_requests == 0
        finally:
            release.set()
            backend.shutdown()
