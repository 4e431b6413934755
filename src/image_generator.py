"""Image generation backend built on mflux (MLX-based FLUX for Apple Silicon)."""

import json
import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from PIL import Image

logger = logging.getLogger(__name__)


# Default steps per model (based on mflux recommendations)
MODEL_DEFAULTS = {
    "z-image-turbo": {"steps": 9},
    "flux2-klein-4b": {"steps": 4},
    "flux2-klein-9b": {"steps": 4},
}

# Pre-quantized model paths on HuggingFace
MODEL_PATHS = {
    "z-image-turbo": "filipstrand/Z-Image-Turbo-mflux-4bit",
    "flux2-klein-4b": None,  # No pre-quantized version available
    "flux2-klein-9b": None,  # No pre-quantized version available
}

SUPPORTED_MODELS = list(MODEL_DEFAULTS.keys())

# Cache for loaded models (expensive to load)
_model_cache: dict = {}
_model_lock = threading.Lock()


def clear_model_cache():
    """Clear the model cache and free memory."""
    _model_cache.clear()
    import gc
    gc.collect()


def _get_model(model: str, quantize: int, tiled_vae: bool = True):
    """Get or create a cached model instance."""
    cache_key = (model, quantize, tiled_vae)
    if cache_key in _model_cache:
        return _model_cache[cache_key]

    if model not in SUPPORTED_MODELS:
        raise ValueError(f"Unsupported model: {model}. Choose from: {SUPPORTED_MODELS}")

    try:
        from mflux.models.common.config.model_config import ModelConfig
    except ImportError as e:
        raise ImportError(
            "mflux is required for image generation. "
            "Install with: pip install mflux\n"
            "Note: mflux requires macOS with Apple Silicon (M1/M2/M3/M4)."
        ) from e

    model_path = MODEL_PATHS.get(model)

    if model == "z-image-turbo":
        from mflux.models.z_image import ZImageTurbo
        instance = ZImageTurbo(
            quantize=quantize if model_path is None else None,
            model_path=model_path,
            model_config=ModelConfig.z_image_turbo(),
        )
    else:
        from mflux.models.flux2 import Flux2Klein
        config = ModelConfig.flux2_klein_4b() if model == "flux2-klein-4b" else ModelConfig.flux2_klein_9b()
        instance = Flux2Klein(
            quantize=None,  # Use full model without quantization
            model_path=model_path,
            model_config=config,
        )

    # Enable tiled VAE decoding for reduced memory usage
    if tiled_vae:
        from mflux.models.common.vae.tiling_config import TilingConfig
        instance.tiling_config = TilingConfig()

    _model_cache[cache_key] = instance
    return instance


def generate_image(
    prompt: str,
    model: str = "z-image-turbo",
    seed: int | None = None,
    steps: int | None = None,
    width: int = 864,
    height: int = 1152,
    quantize: int = 8,
    tiled_vae: bool = True,
) -> Image.Image:
    """
    Generate a single image from a prompt using mflux.

    Args:
        prompt: Text description for the image
        model: Model to use (z-image-turbo, flux2-klein-4b, flux2-klein-9b)
        seed: Random seed for reproducibility (None for random)
        steps: Number of inference steps (None uses model-specific default)
        width: Image width in pixels
        height: Image height in pixels
        quantize: Quantization level (3, 4, 5, 6, or 8)
        tiled_vae: Enable tiled VAE decoding to reduce memory (default: True)

    Returns:
        The generated image

    Raises:
        ImportError: If mflux is not installed
        ValueError: If model is not supported
    """
    if model not in SUPPORTED_MODELS:
        raise ValueError(f"Unsupported model: {model}. Choose from: {SUPPORTED_MODELS}")

    if steps is None:
        steps = MODEL_DEFAULTS[model]["steps"]
    if seed is None:
        seed = random.randint(0, 2**32 - 1)

    # MLX models are not safe to load or run from several threads at once
    with _model_lock:
        flux = _get_model(model, quantize, tiled_vae)
        result = flux.generate_image(
            seed=seed,
            prompt=prompt,
            num_inference_steps=steps,
            height=height,
            width=width,
        )

    # ZImageTurbo returns a PIL image, Flux2Klein a GeneratedImage wrapper
    if isinstance(result, Image.Image):
        return result
    return result.image


class LocalGenerationBackend:
    """Runs generation requests on a local thread pool."""

    def __init__(
        self,
        workers: int = 1,
        default_model: str = "z-image-turbo",
        default_width: int = 864,
        default_height: int = 1152,
        default_quantize: int = 8,
        generate: Callable[..., Image.Image] = generate_image,
    ):
        """Initialize the backend.

        Args:
            workers: Number of generations allowed to run at once
            default_model: Model used when a request does not name one
            default_width: Width used when a request does not set one
            default_height: Height used when a request does not set one
            default_quantize: Quantization used when a request does not set one
            generate: Function producing an image from keyword arguments
        """
        self.default_model = default_model
        self.default_width = default_width
        self.default_height = default_height
        self.default_quantize = default_quantize
        self._generate = generate
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="grid-gen")
        self._lock = threading.Lock()
        self._queued = 0

    @property
    def queued_requests(self) -> int:
        with self._lock:
            return self._queued

    def _request_kwargs(self, params: dict[str, Any]) -> dict[str, Any]:
        def _int(name, default):
            value = params.get(name)
            return int(value) if value not in (None, "") else default

        return {
            "prompt": str(params.get("prompt", "")),
            "model": str(params.get("model") or self.default_model),
            "seed": _int("seed", None),
            "steps": _int("steps", None),
            "width": _int("width", self.default_width),
            "height": _int("height", self.default_height),
            "quantize": _int("quantize", self.default_quantize),
        }

    def submit(self, params, identity_tag, claim, on_output, on_error, timeout) -> Future:
        """Queue one request; exactly one of the callbacks runs when it finishes."""
        submitted_at = time.monotonic()
        with self._lock:
            self._queued += 1

        def _run():
            with self._lock:
                self._queued -= 1
            if time.monotonic() - submitted_at > timeout:
                on_error(f"Request {identity_tag} timed out waiting for a free backend")
                return
            try:
                kwargs = self._request_kwargs(params)
                image = self._generate(**kwargs)
            except Exception as e:
                logger.exception(f"Generation {identity_tag} failed")
                on_error(f"Generation failed: {e}")
                return
            on_output(image, json.dumps({**params, **kwargs}, default=str))

        return self._executor.submit(_run)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
