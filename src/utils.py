"""Shared utility functions for the grid generator."""

import base64
import io
import json
import math
import re

from PIL import Image
from PIL.PngImagePlugin import PngInfo

from errors import ConfigurationError


# Reference sizes at a 512x512 pixel budget, matching the common presets
ASPECT_RATIO_SIZES = {
    "1:1": (512, 512),
    "4:3": (576, 448),
    "3:2": (608, 416),
    "8:5": (608, 384),
    "16:9": (672, 384),
    "21:9": (768, 320),
    "3:4": (448, 576),
    "2:3": (416, 608),
    "5:8": (384, 608),
    "9:16": (384, 672),
    "9:21": (320, 768),
}

_REFERENCE_PIXELS = 512 * 512


def clean_param_name(name: str) -> str:
    """Normalize a parameter name for lookup ("Out Width" -> "outwidth")."""
    return re.sub(r'[^a-z0-9]', '', name.lower())


def clean_value_key(value: str) -> str:
    """Turn an axis value into a filename-safe path fragment.

    Args:
        value: Raw axis value text

    Returns:
        Lower-case key containing only letters, digits, '-', '_' and '.'
    """
    key = re.sub(r'[^a-z0-9._-]+', '_', value.strip().lower())
    key = key.strip('._')
    return key or "value"


def clean_folder_name(name: str) -> str:
    """Clean a user-provided output folder name.

    Path separators are kept so runs can be grouped in subfolders, but
    traversal segments and characters invalid in filenames are removed.

    Raises:
        ConfigurationError: If nothing usable remains
    """
    segments = []
    for segment in name.replace('\\', '/').split('/'):
        segment = re.sub(r'[<>:"|?*\x00-\x1f]', '', segment).strip()
        if segment in ("", ".", ".."):
            continue
        segments.append(segment)
    if not segments:
        raise ConfigurationError("Output folder name cannot be empty.")
    return "/".join(segments)


def aspect_ratio_to_size(value: str) -> tuple[int, int]:
    """Resolve an aspect ratio string to a reference width and height.

    Args:
        value: Ratio such as "16:9", or "Custom"

    Returns:
        (width, height) at the reference pixel budget, or (-1, -1) when the
        value does not describe a ratio
    """
    value = value.strip()
    if value in ASPECT_RATIO_SIZES:
        return ASPECT_RATIO_SIZES[value]
    match = re.match(r'^(\d+(?:\.\d+)?)\s*:\s*(\d+(?:\.\d+)?)$', value)
    if not match:
        return -1, -1
    ratio_w, ratio_h = float(match.group(1)), float(match.group(2))
    if ratio_w <= 0 or ratio_h <= 0:
        return -1, -1
    return fit_to_pixel_count(int(ratio_w * 1000), int(ratio_h * 1000), _REFERENCE_PIXELS)


def fit_to_pixel_count(width: int, height: int, pixel_count: int, precision: int = 64) -> tuple[int, int]:
    """Scale a size to roughly the given pixel count, keeping its aspect ratio.

    Both sides are rounded to the nearest multiple of ``precision`` and are
    never smaller than ``precision``.
    """
    scale = math.sqrt(pixel_count / float(width * height))

    def _round(side: float) -> int:
        return max(precision, int(round(side / precision)) * precision)

    return _round(width * scale), _round(height * scale)


def metadata_to_png_info(metadata: str | dict | None) -> PngInfo:
    """Build PNG text chunks for generation metadata.

    Args:
        metadata: JSON string or dictionary of metadata

    Returns:
        PngInfo carrying the metadata under the "parameters" key
    """
    png_info = PngInfo()
    if metadata:
        text = metadata if isinstance(metadata, str) else json.dumps(metadata)
        png_info.add_text("parameters", text)
    return png_info


def encode_image(image: Image.Image, fmt: str = "png", metadata: str | dict | None = None) -> bytes:
    """Encode an image to bytes, embedding metadata for PNG output."""
    buffer = io.BytesIO()
    pil_format = "JPEG" if fmt.lower() in ("jpg", "jpeg") else fmt.upper()
    if pil_format == "PNG":
        image.save(buffer, format="PNG", pnginfo=metadata_to_png_info(metadata))
    else:
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        image.save(buffer, format=pil_format)
    return buffer.getvalue()


def image_to_data_url(image: Image.Image, fmt: str = "png") -> str:
    """Encode an image as a base64 data URL (used when saving is disabled)."""
    mime = "jpeg" if fmt.lower() in ("jpg", "jpeg") else fmt.lower()
    data = base64.b64encode(encode_image(image, fmt)).decode("ascii")
    return f"data:image/{mime};base64,{data}"
