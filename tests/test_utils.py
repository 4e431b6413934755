"""Tests for utils.py - shared helpers."""

import base64
import io

import pytest
from PIL import Image

from conftest import make_image
from errors import ConfigurationError
from utils import (
    aspect_ratio_to_size,
    clean_folder_name,
    clean_param_name,
    clean_value_key,
    encode_image,
    fit_to_pixel_count,
    image_to_data_url,
)


class TestCleaning:
    """Tests for name cleaning helpers."""

    def test_clean_param_name(self):
        assert clean_param_name("[Grid Gen] Prompt Replace") == "gridgenpromptreplace"
        assert clean_param_name("Out Width") == "outwidth"

    def test_clean_value_key(self):
        assert clean_value_key("  A Red Car ") == "a_red_car"
        assert clean_value_key("1.5") == "1.5"
        assert clean_value_key("???") == "value"

    def test_clean_folder_name(self):
        assert clean_folder_name("cats/run 1") == "cats/run 1"
        assert clean_folder_name("..\\..\\secret") == "secret"
        assert clean_folder_name('bad<>:"name') == "badname"

    def test_clean_folder_name_empty(self):
        with pytest.raises(ConfigurationError, match="cannot be empty"):
            clean_folder_name("/../.")


class TestSizes:
    """Tests for aspect ratio and pixel count fitting."""

    def test_known_ratio(self):
        assert aspect_ratio_to_size("1:1") == (512, 512)
        assert aspect_ratio_to_size("16:9") == (672, 384)

    def test_free_form_ratio(self):
        width, height = aspect_ratio_to_size("2:1")
        assert width > height
        assert width % 64 == 0 and height % 64 == 0

    def test_not_a_ratio(self):
        assert aspect_ratio_to_size("Custom") == (-1, -1)
        assert aspect_ratio_to_size("0:1") == (-1, -1)

    def test_fit_to_pixel_count(self):
        assert fit_to_pixel_count(512, 512, 1024 * 1024) == (1024, 1024)
        width, height = fit_to_pixel_count(672, 384, 1024 * 1024)
        assert width / height == pytest.approx(672 / 384, rel=0.1)

    def test_fit_never_below_precision(self):
        assert fit_to_pixel_count(1000, 1, 64 * 64) == (2048, 64)


class TestEncoding:
    """Tests for image encoding."""

    def test_png_carries_metadata(self):
        data = encode_image(make_image(), "png", '{"seed": 1}')
        image = Image.open(io.BytesIO(data))
        assert image.info["parameters"] == '{"seed": 1}'

    def test_jpeg_converts_mode(self):
        rgba = Image.new("RGBA", (8, 8), (0, 0, 0, 128))
        data = encode_image(rgba, "jpg")
        assert Image.open(io.BytesIO(data)).format == "JPEG"

    def test_data_url(self):
        url = image_to_data_url(make_image((4, 4)), "png")
        assert url.startswith("data:image/png;base64,")
        decoded = Image.open(io.BytesIO(base64.b64decode(url.split(",", 1)[1])))
        assert decoded.size == (4, 4)
