"""Tests for backends.py - session claim, presets and local image store."""

import io
import logging
from unittest.mock import patch

from PIL import Image

from backends import SAVE_FAILED, GenClaim, LocalImageStore, PresetLibrary
from conftest import make_image


class TestGenClaim:
    """Tests for the session claim."""

    def test_counts_work(self):
        claim = GenClaim()
        claim.extend(5)
        claim.complete(2)
        assert claim.waiting_gens == 3
        assert claim.done_gens == 2

    def test_interrupt(self):
        claim = GenClaim()
        assert claim.should_cancel is False
        claim.interrupt()
        assert claim.should_cancel is True

    def test_context_manager_releases_once(self):
        with GenClaim(3) as claim:
            pass
        assert claim.release_count == 1
        assert claim.waiting_gens == 0

    def test_released_on_error(self):
        claim = GenClaim()
        try:
            with claim:
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert claim.release_count == 1

    def test_double_release_warns(self, caplog):
        claim = GenClaim()
        with caplog.at_level(logging.WARNING, logger="backends"):
            claim.release()
            claim.release()
        assert "released 2 times" in caplog.text


class TestPresetLibrary:
    """Tests for preset lookup."""

    def test_case_insensitive(self):
        presets = PresetLibrary({"Fast Draft": {"steps": 4}})
        assert presets.resolve(" fast draft ") == {"steps": 4}
        assert presets.resolve("missing") is None

    def test_resolve_returns_copy(self):
        presets = PresetLibrary()
        presets.add("Square", {"width": 512})
        presets.resolve("square")["width"] = 1
        assert presets.resolve("square") == {"width": 512}
        assert presets.titles() == ["square"]


class TestLocalImageStore:
    """Tests for saving images to disk."""

    def test_save_image(self, temp_dir):
        store = LocalImageStore(temp_dir, url_base="/generated/images/")
        url = store.save_image(make_image(), 7, {}, '{"seed": 7}')

        assert url.startswith("/generated/images/")
        assert url.endswith("-0007.png")
        path = temp_dir / url[len("/generated/images/"):]
        assert Image.open(io.BytesIO(path.read_bytes())).info["parameters"] == '{"seed": 7}'

    def test_save_failure_returns_sentinel(self, temp_dir):
        store = LocalImageStore(temp_dir)
        with patch("pathlib.Path.write_bytes", side_effect=OSError("disk full")):
            assert store.save_image(make_image(), 1, {}, None) == SAVE_FAILED
