"""Shared test fixtures for all test modules."""

import json
import sys
import tempfile
import threading
import time
from pathlib import Path

import pytest
from PIL import Image

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import GridRunConfig, Settings


class FakeBackend:
    """Generation backend double.

    Completes every submission with a solid-color image sized from the
    request's width/height (or ``size``). Failing identity tags report an
    error instead. With ``threaded`` set, each completion runs on its own
    thread after ``delay`` seconds.
    """

    def __init__(self, size=(64, 48), fail=(), threaded=False, delay=0.0, on_submit=None, queued=0):
        self.size = size
        self.fail = set(fail)
        self.threaded = threaded
        self.delay = delay
        self.on_submit = on_submit
        self.queued_requests = queued
        self.submitted: list[tuple[str, dict]] = []
        self.active = 0
        self.peak_active = 0
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    @property
    def tags(self) -> list[str]:
        return [tag for tag, _ in self.submitted]

    def _image_size(self, params):
        width = int(params.get("width") or self.size[0])
        height = int(params.get("height") or self.size[1])
        return width, height

    def submit(self, params, identity_tag, claim, on_output, on_error, timeout):
        with self._lock:
            self.submitted.append((identity_tag, dict(params)))
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
        if self.on_submit is not None:
            self.on_submit(self, claim)

        def _complete():
            if self.delay:
                time.sleep(self.delay)
            with self._lock:
                self.active -= 1
            if identity_tag in self.fail:
                on_error(f"backend failed on {identity_tag}")
                return
            image = Image.new("RGB", self._image_size(params), (255, 0, 0))
            on_output(image, json.dumps(params))

        if self.threaded:
            thread = threading.Thread(target=_complete, daemon=True)
            self._threads.append(thread)
            thread.start()
            return thread
        _complete()
        return None

    def join(self):
        for thread in self._threads:
            thread.join(timeout=5)


class RecordingStore:
    """Image persistence double returning predictable URLs."""

    def __init__(self, fail_ordinals=()):
        self.fail_ordinals = set(fail_ordinals)
        self.saved: list[tuple[int, Image.Image, str | None]] = []

    def save_image(self, image, ordinal, params, metadata):
        if ordinal in self.fail_ordinals:
            return "ERROR"
        self.saved.append((ordinal, image, metadata))
        return f"/generated/images/{ordinal}.png"


class RecordingSink:
    """Progress sink collecting every event."""

    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_backend():
    """Synchronous backend completing every request inline."""
    return FakeBackend()


@pytest.fixture
def threaded_backend():
    """Backend completing each request on its own thread after a short delay."""
    backend = FakeBackend(threaded=True, delay=0.02)
    yield backend
    backend.join()


@pytest.fixture
def image_store():
    """Persistence double that records saved images."""
    return RecordingStore()


@pytest.fixture
def fast_settings():
    """Settings with the ordering delay off and a short poll interval."""
    return Settings(grid=GridRunConfig(max_simul=2, order_delay=0.0, stream_poll_interval=0.05))


@pytest.fixture
def sample_axes():
    """Two axes: X over seeds, Y over steps."""
    return [
        {"mode": "seed", "vals": "1, 2"},
        {"mode": "steps", "vals": "4, 8, 12"},
    ]


def make_image(size=(64, 48), color=(255, 0, 0)) -> Image.Image:
    """Create a solid-color test image."""
    return Image.new("RGB", size, color)
