"""Contracts the grid runner needs from its collaborators, with local implementations.

The runner only talks to these narrow interfaces: a generation backend, a
session claim, a preset resolver, image persistence and a progress sink.
"""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from PIL import Image

from utils import encode_image

logger = logging.getLogger(__name__)

# Returned by ImagePersistence.save_image when the image could not be written
SAVE_FAILED = "ERROR"


class GenerationBackend(Protocol):
    """Produces images for parameter sets.

    ``submit`` must eventually call exactly one of ``on_output`` or
    ``on_error``, exactly once, possibly from another thread.
    """

    @property
    def queued_requests(self) -> int:
        """Number of requests waiting in the backend's own queue."""
        ...

    def submit(
        self,
        params: dict[str, Any],
        identity_tag: str,
        claim: "SessionClaim",
        on_output: Callable[[Image.Image, str | None], None],
        on_error: Callable[[str], None],
        timeout: float,
    ) -> Any:
        """Submit one generation request and return a handle for it."""
        ...


class SessionClaim(Protocol):
    """A scoped reservation of generation work for one session."""

    @property
    def should_cancel(self) -> bool:
        ...

    def extend(self, gens: int = 0) -> None:
        ...

    def complete(self, gens: int = 0) -> None:
        ...

    def release(self) -> None:
        ...


class PresetResolver(Protocol):
    """Looks up a named preset for the current session."""

    def resolve(self, name: str) -> dict[str, Any] | None:
        """Return the preset's parameter patch, or None if it does not exist."""
        ...


class ImagePersistence(Protocol):
    """Saves output images for the current session."""

    def save_image(self, image: Image.Image, ordinal: int, params: dict[str, Any], metadata: str | None) -> str:
        """Save an image and return its URL, or SAVE_FAILED."""
        ...


class ProgressSink(Protocol):
    """Receives JSON-like events for a live client."""

    def send(self, event: dict) -> None:
        ...


class GenClaim:
    """Thread-safe session claim with cooperative cancellation."""

    def __init__(self, gens: int = 0):
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self.waiting_gens = gens
        self.done_gens = 0
        self.release_count = 0

    @property
    def should_cancel(self) -> bool:
        return self._cancel.is_set()

    def interrupt(self) -> None:
        """Ask the run holding this claim to stop submitting work."""
        self._cancel.set()

    def extend(self, gens: int = 0) -> None:
        with self._lock:
            self.waiting_gens += gens

    def complete(self, gens: int = 0) -> None:
        with self._lock:
            self.waiting_gens = max(0, self.waiting_gens - gens)
            self.done_gens += gens

    def release(self) -> None:
        with self._lock:
            self.release_count += 1
            count = self.release_count
            self.waiting_gens = 0
        if count > 1:
            logger.warning(f"Session claim released {count} times")

    def __enter__(self) -> "GenClaim":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class PresetLibrary:
    """In-memory presets keyed by case-insensitive title."""

    def __init__(self, presets: dict[str, dict[str, Any]] | None = None):
        self._presets = {title.lower(): dict(patch) for title, patch in (presets or {}).items()}

    def add(self, title: str, patch: dict[str, Any]) -> None:
        self._presets[title.lower()] = dict(patch)

    def titles(self) -> list[str]:
        return sorted(self._presets)

    def resolve(self, name: str) -> dict[str, Any] | None:
        patch = self._presets.get(name.strip().lower())
        return dict(patch) if patch is not None else None


class LocalImageStore:
    """Saves images under a directory and serves them from a URL prefix."""

    def __init__(self, images_dir: Path, url_base: str = "/generated/images", fmt: str = "png"):
        """Initialize the store.

        Args:
            images_dir: Directory images are written to (one subfolder per day)
            url_base: URL prefix under which images_dir is served
            fmt: Image file format extension
        """
        self.images_dir = images_dir
        self.url_base = url_base.rstrip("/")
        self.fmt = fmt

    def save_image(self, image: Image.Image, ordinal: int, params: dict[str, Any], metadata: str | None) -> str:
        day = datetime.now().strftime("%Y-%m-%d")
        stamp = datetime.now().strftime("%H%M%S%f")
        relative = f"{day}/{stamp}-{ordinal:04d}.{self.fmt}"
        target = self.images_dir / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(encode_image(image, self.fmt, metadata))
        except OSError as e:
            logger.error(f"Failed to save image {target}: {e}")
            return SAVE_FAILED
        return f"{self.url_base}/{relative}"
