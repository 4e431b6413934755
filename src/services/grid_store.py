"""Named grid definitions and the per-user history of web page runs."""

import json
import logging
import re
import threading
from pathlib import Path

from filelock import FileLock

from errors import ConfigurationError
from grid_page import PAGE_NAME
from grid_runner import SAVED_CONFIG_NAME
from utils import clean_folder_name

logger = logging.getLogger(__name__)

HISTORY_PREFIX = "history/"
USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


class GridNotFoundError(Exception):
    """No saved grid with that name."""
    pass


def _clean_grid_name(name: str) -> str:
    cleaned = re.sub(r'[^A-Za-z0-9 _.-]', '', name).strip().strip('.')
    if not cleaned:
        raise ConfigurationError("Grid name cannot be empty.")
    return cleaned


def _check_user_id(user_id: str) -> str:
    if not USER_ID_PATTERN.match(user_id or ""):
        raise ConfigurationError(f"Invalid user id: {user_id!r}")
    return user_id


def _contained(path: Path, base_dir: Path) -> Path:
    """Return path if it resolves inside base_dir.

    Raises:
        ConfigurationError: If the path escapes base_dir
    """
    try:
        path.resolve().relative_to(base_dir.resolve())
    except ValueError:
        raise ConfigurationError(f"Access denied: {path} is outside {base_dir}")
    return path


class GridStore:
    """Stores grid definitions per user, plus a shared set visible to everyone."""

    def __init__(self, saved_dir: Path, grids_dir: Path, shared_user: str = "_shared"):
        """Initialize the store.

        Args:
            saved_dir: Directory holding saved grid definitions, one folder per user
            grids_dir: Root of run output folders, one folder per user
            shared_user: Pseudo-user owning public grid definitions
        """
        self.saved_dir = saved_dir
        self.grids_dir = grids_dir
        self.shared_user = shared_user
        self._history: dict[str, list[str]] = {}
        self._history_lock = threading.Lock()

    # Paths

    def _definition_path(self, user_id: str, name: str) -> Path:
        path = self.saved_dir / _check_user_id(user_id) / f"{_clean_grid_name(name)}.json"
        return _contained(path, self.saved_dir)

    def user_grids_dir(self, user_id: str) -> Path:
        return _contained(self.grids_dir / _check_user_id(user_id), self.grids_dir)

    def run_dir(self, user_id: str, folder_name: str) -> Path:
        """Output folder for a run. Raises ConfigurationError on an empty name or bad user id."""
        user_dir = self.user_grids_dir(user_id)
        return _contained(user_dir / clean_folder_name(folder_name), user_dir)

    def exists(self, user_id: str, folder_name: str) -> bool:
        """Whether a web page run already exists in that folder."""
        return (self.run_dir(user_id, folder_name) / PAGE_NAME).exists()

    # Definitions

    def save(self, user_id: str, name: str, data: dict, is_public: bool = False) -> Path:
        _check_user_id(user_id)
        owner = self.shared_user if is_public else user_id
        path = self._definition_path(owner, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(str(path) + ".lock", timeout=10):
            path.write_text(json.dumps(data, indent=2))
        logger.info(f"Saved grid definition '{name}' for {owner}")
        return path

    def get(self, user_id: str, name: str) -> dict:
        """Load a definition, preferring the user's own over a shared one.

        Raises:
            GridNotFoundError: If neither exists
        """
        for owner in (user_id, self.shared_user):
            path = self._definition_path(owner, name)
            if path.exists():
                with FileLock(str(path) + ".lock", timeout=10):
                    return json.loads(path.read_text())
        raise GridNotFoundError("Could not find that Grid Generator save.")

    def delete(self, user_id: str, name: str) -> None:
        """Delete a saved definition, or a run's saved config for ``history/<folder>``.

        The user's own copy is removed in preference to a shared one.
        """
        if name.startswith(HISTORY_PREFIX):
            config = self.run_dir(user_id, name[len(HISTORY_PREFIX):]) / SAVED_CONFIG_NAME
            config.unlink(missing_ok=True)
            self.invalidate_history(user_id)
            return
        for owner in (user_id, self.shared_user):
            path = self._definition_path(owner, name)
            if path.exists():
                with FileLock(str(path) + ".lock", timeout=10):
                    path.unlink(missing_ok=True)
                logger.info(f"Deleted grid definition '{name}' for {owner}")
                return

    def list_names(self, user_id: str) -> list[str]:
        names = []
        for owner in (user_id, self.shared_user):
            owner_dir = self.saved_dir / _check_user_id(owner)
            if owner_dir.exists():
                names.extend(sorted(p.stem for p in owner_dir.glob("*.json")))
        return names

    # History of web page runs with a saved configuration

    def history(self, user_id: str) -> list[str]:
        """Run folders (newest first) that can be reloaded. Cached per user."""
        with self._history_lock:
            cached = self._history.get(user_id)
            if cached is not None:
                return list(cached)

        results = []
        root = self.user_grids_dir(user_id)
        if root.exists():
            configs = sorted(root.rglob(SAVED_CONFIG_NAME), key=lambda p: p.stat().st_mtime, reverse=True)
            results = [config.parent.relative_to(root).as_posix() for config in configs]

        with self._history_lock:
            self._history[user_id] = results
        return list(results)

    def invalidate_history(self, user_id: str) -> None:
        with self._history_lock:
            self._history.pop(user_id, None)

    def list_all(self, user_id: str) -> dict:
        return {"data": self.list_names(user_id), "history": self.history(user_id)}
