"""Error taxonomy for grid runs."""

import logging

logger = logging.getLogger(__name__)


class GridError(Exception):
    """Base class for errors whose message is safe to show to the client."""

    fatal = False


class ConfigurationError(GridError):
    """Malformed grid or axis definition. Raised before any job is submitted."""
    pass


class UnsupportedLayoutError(ConfigurationError):
    """Composite image output requested for more than three axes."""
    pass


class PresetNotFoundError(GridError):
    """A cell referenced a preset the session does not have."""
    pass


class GenerationError(GridError):
    """The generation backend reported a failure for one cell."""
    pass


class PersistenceError(GridError):
    """An output could not be saved. Always ends the run."""

    fatal = True


class GridCancelledError(GridError):
    """Cooperative cancellation was observed. Not a failure."""
    pass


class InternalError(Exception):
    """Unclassified failure; only an opaque message reaches the client."""
    pass


def as_run_error(exc: Exception) -> Exception:
    """Wrap an unclassified exception in InternalError, keeping it as the cause.

    Grid errors and internal errors pass through unchanged.
    """
    if isinstance(exc, (GridError, InternalError)):
        return exc
    wrapped = InternalError(f"{type(exc).__name__}: {exc}")
    wrapped.__cause__ = exc
    return wrapped


def to_error_event(exc: BaseException) -> dict:
    """Convert an exception into the terminal error event sent to clients.

    Readable grid errors carry their message. Anything else is logged in full
    and reported as an internal error.
    """
    if isinstance(exc, GridError):
        return {"error": f"Failed due to: {exc}"}
    logger.error("Grid generator hit internal error", exc_info=exc)
    return {"error": "Failed due to internal error."}
