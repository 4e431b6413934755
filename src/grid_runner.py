"""Grid run orchestration: walk the cells, submit them under a concurrency cap,
and handle each completion as it arrives.

The submission loop runs on one thread; backend completions may arrive on any
thread, in any order. Everything they share lives in RunState.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable

from PIL import Image

from backends import SAVE_FAILED, GenerationBackend, ImagePersistence, PresetResolver, SessionClaim
from errors import GenerationError, GridCancelledError, PersistenceError, PresetNotFoundError, as_run_error
from grid_axes import Cell, Grid, OutputType, expand_cells
from grid_hooks import PRESETS_PARAMS, GridHooks
from grid_page import write_grid_page
from run_state import ConcurrencyGate, RunState
from utils import clean_param_name, encode_image, image_to_data_url

logger = logging.getLogger(__name__)

SAVED_CONFIG_NAME = "saved_config.json"


class RunStatus(str, Enum):
    """Lifecycle of a grid run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunOptions:
    """Per-run behaviour switches."""
    continue_on_error: bool = False
    show_outputs: bool = True
    dry_run: bool = False
    overwrite: bool = False  # web page mode: regenerate cells whose file already exists
    do_not_save: bool = False  # send data URLs instead of saving individual images
    save_config: dict | None = None
    output_dir: Path | None = None  # web page mode only
    url_base: str = ""
    timeout: float = 20160 * 60.0
    order_delay: float = 0.02
    max_requests_forced_order: int = 20
    poll_interval: float = 1.0


@dataclass(eq=False)
class GenerationJob:
    """One cell on its way through the backend. Hashes by identity."""
    cell: Cell
    params: dict[str, Any]
    handle: Any = None
    done: bool = False

    @property
    def ordinal(self) -> int:
        return self.cell.ordinal


@dataclass
class RunSummary:
    total: int = 0
    submitted: int = 0
    skipped: int = 0
    dry: int = 0
    outputs: list[str] = field(default_factory=list)


class GridRunner:
    """Drives one grid run from expansion to drained completion."""

    def __init__(
        self,
        grid: Grid,
        backend: GenerationBackend,
        claim: SessionClaim,
        state: RunState,
        hooks: GridHooks | None = None,
        presets: PresetResolver | None = None,
        persistence: ImagePersistence | None = None,
        options: RunOptions | None = None,
        on_config_saved: Callable[[], None] | None = None,
    ):
        """Initialize the runner.

        Args:
            grid: Parsed grid definition
            backend: Generation backend jobs are submitted to
            claim: Session claim; polled for cancellation
            state: Shared run state
            hooks: Extension hooks applied during expansion and execution
            presets: Resolver for the ``presets`` parameter
            persistence: Image saver for grid image and just-images modes
            options: Run options
            on_config_saved: Called after a web page run writes its saved config
        """
        self.grid = grid
        self.backend = backend
        self.claim = claim
        self.state = state
        self.hooks = hooks or GridHooks()
        self.presets = presets
        self.persistence = persistence
        self.options = options or RunOptions()
        self.on_config_saved = on_config_saved
        self.status = RunStatus.IDLE
        self.cells: list[Cell] = []
        self.summary = RunSummary()
        self.gate = ConcurrencyGate(state, self._should_stop_admitting, self.options.poll_interval)

        if grid.output_type == OutputType.WEB_PAGE and self.options.output_dir is None:
            raise ValueError("Web page output requires an output directory")

    # Entry point

    def run(self) -> RunStatus:
        """Run the grid. Never raises; failures land in the state's error slot."""
        self.status = RunStatus.RUNNING
        try:
            self._run()
        except GridCancelledError:
            logger.info("Grid run cancelled, waiting for in-flight jobs to finish")
            self.state.request_cancel()
        except Exception as e:
            self.state.set_error(as_run_error(e))

        self.state.wait_until_idle(self.options.poll_interval)
        self.status = self._final_status()

        if self.status == RunStatus.COMPLETED and self.grid.output_type == OutputType.WEB_PAGE:
            try:
                self._save_config()
            except OSError as e:
                self.state.set_error(PersistenceError(f"Failed to save grid configuration: {e}"))
                self.status = RunStatus.FAILED

        logger.info(
            f"Grid run finished as {self.status.value}: {self.summary.submitted} submitted, "
            f"{self.summary.skipped} skipped, {self.summary.total} total"
        )
        self.state.signal()
        return self.status

    def _run(self) -> None:
        self.cells = expand_cells(self.grid, self.hooks)
        self.summary.total = len(self.cells)
        self.claim.extend(len(self.cells))
        self.hooks.pre_run(self)
        self.state.add_output({"status": {"stage": "expanded", "total": len(self.cells)}})

        if self.grid.output_type == OutputType.WEB_PAGE:
            write_grid_page(self.options.output_dir, self.grid, self.cells)

        if self.options.dry_run:
            self._dry_run()
            return

        for cell in self.cells:
            self._check_cancel()
            if self._stopped_by_error():
                logger.info("Grid run stopping submission after error")
                return

            if self._already_generated(cell):
                self.summary.skipped += 1
                self.claim.complete(1)
                continue

            try:
                params = self._prepare_params(cell)
            except PresetNotFoundError as e:
                self.state.set_error(e)
                self.claim.complete(1)
                continue

            job = GenerationJob(cell=cell, params=params)
            if not self.gate.admit(job):
                self._check_cancel()
                return
            self._submit(job)

            queued = self.backend.queued_requests
            if queued < self.options.max_requests_forced_order and self.options.order_delay > 0:
                logger.debug(
                    f"Grid gen micro-pausing to maintain order as {queued} < "
                    f"{self.options.max_requests_forced_order}"
                )
                time.sleep(self.options.order_delay)

    def _dry_run(self) -> None:
        self.hooks.pre_dry(self)
        for cell in self.cells:
            self._check_cancel()
            params = self._prepare_params(cell)
            self.hooks.post_dry(self, cell, params)
            self.summary.dry += 1
            self.claim.complete(1)

    # Submission helpers

    def _check_cancel(self) -> None:
        if self.claim.should_cancel or self.state.cancel_requested:
            logger.debug("Grid run observed cancellation request")
            raise GridCancelledError("Grid run cancelled")

    def _stopped_by_error(self) -> bool:
        if self.state.error is None:
            return False
        return self.state.has_fatal_error or not self.options.continue_on_error

    def _should_stop_admitting(self) -> bool:
        return self.claim.should_cancel or self.state.cancel_requested or self._stopped_by_error()

    def _stem(self, cell: Cell) -> str:
        return cell.path_key or "image"

    def _already_generated(self, cell: Cell) -> bool:
        if self.grid.output_type != OutputType.WEB_PAGE or self.options.overwrite:
            return False
        return (self.options.output_dir / f"{self._stem(cell)}.{self.grid.format}").exists()

    def _prepare_params(self, cell: Cell) -> dict[str, Any]:
        """Resolve presets and apply hooks to a copy of the cell's params.

        Raises:
            PresetNotFoundError: If a named preset does not exist
        """
        params = dict(cell.params)
        preset_key = next((k for k in params if clean_param_name(k) in PRESETS_PARAMS), None)
        if preset_key is not None:
            names = str(params.pop(preset_key))
            for name in (n.strip().lower() for n in names.split(",")):
                if not name:
                    continue
                patch = self.presets.resolve(name) if self.presets is not None else None
                if patch is None:
                    raise PresetNotFoundError(f"Could not find preset '{name}'")
                params.update(patch)
        self.hooks.apply(cell, params)
        return params

    def _submit(self, job: GenerationJob) -> None:
        try:
            job.handle = self.backend.submit(
                job.params,
                str(job.ordinal),
                self.claim,
                partial(self._on_output, job),
                partial(self._on_error, job),
                self.options.timeout,
            )
            self.summary.submitted += 1
        except Exception as e:
            self._finish_job(job)
            self.state.set_error(as_run_error(e))

    # Completion callbacks

    def _finish_job(self, job: GenerationJob) -> bool:
        if job.done:
            logger.warning(f"Ignoring repeated completion for gen #{job.ordinal}")
            return False
        job.done = True
        self.claim.complete(1)
        self.gate.release(job)
        return True

    def _on_output(self, job: GenerationJob, image: Image.Image, metadata: str | None) -> None:
        if job.done:
            logger.warning(f"Ignoring repeated completion for gen #{job.ordinal}")
            return
        try:
            self._handle_output(job, image, metadata)
        except Exception as e:
            self.state.set_error(as_run_error(e))
        finally:
            self._finish_job(job)

    def _on_error(self, job: GenerationJob, message: str) -> None:
        if job.done:
            logger.warning(f"Ignoring repeated completion for gen #{job.ordinal}")
            return
        try:
            self.state.set_error(GenerationError(message))
        finally:
            self._finish_job(job)

    def _handle_output(self, job: GenerationJob, image: Image.Image, metadata: str | None) -> None:
        cell = job.cell
        logger.info(
            f"Completed gen #{cell.ordinal} (of {self.summary.total}) ... "
            f"Set: '{cell.label}', file '{cell.path_key}'"
        )
        fmt = self.grid.format

        if self.grid.output_type == OutputType.WEB_PAGE:
            stem = self._stem(cell)
            target = self.options.output_dir / f"{stem}.{fmt}"
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(encode_image(image, fmt))
                if self.grid.publish_metadata and metadata:
                    target.with_suffix(".metadata.json").write_text(metadata)
            except OSError as e:
                raise PersistenceError(f"Server failed to save an image: {e}") from e
            url = f"{self.options.url_base}/{stem}.{fmt}"
            self.summary.outputs.append(url)
            if self.options.show_outputs:
                self.state.add_output({"image": url, "metadata": metadata})
            return

        if self.options.do_not_save:
            url = image_to_data_url(image, fmt)
        else:
            if self.persistence is None:
                raise PersistenceError("No image persistence configured")
            url = self.persistence.save_image(image, cell.ordinal, job.params, metadata)
        if url == SAVE_FAILED:
            raise PersistenceError("Server failed to save an image.")
        self.summary.outputs.append(url)
        if self.options.show_outputs:
            self.state.add_output({
                "image": url,
                "batch_index": str(cell.ordinal),
                "metadata": metadata or None,
            })
        if self.grid.output_type == OutputType.GRID_IMAGE:
            self.state.store_output(cell.path_key, image)

    # Completion

    def _final_status(self) -> RunStatus:
        if self.state.has_fatal_error:
            return RunStatus.FAILED
        if self.state.error is not None and not self.options.continue_on_error:
            return RunStatus.FAILED
        if self.state.cancel_requested or self.claim.should_cancel:
            return RunStatus.CANCELLED
        return RunStatus.COMPLETED

    def _save_config(self) -> None:
        if self.options.save_config is None or self.options.dry_run:
            return
        path = self.options.output_dir / SAVED_CONFIG_NAME
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.options.save_config, indent=2))
        logger.info(f"Saved grid configuration to {path}")
        if self.on_config_saved is not None:
            self.on_config_saved()
