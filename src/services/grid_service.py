"""Grid generation service: runs one grid request and yields its event stream.

The submission loop runs on a worker thread while the caller iterates the
events; closing the iterator early cancels the run cooperatively.
"""

import json
import logging
import threading
import uuid
from functools import partial
from typing import Callable, Iterator

from backends import SAVE_FAILED, GenClaim, GenerationBackend, ImagePersistence, PresetResolver
from config import Settings, settings as default_settings
from errors import PersistenceError, as_run_error, to_error_event
from grid_axes import Grid, OutputType, build_grid
from grid_hooks import GridHooks, StandardGridHooks
from grid_image import CompositeImageBuilder
from grid_runner import GridRunner, RunOptions, RunStatus
from progress_streamer import ProgressStreamer
from run_state import RunState
from server.models import GridRunRequest
from services.grid_store import GridStore
from utils import image_to_data_url

logger = logging.getLogger(__name__)


class GridGenService:
    """Runs grid requests against a generation backend."""

    def __init__(
        self,
        backend: GenerationBackend,
        store: GridStore,
        persistence: ImagePersistence | None = None,
        presets: PresetResolver | None = None,
        settings: Settings | None = None,
        hooks_factory: Callable[[], GridHooks] = StandardGridHooks,
    ):
        """Initialize the service.

        Args:
            backend: Backend every cell is submitted to
            store: Grid store providing run folders and history
            persistence: Image saver for grid image and just-images output
            presets: Preset resolver for the ``presets`` parameter
            settings: Application settings (defaults to the global settings)
            hooks_factory: Builds a fresh hook set for each run
        """
        self.backend = backend
        self.store = store
        self.persistence = persistence
        self.presets = presets
        self.settings = settings or default_settings
        self.hooks_factory = hooks_factory
        self._claims: dict[str, GenClaim] = {}
        self._claims_lock = threading.Lock()

    # Active runs

    def active_runs(self) -> list[str]:
        with self._claims_lock:
            return list(self._claims)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of a running grid.

        Returns:
            False if no run with that id is active
        """
        with self._claims_lock:
            claim = self._claims.get(run_id)
        if claim is None:
            return False
        logger.info(f"Cancelling grid run {run_id}")
        claim.interrupt()
        return True

    # Running

    def run(self, request: GridRunRequest, claim: GenClaim | None = None, run_id: str | None = None) -> Iterator[dict]:
        """Run a grid request, yielding progress events and one terminal event.

        The claim is released exactly once however the run ends.

        Args:
            request: The grid to run
            claim: Session claim for the run (a fresh one if None)
            run_id: Identifier used for cancellation (random if None)
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        claim = claim or GenClaim()
        with self._claims_lock:
            self._claims[run_id] = claim
        try:
            with claim:
                yield from self._run(run_id, request, claim)
        finally:
            with self._claims_lock:
                self._claims.pop(run_id, None)

    def _options(self, request: GridRunRequest, grid: Grid) -> RunOptions:
        grid_config = self.settings.grid
        options = RunOptions(
            continue_on_error=request.continue_on_error,
            show_outputs=request.show_outputs,
            dry_run=request.dry_run,
            overwrite=request.overwrite,
            do_not_save=request.do_not_save,
            save_config=request.save_config,
            timeout=grid_config.per_request_timeout_minutes * 60.0,
            order_delay=grid_config.order_delay,
            max_requests_forced_order=grid_config.max_requests_forced_order,
            poll_interval=grid_config.stream_poll_interval,
        )
        if grid.output_type == OutputType.WEB_PAGE:
            options.output_dir = self.store.run_dir(request.user_id, request.output_folder)
            folder = options.output_dir.relative_to(self.store.grids_dir).as_posix()
            options.url_base = f"/generated/grids/{folder}"
        return options

    def _run(self, run_id: str, request: GridRunRequest, claim: GenClaim) -> Iterator[dict]:
        yield {"status": {"run_id": run_id, "stage": "starting"}}
        hooks = self.hooks_factory()
        try:
            grid = build_grid(
                request.base_params,
                request.axes,
                request.output_type,
                request.format,
                request.publish_metadata,
                hooks,
            )
            options = self._options(request, grid)
        except Exception as e:
            yield to_error_event(e)
            return

        max_simul = request.max_simul or self.settings.grid.max_simul
        logger.info(
            f"Starting grid run {run_id}: {len(grid.axes)} axes, {grid.total_cells} cells, "
            f"output {grid.output_type.value}, max {max_simul} at once"
        )
        state = RunState(max_simul)
        runner = GridRunner(
            grid,
            self.backend,
            claim,
            state,
            hooks=hooks,
            presets=self.presets,
            persistence=self.persistence,
            options=options,
            on_config_saved=partial(self.store.invalidate_history, request.user_id),
        )
        thread = threading.Thread(target=runner.run, name=f"grid-run-{run_id}", daemon=True)
        thread.start()

        streamer = ProgressStreamer(state, claim, self.settings.grid.stream_poll_interval)
        try:
            yield from streamer.stream(thread.is_alive)
            thread.join()
        finally:
            if thread.is_alive():
                # Subscriber went away; let in-flight jobs drain on their own
                logger.info(f"Grid run {run_id} abandoned by its subscriber, cancelling")
                claim.interrupt()
                state.request_cancel()

        if runner.status == RunStatus.COMPLETED and grid.output_type == OutputType.GRID_IMAGE and not options.dry_run:
            try:
                yield self._composite_event(grid, state, runner)
            except Exception as e:
                state.set_error(as_run_error(e))

        yield {"status": {
            "run_id": run_id,
            "stage": "finished",
            "result": runner.status.value,
            "total": runner.summary.total,
            "submitted": runner.summary.submitted,
            "skipped": runner.summary.skipped,
        }}
        if state.error is not None:
            yield to_error_event(state.error)
        elif runner.status == RunStatus.CANCELLED:
            yield {"success": "cancelled"}
        else:
            yield {"success": "complete"}

    def _composite_event(self, grid: Grid, state: RunState, runner: GridRunner) -> dict:
        """Build, save and describe the composite image of a finished run.

        Raises:
            PersistenceError: If the image could not be saved
        """
        builder = CompositeImageBuilder.from_config(self.settings.labels)
        image, layout = builder.build(grid.axes, state.generated_outputs())
        metadata = json.dumps(grid.initial_params, default=str) if grid.publish_metadata else None
        ordinal = runner.summary.total + 1

        if runner.options.do_not_save:
            url = image_to_data_url(image, grid.format)
        else:
            if self.persistence is None:
                raise PersistenceError("No image persistence configured")
            url = self.persistence.save_image(image, ordinal, grid.initial_params, metadata)
        if url == SAVE_FAILED:
            raise PersistenceError("Server failed to save an image.")

        logger.info(f"Grid image of {layout.width}x{layout.height} saved as {url[:80]}")
        return {"image": url, "batch_index": str(ordinal), "metadata": metadata}
