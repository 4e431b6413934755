"""FastAPI application for running grids over HTTP."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from backends import LocalImageStore, PresetLibrary
from config import paths, settings
from image_generator import LocalGenerationBackend
from services.grid_service import GridGenService
from services.grid_store import GridStore


# Global instances
grid_service: GridGenService | None = None
grid_store: GridStore | None = None


def get_grid_service() -> GridGenService:
    """Get the grid service instance."""
    global grid_service
    if grid_service is None:
        raise RuntimeError("Grid service not initialized")
    return grid_service


def get_grid_store() -> GridStore:
    """Get the grid store instance."""
    global grid_store
    if grid_store is None:
        raise RuntimeError("Grid store not initialized")
    return grid_store


def init_services(service: GridGenService, store: GridStore) -> None:
    """Install service instances (used by the lifespan and by tests)."""
    global grid_service, grid_store
    grid_service = service
    grid_store = store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle app startup and shutdown."""
    # Ensure generated directories exist
    for directory in (paths.grids_dir, paths.images_dir, paths.saved_grids_dir):
        directory.mkdir(parents=True, exist_ok=True)

    backend = None
    if grid_service is None:
        gen_config = settings.image_generation
        backend = LocalGenerationBackend(
            workers=gen_config.workers,
            default_model=gen_config.default_model,
            default_width=gen_config.default_width,
            default_height=gen_config.default_height,
            default_quantize=gen_config.default_quantize,
        )
        store = GridStore(paths.saved_grids_dir, paths.grids_dir, paths.shared_user)
        init_services(
            GridGenService(backend, store, persistence=LocalImageStore(paths.images_dir), presets=PresetLibrary()),
            store,
        )

    yield

    # Shutdown: stop every active run, then the backend we started
    service = get_grid_service()
    for run_id in service.active_runs():
        service.cancel(run_id)
    if backend is not None:
        backend.shutdown(wait=False)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Grid Generator",
        description="Run parameter grids against an image generation backend",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Import and include routes
    from .routes import router
    app.include_router(router)

    # Mount generated content after the routes so it does not shadow them
    paths.generated_dir.mkdir(parents=True, exist_ok=True)
    app.mount(
        "/generated",
        StaticFiles(directory=str(paths.generated_dir)),
        name="generated",
    )

    return app


# Create the app instance
app = create_app()
