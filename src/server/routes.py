"""API routes for the web server."""

import json
import logging
import uuid
from typing import AsyncGenerator

from fastapi import APIRouter, HTTPException
from starlette.concurrency import iterate_in_threadpool
from sse_starlette.sse import EventSourceResponse

from .app import get_grid_service, get_grid_store
from .models import (
    GridRunRequest,
    SaveGridRequest,
    TaskResponse,
    GridExistsResponse,
    GridListResponse,
    ActiveRunsResponse,
)

from config import settings
from errors import ConfigurationError
from services.grid_store import GridNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()


# ----------------------------------------------------------------------------
# Grid Runs
# ----------------------------------------------------------------------------

async def stream_run_events(service, req: GridRunRequest, run_id: str) -> AsyncGenerator:
    """Relay a grid run's events as SSE messages.

    When the consumer stops early the run is cancelled and its event generator
    closed, so the run leaves the active list straight away.
    """
    events = service.run(req, run_id=run_id)
    try:
        async for event in iterate_in_threadpool(events):
            yield {"event": "grid", "data": json.dumps(event)}
    finally:
        # No-op once the run has finished; stops submission if the client left early
        service.cancel(run_id)
        # Closing does not wait for in-flight jobs
        events.close()


@router.post("/api/grid/run")
async def run_grid(req: GridRunRequest):
    """Run a grid, streaming its events as SSE until the terminal event."""
    service = get_grid_service()
    run_id = uuid.uuid4().hex[:12]
    logger.info(f"Starting grid run {run_id}")
    return EventSourceResponse(
        stream_run_events(service, req, run_id),
        ping=int(settings.server.sse_ping_interval),
    )


@router.post("/api/grid/{run_id}/cancel", response_model=TaskResponse)
async def cancel_grid(run_id: str):
    """Ask a running grid to stop submitting new cells."""
    if not get_grid_service().cancel(run_id):
        raise HTTPException(status_code=404, detail=f"No active grid run: {run_id}")
    return TaskResponse(message=f"Cancellation requested for {run_id}")


@router.get("/api/grid/active", response_model=ActiveRunsResponse)
async def active_grids():
    """List the grid runs currently in progress."""
    return ActiveRunsResponse(runs=get_grid_service().active_runs())


@router.get("/api/grid/exists", response_model=GridExistsResponse)
async def grid_exists(folder: str, user_id: str = "local"):
    """Check whether a web page run already exists in an output folder."""
    try:
        exists = get_grid_store().exists(user_id, folder)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return GridExistsResponse(folder=folder, exists=exists)


# ----------------------------------------------------------------------------
# Saved Grids
# ----------------------------------------------------------------------------

@router.get("/api/grids", response_model=GridListResponse)
async def list_grids(user_id: str = "local"):
    """List saved grid definitions and reloadable run history."""
    try:
        return GridListResponse(**get_grid_store().list_all(user_id))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/api/grids/{name:path}")
async def get_grid(name: str, user_id: str = "local"):
    """Load a saved grid definition."""
    try:
        return get_grid_store().get(user_id, name)
    except GridNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/api/grids/{name:path}", response_model=TaskResponse)
async def save_grid(name: str, req: SaveGridRequest, user_id: str = "local"):
    """Save a grid definition for the user, or for everyone when public."""
    try:
        get_grid_store().save(user_id, name, req.data, is_public=req.is_public)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return TaskResponse(message=f"Saved grid: {name}")


@router.delete("/api/grids/{name:path}", response_model=TaskResponse)
async def delete_grid(name: str, user_id: str = "local"):
    """Delete a saved grid definition, or a run's saved config via ``history/<folder>``."""
    try:
        get_grid_store().delete(user_id, name)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return TaskResponse(message=f"Deleted grid: {name}")
