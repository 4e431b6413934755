"""Pydantic models for the web server API."""

from typing import Any
from pydantic import BaseModel, Field

from grid_axes import OutputType


# API Request Models

class GridRunRequest(BaseModel):
    """Request to run a grid."""
    base_params: dict[str, Any] = Field(default_factory=dict)
    axes: list[dict[str, Any]] = Field(default_factory=list)
    output_type: OutputType = OutputType.GRID_IMAGE
    output_folder: str = Field("", max_length=500)
    format: str = Field("png", pattern=r'^(png|jpg|jpeg|webp)$')
    user_id: str = Field("local", min_length=1, max_length=100, pattern=r'^[a-zA-Z0-9_-]+$')
    max_simul: int | None = Field(None, ge=1, le=64)
    continue_on_error: bool = False
    show_outputs: bool = True
    publish_metadata: bool = False
    dry_run: bool = False
    overwrite: bool = False
    do_not_save: bool = False
    save_config: dict[str, Any] | None = None


class SaveGridRequest(BaseModel):
    """Request to save a named grid definition."""
    data: dict[str, Any]
    is_public: bool = False


# API Response Models

class TaskResponse(BaseModel):
    """Response after a simple action."""
    success: bool = True
    message: str


class GridExistsResponse(BaseModel):
    """Whether a web page run already exists in an output folder."""
    folder: str
    exists: bool


class GridListResponse(BaseModel):
    """Saved grid names and reloadable run history."""
    data: list[str]
    history: list[str]


class ActiveRunsResponse(BaseModel):
    """Identifiers of the grid runs currently in progress."""
    runs: list[str]
