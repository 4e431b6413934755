"""Extension points called while a grid is parsed, expanded, and run.

The stages run in a fixed order:

1. ``parse_values``  - once per axis, may rewrite the raw value list
2. ``call_init``     - once per cell, before any axis assignment is applied
3. ``param_add``     - once per axis assignment; return True to consume it
4. ``pre_run``       - once per run, after expansion, before submission
5. ``pre_dry``       - once per run, before cells are walked in a dry run
6. ``apply``         - once per cell at execution time, on a copy of its params
7. ``post_dry``      - once per cell in a dry run, with the applied params

``GridHooks`` does nothing at every stage; ``StandardGridHooks`` adds the
prompt replace, width/height and aspect ratio handling.
"""

import logging
from typing import Any

from grid_axes import Cell, Grid
from utils import aspect_ratio_to_size, clean_param_name, fit_to_pixel_count

logger = logging.getLogger(__name__)

PROMPT_REPLACE_PARAMS = {"promptreplace", "gridgenpromptreplace"}
PRESETS_PARAMS = {"presets", "gridgenpresets"}
WIDTH_PARAMS = {"width", "outwidth"}
HEIGHT_PARAMS = {"height", "outheight"}


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class GridHooks:
    """No-op hook set. Subclass and override the stages you need."""

    def parse_values(self, mode: str, values: list[str]) -> list[str]:
        return values

    def call_init(self, grid: Grid, cell: Cell) -> None:
        pass

    def param_add(self, grid: Grid, cell: Cell, param: str, value: Any) -> bool:
        return False

    def pre_run(self, run) -> None:
        pass

    def pre_dry(self, run) -> None:
        pass

    def apply(self, cell: Cell, params: dict[str, Any]) -> None:
        pass

    def post_dry(self, run, cell: Cell, params: dict[str, Any]) -> None:
        pass


class StandardGridHooks(GridHooks):
    """Prompt replacement and image size handling."""

    def parse_values(self, mode: str, values: list[str]) -> list[str]:
        """Expand a bare prompt replace list into explicit find=replace pairs.

        ``cat, dog, SKIP: bird`` becomes ``cat=cat, cat=dog, SKIP:cat=bird``:
        the first value is the text to search for.
        """
        if clean_param_name(mode) not in PROMPT_REPLACE_PARAMS or not values:
            return values
        if any("=" in v for v in values):
            return values
        first = values[0]
        result = []
        for value in values:
            if value.startswith("SKIP:"):
                result.append(f"SKIP:{first}={value[len('SKIP:'):].strip()}")
            else:
                result.append(f"{first}={value}")
        return result

    def call_init(self, grid: Grid, cell: Cell) -> None:
        grid.narrow_size(
            _as_int(grid.initial_params.get("width")),
            _as_int(grid.initial_params.get("height")),
        )

    def param_add(self, grid: Grid, cell: Cell, param: str, value: Any) -> bool:
        cleaned = clean_param_name(param)
        if cleaned in PROMPT_REPLACE_PARAMS:
            find, _, replace = str(value).partition("=")
            cell.replacements.append((find.strip(), replace.strip()))
            return True
        if cleaned in WIDTH_PARAMS:
            grid.narrow_size(width=_as_int(value))
        elif cleaned in HEIGHT_PARAMS:
            grid.narrow_size(height=_as_int(value))
        elif cleaned == "aspectratio":
            width, height = aspect_ratio_to_size(str(value))
            if width > 0:
                base_width = _as_int(grid.initial_params.get("width")) or width
                base_height = _as_int(grid.initial_params.get("height")) or height
                width, height = fit_to_pixel_count(width, height, base_width * base_height)
                grid.narrow_size(width, height)
                cell.params["width"] = width
                cell.params["height"] = height
        return False

    def apply(self, cell: Cell, params: dict[str, Any]) -> None:
        """Apply the cell's prompt replacements to every prompt-like string."""
        for find, replace in cell.replacements:
            if not find:
                continue
            for key, value in list(params.items()):
                if key.lower().endswith("prompt") and isinstance(value, str):
                    params[key] = value.replace(find, replace)
