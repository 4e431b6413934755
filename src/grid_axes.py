"""Grid axes, cells, and Cartesian expansion of axis values into cells.

A grid is a list of axes; every axis is a list of values, and every value
assigns one or more generation parameters. Expanding a grid produces one cell
per combination of non-skipped values. Axis 0 (X) varies fastest, so cells
come out row by row in the same order the composite image is laid out.
"""

import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from errors import ConfigurationError, UnsupportedLayoutError
from utils import clean_value_key

logger = logging.getLogger(__name__)

SKIP_PREFIX = "SKIP:"
MAX_COMPOSITE_AXES = 3


class OutputType(str, Enum):
    """What a grid run produces."""
    GRID_IMAGE = "grid_image"
    WEB_PAGE = "web_page"
    JUST_IMAGES = "just_images"


@dataclass
class AxisValue:
    """One value on an axis."""
    key: str
    title: str
    skip: bool = False
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class Axis:
    """An ordered list of values. Index 0 is X, 1 is Y, 2 is secondary Y."""
    mode: str
    values: list[AxisValue] = field(default_factory=list)

    @property
    def active_values(self) -> list[AxisValue]:
        """Values that take part in the product, in original order."""
        return [v for v in self.values if not v.skip]


@dataclass
class Grid:
    """A full grid definition plus sizes derived while expanding it."""
    axes: list[Axis]
    initial_params: dict[str, Any] = field(default_factory=dict)
    output_type: OutputType = OutputType.GRID_IMAGE
    format: str = "png"
    publish_metadata: bool = False
    min_width: int = 0
    min_height: int = 0

    def narrow_size(self, width: int | None = None, height: int | None = None) -> None:
        """Lower min_width/min_height towards the given sizes (never raises them)."""
        if width is not None and width > 0:
            self.min_width = width if self.min_width <= 0 else min(self.min_width, width)
        if height is not None and height > 0:
            self.min_height = height if self.min_height <= 0 else min(self.min_height, height)

    @property
    def total_cells(self) -> int:
        total = 1
        for axis in self.axes:
            total *= len(axis.active_values)
        return total


@dataclass
class Cell:
    """One point of the grid, carried explicitly from expansion to completion."""
    ordinal: int
    path_key: str
    values: tuple[AxisValue, ...]
    params: dict[str, Any] = field(default_factory=dict)
    replacements: list[tuple[str, str]] = field(default_factory=list)

    @property
    def label(self) -> str:
        return ", ".join(v.title for v in self.values)


def _split_values(vals: str) -> list[str]:
    separator = "||" if "||" in vals else ","
    return [v.strip() for v in vals.split(separator) if v.strip()]


def _parse_value(mode: str, raw: str) -> AxisValue:
    skip = raw.startswith(SKIP_PREFIX)
    if skip:
        raw = raw[len(SKIP_PREFIX):].strip()
    return AxisValue(key=clean_value_key(raw), title=raw, skip=skip, params={mode: raw})


def parse_axis(raw: dict, hooks=None) -> Axis | None:
    """Parse one raw axis definition.

    Accepts either ``{"mode": "steps", "vals": "10, 20"}`` (a string or list of
    values for a single parameter) or ``{"values": [{"key", "title", "skip",
    "params"}, ...]}`` for values assigning several parameters at once.

    Returns:
        The parsed axis, or None for a blank row

    Raises:
        ConfigurationError: If the axis is malformed or has no usable values
    """
    mode = str(raw.get("mode") or "").strip()

    if "values" in raw:
        values = []
        for entry in raw["values"]:
            if not isinstance(entry, dict) or not entry.get("params"):
                raise ConfigurationError(f"Axis '{mode}' has a value without parameters: {entry!r}")
            title = str(entry.get("title") or entry.get("key") or "")
            values.append(AxisValue(
                key=clean_value_key(str(entry.get("key") or title)),
                title=title,
                skip=bool(entry.get("skip", False)),
                params=dict(entry["params"]),
            ))
    else:
        vals = raw.get("vals", "")
        if isinstance(vals, str):
            vals = _split_values(vals)
        else:
            vals = [str(v).strip() for v in vals if str(v).strip()]
        if not mode and not vals:
            return None
        if not mode:
            raise ConfigurationError("Axis has values but no parameter mode")
        if hooks is not None:
            vals = hooks.parse_values(mode, vals)
        values = [_parse_value(mode, v) for v in vals]

    if not any(not v.skip for v in values):
        raise ConfigurationError(f"Axis '{mode}' has no values to use")

    seen = set()
    for value in values:
        if value.key in seen:
            raise ConfigurationError(f"Axis '{mode}' has duplicate value '{value.title}'")
        seen.add(value.key)

    return Axis(mode=mode, values=values)


def parse_axes(raw_axes: list[dict], hooks=None) -> list[Axis]:
    """Parse a list of raw axis definitions, dropping blank rows."""
    axes = []
    for raw in raw_axes or []:
        axis = parse_axis(raw, hooks)
        if axis is not None:
            axes.append(axis)
    return axes


def build_grid(
    initial_params: dict[str, Any],
    raw_axes: list[dict],
    output_type: OutputType | str = OutputType.GRID_IMAGE,
    fmt: str = "png",
    publish_metadata: bool = False,
    hooks=None,
) -> Grid:
    """Parse axes and validate them against the requested output type.

    Raises:
        ConfigurationError: On malformed axes
        UnsupportedLayoutError: If a composite image is requested for more than 3 axes
    """
    output_type = OutputType(output_type)
    axes = parse_axes(raw_axes, hooks)
    if output_type == OutputType.GRID_IMAGE and len(axes) > MAX_COMPOSITE_AXES:
        raise UnsupportedLayoutError(
            f"Grid image output supports at most {MAX_COMPOSITE_AXES} axes, got {len(axes)}"
        )
    return Grid(
        axes=axes,
        initial_params=dict(initial_params),
        output_type=output_type,
        format=fmt,
        publish_metadata=publish_metadata,
    )


def expand_cells(grid: Grid, hooks=None) -> list[Cell]:
    """Expand a grid into its ordered cells.

    Deterministic for a given grid: X (axis 0) varies fastest, the last axis
    slowest. Each cell starts from the grid's initial params; axis assignments
    are applied in axis order, so later axes win on collisions. Hooks may
    consume an assignment instead of storing it.

    Raises:
        ConfigurationError: If any axis has no usable values
    """
    for axis in grid.axes:
        if not axis.active_values:
            raise ConfigurationError(f"Axis '{axis.mode}' has no values to use")

    # itertools.product varies its last argument fastest, so feed axes reversed
    combos = itertools.product(*[axis.active_values for axis in reversed(grid.axes)])
    cells = []
    for ordinal, combo in enumerate(combos, start=1):
        values = tuple(reversed(combo))
        cell = Cell(
            ordinal=ordinal,
            path_key="/".join(v.key for v in values),
            values=values,
            params=dict(grid.initial_params),
        )
        if hooks is not None:
            hooks.call_init(grid, cell)
        for value in values:
            for param, raw in value.params.items():
                if hooks is not None and hooks.param_add(grid, cell, param, raw):
                    continue
                cell.params[param] = raw
        cells.append(cell)

    logger.debug(f"Expanded {len(grid.axes)} axes into {len(cells)} cells")
    return cells
