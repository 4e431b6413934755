"""Composite grid image: every cell's output pasted into one labelled raster.

Up to three axes are laid out: X across the top, Y down the left margin and
secondary Y as stacked groups, each group headed by its own label row. The
layout is computed first as plain data, so the position of every image and
label depends only on the axes and the image sizes.
"""

import logging
import math
from dataclasses import dataclass

from PIL import Image, ImageDraw, ImageFont

from config import LabelConfig
from errors import ConfigurationError, UnsupportedLayoutError
from grid_axes import MAX_COMPOSITE_AXES, Axis, AxisValue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabelBox:
    """A label and the box it is drawn into."""
    text: str
    x: int
    y: int
    width: int
    height: int
    scale: float


@dataclass(frozen=True)
class GridLayout:
    """Pixel layout of a composite grid image."""
    width: int
    height: int
    cell_width: int
    cell_height: int
    text_width: int
    text_height: int
    line_height: int
    scale: float
    labels: tuple[LabelBox, ...]
    placements: tuple[tuple[str, int, int], ...]

    @property
    def positions(self) -> dict[str, tuple[int, int]]:
        """Top-left paste position of each cell image, keyed by path key."""
        return {key: (x, y) for key, x, y in self.placements}


class CompositeImageBuilder:
    """Lays out and renders the composite grid image."""

    def __init__(
        self,
        font_path: str | None = None,
        base_font_size: int = 16,
        sample_text: str = "ABCdefg Word Prefix",
        large_image_threshold: int = 800,
        background: str = "white",
        text_color: str = "black",
    ):
        """Initialize the builder.

        Args:
            font_path: TrueType font for labels; Pillow's default font if None
            base_font_size: Label font size before any scaling
            sample_text: Representative label used to size the label margins
            large_image_threshold: Cells wider or taller than this get 2x labels
            background: Canvas fill color
            text_color: Label color
        """
        self.font_path = font_path
        self.base_font_size = base_font_size
        self.sample_text = sample_text
        self.large_image_threshold = large_image_threshold
        self.background = background
        self.text_color = text_color
        self._fonts: dict[float, ImageFont.FreeTypeFont] = {}

    @classmethod
    def from_config(cls, config: LabelConfig) -> "CompositeImageBuilder":
        return cls(
            font_path=config.font_path,
            base_font_size=config.base_font_size,
            sample_text=config.sample_text,
            large_image_threshold=config.large_image_threshold,
        )

    # Fonts and measuring

    def get_font(self, scale: float):
        """Get the label font at ``scale`` times the base size (cached)."""
        if scale not in self._fonts:
            size = max(1, int(round(self.base_font_size * scale)))
            if self.font_path:
                self._fonts[scale] = ImageFont.truetype(self.font_path, size)
            else:
                self._fonts[scale] = ImageFont.load_default(size=size)
        return self._fonts[scale]

    @staticmethod
    def line_height(font) -> int:
        ascent, descent = font.getmetrics()
        return ascent + descent

    @staticmethod
    def text_width(text: str, font) -> float:
        return font.getlength(text)

    def fit_scale(self, text: str, width: int, height: int, scale: float, line_height: int) -> float:
        """Pick a font scale so the label neither looks lost nor overflows.

        The label is measured at ``scale`` against the width of all lines that
        fit in the box: under half of it doubles the size, over twice of it
        halves it, and anything over the full width shrinks it to 0.75x.
        """
        lines = height / line_height
        available = width * lines
        measured = self.text_width(text, self.get_font(scale))
        if measured < available * 0.5:
            return 2 * scale
        if measured > available * 2:
            return 0.5 * scale
        if measured > available:
            return 0.75 * scale
        return scale

    def wrap(self, text: str, font, width: int) -> list[str]:
        """Greedy word wrap to ``width`` pixels; overlong words are split."""
        lines: list[str] = []
        current = ""
        for word in text.split():
            candidate = f"{current} {word}" if current else word
            if self.text_width(candidate, font) <= width:
                current = candidate
                continue
            if current:
                lines.append(current)
            current = ""
            for char in word:
                if current and self.text_width(current + char, font) > width:
                    lines.append(current)
                    current = ""
                current += char
        if current:
            lines.append(current)
        return lines

    # Layout

    def layout(self, axes: list[Axis], sizes: dict[str, tuple[int, int]]) -> GridLayout:
        """Compute the composite layout.

        Args:
            axes: Grid axes; only non-skipped values are laid out
            sizes: (width, height) of every generated image, keyed by path key

        Raises:
            UnsupportedLayoutError: If there are more than three axes
            ConfigurationError: If no images were generated
        """
        if len(axes) > MAX_COMPOSITE_AXES:
            raise UnsupportedLayoutError(
                f"Grid image output supports at most {MAX_COMPOSITE_AXES} axes, got {len(axes)}"
            )
        if not sizes:
            raise ConfigurationError("No images were generated to build a grid image from")

        x_values: list[AxisValue | None] = axes[0].active_values if axes else [None]
        y_values: list[AxisValue | None] = axes[1].active_values if len(axes) > 1 else [None]
        y2_values: list[AxisValue | None] = axes[2].active_values if len(axes) > 2 else [None]

        max_width = max(w for w, _ in sizes.values())
        max_height = max(h for _, h in sizes.values())
        scale = 1.0
        if max_width > self.large_image_threshold or max_height > self.large_image_threshold:
            scale = 2.0

        font = self.get_font(scale)
        text_width = int(math.ceil(self.text_width(self.sample_text, font)))
        line_height = int(math.ceil(self.line_height(font) * 1.1))
        text_height = line_height * 2

        total_width = max_width * len(x_values) + text_width
        total_height = max_height * len(y_values) * len(y2_values) + text_height * len(y2_values)

        def label(value: AxisValue, x: int, y: int, width: int, height: int) -> LabelBox:
            return LabelBox(value.title, x, y, width, height,
                            self.fit_scale(value.title, width, height, scale, line_height))

        labels = []
        for col, x_value in enumerate(x_values):
            if x_value is not None:
                labels.append(label(x_value, col * max_width + text_width, 0, max_width, text_height))

        placements = []
        group_height = text_height + max_height * len(y_values)
        for group, y2_value in enumerate(y2_values):
            group_top = group * group_height
            if y2_value is not None:
                labels.append(label(y2_value, 0, group_top, text_width, text_height))
            for row, y_value in enumerate(y_values):
                row_top = group_top + text_height + row * max_height
                if y_value is not None:
                    labels.append(label(y_value, 0, row_top, text_width, max_height))
                for col, x_value in enumerate(x_values):
                    key = "/".join(v.key for v in (x_value, y_value, y2_value) if v is not None)
                    placements.append((key, col * max_width + text_width, row_top))

        return GridLayout(
            width=total_width,
            height=total_height,
            cell_width=max_width,
            cell_height=max_height,
            text_width=text_width,
            text_height=text_height,
            line_height=line_height,
            scale=scale,
            labels=tuple(labels),
            placements=tuple(placements),
        )

    # Rendering

    def draw_label(self, draw: ImageDraw.ImageDraw, box: LabelBox) -> None:
        font = self.get_font(box.scale)
        step = self.line_height(font)
        y = box.y
        for line in self.wrap(box.text, font, box.width):
            if y + step > box.y + box.height and y > box.y:
                break
            draw.text((box.x, y), line, font=font, fill=self.text_color)
            y += step

    def render(self, layout: GridLayout, outputs: dict[str, Image.Image]) -> Image.Image:
        """Paint the layout. Cells without an output are left blank."""
        logger.info(f"Will generate grid image of size {layout.width}x{layout.height}")
        canvas = Image.new("RGB", (layout.width, layout.height), self.background)
        for key, x, y in layout.placements:
            image = outputs.get(key)
            if image is None:
                logger.warning(f"No output for grid cell '{key}', leaving it blank")
                continue
            canvas.paste(image.convert("RGB"), (x, y))
        draw = ImageDraw.Draw(canvas)
        for box in layout.labels:
            self.draw_label(draw, box)
        return canvas

    def build(self, axes: list[Axis], outputs: dict[str, Image.Image]) -> tuple[Image.Image, GridLayout]:
        """Lay out and render the composite image for the given outputs."""
        layout = self.layout(axes, {key: image.size for key, image in outputs.items()})
        return self.render(layout, outputs), layout
