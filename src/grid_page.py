"""HTML page for browsing the individual images of a web page grid run."""

import html
from pathlib import Path

from grid_axes import Cell, Grid

PAGE_NAME = "index.html"

_STYLES = '''
    body { font-family: -apple-system, BlinkMacSystemFont, sans-serif; background: #1a1a1a; color: #eee; margin: 20px; }
    h1 { font-size: 20px; margin-bottom: 4px; }
    h2 { font-size: 16px; color: #aaa; margin: 24px 0 8px; }
    table { border-collapse: collapse; }
    th { color: #ccc; font-weight: bold; padding: 6px; text-align: center; }
    th.row-label { text-align: right; max-width: 200px; }
    td { padding: 2px; vertical-align: top; }
    img { max-width: 256px; display: block; background: #2a2a2a; }
    .cards { display: flex; flex-wrap: wrap; gap: 12px; }
    .card { background: #2a2a2a; border-radius: 6px; padding: 6px; }
    .card .label { font-size: 12px; color: #aaa; margin-top: 4px; max-width: 256px; }'''


def _img(cell: Cell, fmt: str) -> str:
    src = html.escape(f"{cell.path_key or 'image'}.{fmt}")
    return f'<a href="{src}" target="_blank"><img src="{src}" loading="lazy" alt="{html.escape(cell.label)}"></a>'


def _build_tables(grid: Grid, cells: list[Cell]) -> str:
    """Lay cells out as one table per secondary-Y value, X across and Y down."""
    by_key = {cell.path_key: cell for cell in cells}
    x_values = grid.axes[0].active_values
    y_values = grid.axes[1].active_values if len(grid.axes) > 1 else [None]
    y2_values = grid.axes[2].active_values if len(grid.axes) > 2 else [None]

    sections = []
    for y2 in y2_values:
        rows = ['<tr><th></th>' + "".join(f"<th>{html.escape(x.title)}</th>" for x in x_values) + '</tr>']
        for y in y_values:
            row = [f'<th class="row-label">{html.escape(y.title) if y else ""}</th>']
            for x in x_values:
                key = "/".join(v.key for v in (x, y, y2) if v is not None)
                row.append(f"<td>{_img(by_key[key], grid.format)}</td>")
            rows.append("<tr>" + "".join(row) + "</tr>")
        heading = f"<h2>{html.escape(y2.title)}</h2>\n" if y2 else ""
        sections.append(f"{heading}<table>\n" + "\n".join(rows) + "\n</table>")
    return "\n".join(sections)


def _build_cards(grid: Grid, cells: list[Cell]) -> str:
    cards = []
    for cell in cells:
        cards.append(
            f'    <div class="card">{_img(cell, grid.format)}'
            f'<div class="label">{html.escape(cell.label)}</div></div>'
        )
    return '<div class="cards">\n' + "\n".join(cards) + '\n</div>'


def write_grid_page(output_dir: Path, grid: Grid, cells: list[Cell], title: str | None = None) -> Path:
    """Write the index page for a web page grid run.

    Grids with one to three axes are shown as tables; larger grids (or a grid
    without axes) as a flat list of labelled images.

    Args:
        output_dir: Run output folder; images are referenced relative to it
        grid: The grid being run
        cells: Expanded cells, in run order
        title: Page title (defaults to the folder name)

    Returns:
        Path to the written page
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    title = html.escape(title or output_dir.name)
    axes_desc = html.escape(" / ".join(axis.mode for axis in grid.axes)) or "no axes"

    if 1 <= len(grid.axes) <= 3:
        body = _build_tables(grid, cells)
    else:
        body = _build_cards(grid, cells)

    page = f'''<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>{title}</title>
  <style>{_STYLES}
  </style>
</head>
<body>
  <h1>{title}</h1>
  <p class="status">{len(cells)} images across {axes_desc}</p>
{body}
</body>
</html>
'''
    page_path = output_dir / PAGE_NAME
    page_path.write_text(page)
    return page_path
