#!/usr/bin/env python3
"""CLI entry point for the grid generator."""

import logging
import sys

import click

from backends import LocalImageStore, PresetLibrary
from config import paths, settings
from grid_axes import OutputType
from image_generator import LocalGenerationBackend
from server.models import GridRunRequest
from services.grid_service import GridGenService
from services.grid_store import GridStore


def parse_key_value(text: str) -> tuple[str, str]:
    """Split ``key=value`` on the first '='."""
    key, sep, value = text.partition("=")
    if not sep or not key.strip():
        raise click.BadParameter(f"Expected key=value, got '{text}'")
    return key.strip(), value.strip()


def build_service() -> GridGenService:
    """Create a grid service backed by the local mflux backend."""
    gen_config = settings.image_generation
    backend = LocalGenerationBackend(
        workers=gen_config.workers,
        default_model=gen_config.default_model,
        default_width=gen_config.default_width,
        default_height=gen_config.default_height,
        default_quantize=gen_config.default_quantize,
    )
    store = GridStore(paths.saved_grids_dir, paths.grids_dir, paths.shared_user)
    return GridGenService(backend, store, persistence=LocalImageStore(paths.images_dir), presets=PresetLibrary())


def cli_progress(event: dict) -> bool:
    """Print one grid event.

    Returns:
        True if the event reports an error
    """
    if "status" in event:
        status = event["status"]
        details = ", ".join(f"{k}={v}" for k, v in status.items() if k != "stage")
        click.echo(f"[{status.get('stage', 'status')}] {details}")
    elif "image" in event:
        image = event["image"]
        if image.startswith("data:"):
            image = image[:40] + "..."
        index = event.get("batch_index")
        click.echo(f"  [{index}] {image}" if index else f"  {image}")
    elif "error" in event:
        click.echo(f"Error: {event['error']}", err=True)
        return True
    elif "success" in event:
        click.echo(f"Grid run {event['success']}")
    return False


@click.command()
@click.option(
    '-p', '--prompt',
    default=None,
    help='Base prompt shared by every cell'
)
@click.option(
    '--param',
    'params',
    multiple=True,
    help='Base parameter as key=value (repeatable)'
)
@click.option(
    '-a', '--axis',
    'axes',
    multiple=True,
    help='Axis as "mode=v1,v2" or "mode=v1 || v2" (repeatable; first is X)'
)
@click.option(
    '--output-type',
    default=OutputType.GRID_IMAGE.value,
    type=click.Choice([t.value for t in OutputType]),
    help='What the run produces (default: grid_image)'
)
@click.option(
    '-o', '--output-folder',
    default="",
    help='Output folder name for web_page runs'
)
@click.option(
    '--max-simul',
    type=int,
    default=None,
    help=f'Maximum generations in flight at once (default: {settings.grid.max_simul})'
)
@click.option(
    '--continue-on-error',
    is_flag=True,
    help='Keep submitting cells after one fails'
)
@click.option(
    '--publish-metadata',
    is_flag=True,
    help='Attach generation metadata to outputs'
)
@click.option(
    '--dry-run',
    is_flag=True,
    help='Expand and validate the grid without generating anything'
)
@click.option(
    '--serve',
    is_flag=True,
    help='Start the web server instead of running a grid'
)
@click.option(
    '--port',
    default=settings.server.port,
    type=int,
    help=f'Web server port (default: {settings.server.port})'
)
@click.option(
    '-v', '--verbose',
    is_flag=True,
    help='Enable debug logging'
)
def main(
    prompt: str | None,
    params: tuple[str, ...],
    axes: tuple[str, ...],
    output_type: str,
    output_folder: str,
    max_simul: int | None,
    continue_on_error: bool,
    publish_metadata: bool,
    dry_run: bool,
    serve: bool,
    port: int,
    verbose: bool,
):
    """
    Run a parameter grid and combine the results.

    Example:
        python cli.py -p "a cat in a garden" -a "steps=4,8" -a "seed=1,2,3"

    Web page output:
        python cli.py -p "a cat" -a "promptreplace=cat,dog,fox" \\
            --output-type web_page -o animals

    Start the web server:
        python cli.py --serve --port 8000
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if serve:
        import uvicorn
        from server.app import app
        click.echo(f"Starting web UI server on http://{settings.server.host}:{port}")
        uvicorn.run(app, host=settings.server.host, port=port)
        return

    base_params = dict(parse_key_value(p) for p in params)
    if prompt:
        base_params["prompt"] = prompt
    if not base_params.get("prompt"):
        click.echo("Error: --prompt is required (or --param prompt=...)", err=True)
        sys.exit(1)

    raw_axes = []
    for axis in axes:
        mode, vals = parse_key_value(axis)
        raw_axes.append({"mode": mode, "vals": vals})

    request = GridRunRequest(
        base_params=base_params,
        axes=raw_axes,
        output_type=output_type,
        output_folder=output_folder,
        max_simul=max_simul,
        continue_on_error=continue_on_error,
        publish_metadata=publish_metadata,
        dry_run=dry_run,
        save_config={"base_params": base_params, "axes": raw_axes},
    )

    failed = False
    for event in build_service().run(request):
        failed = cli_progress(event) or failed
    if failed:
        sys.exit(1)


if __name__ == '__main__':
    main()
