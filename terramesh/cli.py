"""Click CLI commands for terramesh."""

import asyncio
import json
import logging
import pathlib

import click

from . import constants
from .builder import MeshGenerator
from .errors import ConfigurationError, GenerationCancelled
from .exporters import EXPORTERS, write_mesh
from .models import ContainmentPolicy, MeshSettings

logger = logging.getLogger(__name__)


def bbox_to_geojson(west: float, south: float, east: float, north: float) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[[west, south], [east, south], [east, north],
                         [west, north], [west, south]]],
    }


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose: bool):
    """terramesh CLI for turning a map area into a printable terrain mesh."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')


@cli.command()
@click.option('--bbox', nargs=4, type=float, default=None,
              metavar='WEST SOUTH EAST NORTH', help='Bounding box in degrees')
@click.option('--geojson', 'geojson_path', type=click.Path(exists=True, dir_okay=False),
              default=None, help='GeoJSON Polygon (or Feature) file')
@click.option('--output', '-o', default='terrain.obj', help='Output mesh file path')
@click.option('--format', '-f', 'fmt', type=click.Choice(sorted(EXPORTERS)), default=None,
              help='Export format (defaults to the output suffix)')
@click.option('--exaggeration', '-e', default=1.0, help='Vertical exaggeration')
@click.option('--building-scale', '-s', default=1.0, help='Building height scale factor')
@click.option('--layer', '-l', 'layers', multiple=True,
              type=click.Choice(sorted(constants.VECTOR_LAYERS)),
              help='Vector layer to include (repeatable, default: building)')
@click.option('--grid-size', default=constants.GRID_SIZE, help='Elevation grid resolution')
@click.option('--containment', type=click.Choice([p.value for p in ContainmentPolicy]),
              default=ContainmentPolicy.any_vertex.value,
              help='Which footprints count as inside the area')
def generate(bbox, geojson_path, output, fmt, exaggeration, building_scale,
             layers, grid_size, containment):
    """Generate a terrain + buildings mesh for an area."""
    if geojson_path:
        geometry = json.loads(pathlib.Path(geojson_path).read_text())
    elif bbox:
        geometry = bbox_to_geojson(*bbox)
    else:
        raise click.UsageError("Pass either --bbox or --geojson")

    try:
        settings = MeshSettings(
            grid_width=grid_size,
            grid_height=grid_size,
            vertical_exaggeration=exaggeration,
            building_scale_factor=building_scale,
            containment=containment,
            layers=layers or constants.DEFAULT_LAYERS,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    asyncio.run(async_generate(MeshGenerator(), geometry, settings, output, fmt))


async def async_generate(generator: MeshGenerator, geometry: dict,
                         settings: MeshSettings, output: str, fmt):
    """Async helper that runs the pipeline and writes the mesh."""
    def _progress(pct, msg):
        click.echo(f"[{pct:3.0f}%] {msg}")

    try:
        result = await generator.generate(geometry, settings, progress_callback=_progress)
        path = write_mesh(result.mesh, output, fmt)
    except (ConfigurationError, GenerationCancelled) as e:
        logger.error(f"Error generating mesh: {e}")
        raise click.ClickException(str(e))

    summary = result.summary()
    click.echo(f"\n{'=' * 50}")
    click.echo(f"Wrote {path}: {summary['vertices']} vertices, {summary['faces']} faces")
    click.echo(f"Buildings: {summary['buildings']}, elevation "
               f"{summary['min_elevation']:.1f}..{summary['max_elevation']:.1f} m")
    click.echo(f"{'=' * 50}")


@cli.command(name='layers')
def list_layers():
    """List the available vector layers."""
    for name, config in constants.VECTOR_LAYERS.items():
        kind = 'buildings' if config.get('is_building') else (
            f"depth={config['extrusion_depth']}, z_offset={config['z_offset']}")
        click.echo(f"{name:15s} #{config['color']:06x}  {kind}")


def main():
    cli()


if __name__ == '__main__':
    main()
