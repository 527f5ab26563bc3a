"""Click CLI entry point for shapefield."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from shapefield import __version__
from shapefield.config import override_config
from shapefield.driver import SceneDriver
from shapefield.errors import ShapefieldError
from shapefield.logging_config import setup_logging
from shapefield.meshing import MeshData
from shapefield.opcodes import Opcode
from shapefield.parser import build_scene, parse_scene
from shapefield.scene import ShapeNode
from shapefield.warning_policy import WARNING_CODES, WarningPolicy

logger = logging.getLogger(__name__)


def _build_warning_policy(
    warn_as_error: str | None, suppress_warning: str | None
) -> WarningPolicy | None:
    """Parse CLI warning options into a WarningPolicy, or None if unset."""
    try:
        return WarningPolicy.from_options(warn_as_error, suppress_warning)
    except ValueError as e:
        raise click.ClickException(str(e)) from e


def _load_roots(input_file: Path) -> list[ShapeNode]:
    spec = parse_scene(input_file)
    roots = build_scene(spec)
    logger.info("Loaded %d root shape(s) from %s", len(roots), input_file)
    return roots


def _select_roots(roots: list[ShapeNode], shape_ids: tuple[str, ...]) -> list[ShapeNode]:
    if not shape_ids:
        return roots
    by_name = {root.name: root for root in roots}
    unknown = [shape_id for shape_id in shape_ids if shape_id not in by_name]
    if unknown:
        raise click.UsageError(
            "Unknown root shape id(s): " + ", ".join(repr(shape_id) for shape_id in unknown)
        )
    return [by_name[shape_id] for shape_id in shape_ids]


def _find_node(roots: list[ShapeNode], shape_id: str) -> ShapeNode:
    for root in roots:
        node = root.find(shape_id)
        if node is not None:
            return node
    raise click.UsageError(f"Unknown shape id: {shape_id!r}")


def _mesh_summary(mesh: MeshData) -> dict:
    bounds = mesh.bounds()
    return {
        "vertices": mesh.vertex_count,
        "triangles": mesh.triangle_count,
        "bounds": (
            None if bounds is None else [bounds[0].round(6).tolist(), bounds[1].round(6).tolist()]
        ),
    }


def _render_text(summaries: dict[str, dict]) -> str:
    lines = []
    for name, summary in summaries.items():
        line = f"{name}: {summary['vertices']} vertices, {summary['triangles']} triangles"
        if summary["bounds"] is None:
            line += " (empty)"
        else:
            lo, hi = summary["bounds"]
            line += " bounds [{:.3f}, {:.3f}, {:.3f}] .. [{:.3f}, {:.3f}, {:.3f}]".format(*lo, *hi)
        lines.append(line)
    return "\n".join(lines) + "\n"


@click.group()
@click.version_option(version=__version__, prog_name="shapefield")
def main() -> None:
    """shapefield: implicit CSG shape trees and meshing."""


@main.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Report format.",
)
@click.option(
    "--background",
    is_flag=True,
    default=False,
    help="Mesh on worker threads instead of inline.",
)
@click.option(
    "--shape",
    "shape_ids",
    multiple=True,
    help="Restrict rendering to selected root shape id(s). May be repeated.",
)
@click.option(
    "--resolution",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override the sampling step of every shape.",
)
@click.option(
    "--splitting-angle",
    type=click.FloatRange(0, 180),
    default=None,
    help="Override the normal splitting angle (degrees) of every shape.",
)
@click.option(
    "--warn-as-error",
    "warn_as_error",
    type=str,
    default=None,
    help="Comma-separated W-codes to treat as errors (e.g. W02,W04).",
)
@click.option(
    "--suppress-warning",
    "suppress_warning",
    type=str,
    default=None,
    help="Comma-separated W-codes to suppress (e.g. W03).",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def render(
    input_file: Path,
    output_format: str = "text",
    background: bool = False,
    shape_ids: tuple[str, ...] = (),
    resolution: float | None = None,
    splitting_angle: float | None = None,
    warn_as_error: str | None = None,
    suppress_warning: str | None = None,
    verbose: bool = False,
) -> None:
    """Evaluate a .shapes.yaml scene and mesh its root shapes."""
    if verbose:
        setup_logging(logging.DEBUG)
    warning_policy = _build_warning_policy(warn_as_error, suppress_warning)

    try:
        with override_config(warning_policy=warning_policy):
            roots = _select_roots(_load_roots(input_file), shape_ids)
            for root in roots:
                for node in root.walk():
                    if resolution is not None:
                        node.resolution = resolution
                    if splitting_angle is not None:
                        node.splitting_angle = splitting_angle

            with SceneDriver(roots, background=background) as driver:
                driver.tick()
                if background:
                    driver.wait_idle()
                summaries = {
                    root.name: _mesh_summary(driver.meshes[root.name])
                    for root in roots
                    if root.name in driver.meshes
                }
            logger.info("Rendered %d root shape(s)", len(summaries))
    except ShapefieldError as e:
        raise click.ClickException(str(e)) from e

    if output_format == "json":
        click.echo(json.dumps(summaries, indent=2))
    else:
        click.echo(_render_text(summaries), nl=False)


@main.command("print")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--shape", "shape_id", type=str, default=None, help="Print only this shape id.")
def print_command(input_file: Path, shape_id: str | None = None) -> None:
    """Print the expression tree of each shape as an S-expression."""
    try:
        roots = _load_roots(input_file)
        try:
            for root in roots:
                root.evaluate()
            nodes = [_find_node(roots, shape_id)] if shape_id is not None else roots
            for node in nodes:
                body = str(node.tree) if node.tree is not None else "(no geometry)"
                click.echo(f"{node.name}: {body}")
        finally:
            for root in roots:
                root.dispose()
    except ShapefieldError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
    help="Destination tree file.",
)
@click.option("--binary", is_flag=True, default=False, help="Write the binary SFT1 format.")
@click.option("--shape", "shape_id", type=str, default=None, help="Shape id to save.")
def save(input_file: Path, output: Path, binary: bool = False, shape_id: str | None = None) -> None:
    """Save one shape's expression tree to a text or binary file."""
    try:
        roots = _load_roots(input_file)
        try:
            if shape_id is None:
                if len(roots) != 1:
                    raise click.UsageError("Scene has several root shapes; choose one with --shape")
                node = roots[0]
            else:
                node = _find_node(roots, shape_id)
            for root in roots:
                root.evaluate()
            if node.tree is None:
                raise click.ClickException(f"Shape {node.name!r} has no geometry to save")
            node.tree.save(output, binary=binary)
        finally:
            for root in roots:
                root.dispose()
        click.echo(f"Saved: {output}")
    except ShapefieldError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
def opcodes(output_format: str = "text") -> None:
    """List expression-tree opcodes with their arity."""
    rows = [{"name": op.label, "code": int(op), "arity": op.arity} for op in Opcode]
    if output_format == "json":
        click.echo(json.dumps(rows, indent=2))
        return
    for row in rows:
        click.echo(f"{row['code']:>3}  {row['name']:<10} {row['arity']}")


@main.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
def codes(output_format: str = "text") -> None:
    """List the warning codes accepted by --warn-as-error and --suppress-warning."""
    if output_format == "json":
        click.echo(json.dumps(WARNING_CODES, indent=2))
        return
    for code, summary in WARNING_CODES.items():
        click.echo(f"{code}  {summary}")
