"""YAML loading for scene files and construction of shape-node hierarchies."""

from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from shapefield.errors import InvalidArgumentError, ParseError
from shapefield.kernel import Kernel
from shapefield.models import SUPPORTED_VERSIONS, RenderSettings, SceneSpec, ShapeSpec
from shapefield.scene import ShapeNode


def _make_yaml() -> YAML:
    """Create a ruamel.yaml safe loader that errors on duplicate keys."""
    yml = YAML(typ="safe")
    yml.allow_duplicate_keys = False
    return yml


def _read_source_text(source: str | Path) -> str:
    """Read source YAML content from path or treat input as raw YAML text."""
    if isinstance(source, Path):
        try:
            return source.read_text(encoding="utf-8")
        except OSError as e:
            raise ParseError(f"Cannot read file: {e}") from e
    return source


def load_yaml_data(source: str | Path) -> dict:
    """Load YAML and run top-level shape/version checks."""
    text = _read_source_text(source)
    try:
        data = _make_yaml().load(text)
    except YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ParseError("Top-level YAML value must be a mapping")

    version = data.get("version")
    if version is None:
        raise ParseError("Missing required field: version")
    _check_version(str(version))
    data["version"] = str(version)
    return data


def parse_scene(source: str | Path) -> SceneSpec:
    """Parse a scene from a YAML string or a ``.shapes.yaml`` path.

    Raises:
        ParseError: On YAML syntax errors, schema violations, or version mismatches.
    """
    data = load_yaml_data(source)
    try:
        return SceneSpec(**data)
    except PydanticValidationError as e:
        raise ParseError(f"Schema validation failed:\n{e}") from e


def _merge_render(base: RenderSettings, override: RenderSettings | None) -> RenderSettings:
    if override is None:
        return base
    return RenderSettings(
        resolution=override.resolution if override.resolution is not None else base.resolution,
        bounds_size=override.bounds_size if override.bounds_size is not None else base.bounds_size,
        splitting_angle=(
            override.splitting_angle
            if override.splitting_angle is not None
            else base.splitting_angle
        ),
    )


def _build_node(shape: ShapeSpec, render: RenderSettings, kernel: Kernel | None) -> ShapeNode:
    settings = _merge_render(render, shape.render)
    try:
        node = ShapeNode(
            shape.id,
            shape.op,
            params=shape.params,
            transform=shape.transform,
            enabled=shape.enabled,
            bounds_size=settings.bounds_size,
            resolution=settings.resolution,
            splitting_angle=settings.splitting_angle,
            kernel=kernel,
        )
        for child in shape.children:
            node.add_child(_build_node(child, settings, kernel))
    except InvalidArgumentError as e:
        raise ParseError(f"Shape {shape.id!r}: {e}") from e
    return node


def build_scene(spec: SceneSpec, kernel: Kernel | None = None) -> list[ShapeNode]:
    """Instantiate one ``ShapeNode`` tree per top-level shape.

    Render settings cascade: scene defaults, then each ancestor's overrides.
    """
    return [_build_node(shape, spec.render, kernel) for shape in spec.shapes]


def _check_version(version: str) -> None:
    """Validate version string compatibility."""
    parts = version.split(".")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ParseError(f"Invalid version format: {version!r}")
    if version not in SUPPORTED_VERSIONS:
        raise ParseError(
            f"Unsupported version: {version!r} (supported: {', '.join(sorted(SUPPORTED_VERSIONS))})"
        )
