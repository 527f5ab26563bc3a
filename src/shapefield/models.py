"""Pydantic v2 schema models for shapefield scene files."""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SUPPORTED_VERSIONS: frozenset[str] = frozenset({"0.1"})


class Transform(BaseModel):
    model_config = ConfigDict(extra="forbid")

    translation: tuple[float, float, float] | None = None
    rotation_euler: tuple[float, float, float] | None = None  # radians, XYZ order
    rotation_degrees: tuple[float, float, float] | None = None
    rotation_quat: tuple[float, float, float, float] | None = None  # (x, y, z, w)
    scale: float | tuple[float, float, float] | None = None

    @model_validator(mode="after")
    def _normalize_rotation_fields(self) -> Transform:
        forms = [
            self.rotation_euler is not None,
            self.rotation_degrees is not None,
            self.rotation_quat is not None,
        ]
        if sum(forms) > 1:
            raise ValueError(
                "Transform must set at most one rotation form "
                "(rotation_euler, rotation_degrees, rotation_quat)"
            )

        if self.rotation_degrees is not None:
            self.rotation_euler = tuple(math.radians(v) for v in self.rotation_degrees)

        if self.rotation_quat is not None and not any(self.rotation_quat):
            raise ValueError("rotation_quat must not be the zero quaternion")

        if self.scale is not None:
            factors = (self.scale,) * 3 if isinstance(self.scale, (int, float)) else self.scale
            if any(f == 0 or not math.isfinite(f) for f in factors):
                raise ValueError(f"scale factors must be finite and non-zero, got {self.scale!r}")

        return self

    def is_identity(self) -> bool:
        return (
            self.translation is None
            and self.rotation_euler is None
            and self.rotation_quat is None
            and self.scale is None
        )


class RenderSettings(BaseModel):
    """Meshing parameters; unset fields inherit from the enclosing scope."""

    model_config = ConfigDict(extra="forbid")

    resolution: float | None = Field(default=None, gt=0)
    bounds_size: float | None = Field(default=None, gt=0)
    splitting_angle: float | None = Field(default=None, ge=0, le=180)


class ShapeSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    op: str
    params: dict[str, Any] = {}
    transform: Transform | None = None
    enabled: bool = True
    render: RenderSettings | None = None
    children: list[ShapeSpec] = []

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("shape id must not be blank")
        return v


class SceneSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str
    render: RenderSettings = RenderSettings()
    shapes: list[ShapeSpec] = []

    @model_validator(mode="after")
    def _unique_ids(self) -> SceneSpec:
        seen: set[str] = set()
        pending = list(self.shapes)
        while pending:
            shape = pending.pop()
            if shape.id in seen:
                raise ValueError(f"Duplicate shape id: {shape.id!r}")
            seen.add(shape.id)
            pending.extend(shape.children)
        return self

    def iter_shapes(self):
        """Yield every shape spec depth-first in file order."""
        stack = list(reversed(self.shapes))
        while stack:
            shape = stack.pop()
            yield shape
            stack.extend(reversed(shape.children))

    def find(self, shape_id: str) -> ShapeSpec | None:
        for shape in self.iter_shapes():
            if shape.id == shape_id:
                return shape
        return None
