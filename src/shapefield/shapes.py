"""Signed-distance style primitives: negative inside, zero on the surface."""

from __future__ import annotations

from collections.abc import Sequence

from shapefield.kernel import Kernel
from shapefield.transforms import move
from shapefield.tree import Tree, maximum, sqrt, square

Vec3 = Sequence[float]

_ORIGIN = (0.0, 0.0, 0.0)


def _axes(kernel: Kernel | None) -> tuple[Tree, Tree, Tree]:
    return Tree.x(kernel), Tree.y(kernel), Tree.z(kernel)


def circle(radius: float, *, kernel: Kernel | None = None) -> Tree:
    """Infinite cylinder along z: a 2-D circle on the xy plane centred on the origin."""
    x, y, _ = _axes(kernel)
    return sqrt(square(x) + square(y)) - radius


def sphere(radius: float, center: Vec3 = _ORIGIN, *, kernel: Kernel | None = None) -> Tree:
    x, y, z = _axes(kernel)
    cx, cy, cz = center
    return sqrt(square(x - cx) + square(y - cy) + square(z - cz)) - radius


def ellipsoid(radius: float, focus_a: Vec3, focus_b: Vec3, *, kernel: Kernel | None = None) -> Tree:
    """Points whose summed distance to the two foci is *radius*."""
    x, y, z = _axes(kernel)
    ax, ay, az = focus_a
    bx, by, bz = focus_b
    da = sqrt(square(x - ax) + square(y - ay) + square(z - az))
    db = sqrt(square(x - bx) + square(y - by) + square(z - bz))
    return da + db - radius


def box(lower: Vec3, upper: Vec3, *, kernel: Kernel | None = None) -> Tree:
    """Axis-aligned box with corners *lower* and *upper*."""
    x, y, z = _axes(kernel)
    return maximum(
        maximum(
            maximum(lower[0] - x, x - upper[0]),
            maximum(lower[1] - y, y - upper[1]),
        ),
        maximum(lower[2] - z, z - upper[2]),
    )


def extrude(shape: Tree, lower_z: float, upper_z: float) -> Tree:
    """Clamp a 2-D shape on the xy plane to the slab ``lower_z <= z <= upper_z``."""
    z = Tree.z(shape.kernel)
    return maximum(shape, maximum(lower_z - z, z - upper_z))


def cylinder(
    radius: float, height: float, base: Vec3 = _ORIGIN, *, kernel: Kernel | None = None
) -> Tree:
    """Cylinder along +z whose bottom face is centred on *base*."""
    return extrude(move(circle(radius, kernel=kernel), base), base[2], base[2] + height)
