"""Coordinate-remapping transforms.

Every transform substitutes new expressions for ``x``, ``y`` and ``z``, so the
mapping applied is always the inverse of the intended motion: moving a shape
by ``+v`` remaps space by ``-v``.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from shapefield.errors import InvalidArgumentError
from shapefield.frames import euler_to_matrix
from shapefield.tree import Tree

# Matrices with |det| below this are treated as singular
_SINGULAR_EPS = 1e-12


def _axes(t: Tree) -> tuple[Tree, Tree, Tree]:
    return Tree.x(t.kernel), Tree.y(t.kernel), Tree.z(t.kernel)


def move(t: Tree, offset: Sequence[float]) -> Tree:
    x, y, z = _axes(t)
    return t.remap(x - float(offset[0]), y - float(offset[1]), z - float(offset[2]))


def transform(t: Tree, matrix: np.ndarray | Sequence[Sequence[float]]) -> Tree:
    """Apply a 4x4 affine *matrix* (column-vector convention) to *t*."""
    m = np.asarray(matrix, dtype=np.float64)
    if m.shape != (4, 4):
        raise InvalidArgumentError(f"Transform matrix must be 4x4, got shape {m.shape}")
    if not np.all(np.isfinite(m)):
        raise InvalidArgumentError("Transform matrix must be finite")
    if abs(np.linalg.det(m[:3, :3])) < _SINGULAR_EPS:
        raise InvalidArgumentError("Transform matrix is singular")
    inv = np.linalg.inv(m)
    x, y, z = _axes(t)
    rows = [
        float(inv[i, 0]) * x + float(inv[i, 1]) * y + float(inv[i, 2]) * z + float(inv[i, 3])
        for i in range(3)
    ]
    return t.remap(*rows)


def scale(
    t: Tree, factors: float | Sequence[float], center: Sequence[float] = (0.0, 0.0, 0.0)
) -> Tree:
    """Scale about *center*, uniformly or per axis."""
    s = np.broadcast_to(np.asarray(factors, dtype=np.float64), (3,))
    c = np.asarray(center, dtype=np.float64)
    m = np.eye(4)
    m[:3, :3] = np.diag(s)
    m[:3, 3] = c - s * c
    return transform(t, m)


def rotate(t: Tree, euler: Sequence[float], center: Sequence[float] = (0.0, 0.0, 0.0)) -> Tree:
    """Rotate by XYZ Euler angles in radians about *center*."""
    r = euler_to_matrix(*euler)
    c = np.asarray(center, dtype=np.float64)
    m = np.eye(4)
    m[:3, :3] = r
    m[:3, 3] = c - r @ c
    return transform(t, m)


def reflect_x(t: Tree, offset: float = 0.0) -> Tree:
    """Mirror across the plane ``x = offset``."""
    x, y, z = _axes(t)
    return t.remap(2.0 * offset - x, y, z)


def reflect_y(t: Tree, offset: float = 0.0) -> Tree:
    x, y, z = _axes(t)
    return t.remap(x, 2.0 * offset - y, z)


def reflect_z(t: Tree, offset: float = 0.0) -> Tree:
    x, y, z = _axes(t)
    return t.remap(x, y, 2.0 * offset - z)


def reflect_xy(t: Tree) -> Tree:
    """Mirror across the plane ``x = y``."""
    x, y, z = _axes(t)
    return t.remap(y, x, z)


def reflect_yz(t: Tree) -> Tree:
    x, y, z = _axes(t)
    return t.remap(x, z, y)


def reflect_xz(t: Tree) -> Tree:
    x, y, z = _axes(t)
    return t.remap(z, y, x)


def symmetric_x(t: Tree) -> Tree:
    """Keep the ``x >= 0`` half of *t* and mirror it onto ``x < 0``."""
    x, y, z = _axes(t)
    return t.remap(abs(x), y, z)


def symmetric_y(t: Tree) -> Tree:
    x, y, z = _axes(t)
    return t.remap(x, abs(y), z)


def symmetric_z(t: Tree) -> Tree:
    x, y, z = _axes(t)
    return t.remap(x, y, abs(z))
