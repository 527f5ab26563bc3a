"""Rotation and affine matrix helpers for shape-node frames."""

from __future__ import annotations

import math

import numpy as np

from shapefield.models import Transform


def euler_to_matrix(rx: float, ry: float, rz: float) -> np.ndarray:
    """Convert Euler angles (radians, XYZ order) to a 3x3 rotation matrix."""
    cx, sx = math.cos(rx), math.sin(rx)
    cy, sy = math.cos(ry), math.sin(ry)
    cz, sz = math.cos(rz), math.sin(rz)

    # Rotation order: X then Y then Z
    Rx = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]], dtype=np.float64)
    Ry = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]], dtype=np.float64)
    Rz = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]], dtype=np.float64)

    return Rz @ Ry @ Rx


def quat_to_matrix(qx: float, qy: float, qz: float, qw: float) -> np.ndarray:
    """Convert a quaternion (x, y, z, w) to a 3x3 rotation matrix; normalized first."""
    norm = math.sqrt(qx * qx + qy * qy + qz * qz + qw * qw)
    qx, qy, qz, qw = qx / norm, qy / norm, qz / norm, qw / norm
    x2, y2, z2 = qx + qx, qy + qy, qz + qz
    xx, xy, xz = qx * x2, qx * y2, qx * z2
    yy, yz, zz = qy * y2, qy * z2, qz * z2
    wx, wy, wz = qw * x2, qw * y2, qw * z2

    return np.array(
        [
            [1 - (yy + zz), xy - wz, xz + wy],
            [xy + wz, 1 - (xx + zz), yz - wx],
            [xz - wy, yz + wx, 1 - (xx + yy)],
        ],
        dtype=np.float64,
    )


def transform_to_matrix(transform: Transform | None) -> np.ndarray:
    """Compose translation @ rotation @ scale into a 4x4 matrix."""
    m = np.eye(4, dtype=np.float64)
    if transform is None:
        return m

    if transform.rotation_quat is not None:
        rot = quat_to_matrix(*transform.rotation_quat)
    elif transform.rotation_euler is not None:
        rot = euler_to_matrix(*transform.rotation_euler)
    else:
        rot = np.eye(3, dtype=np.float64)

    if transform.scale is not None:
        s = np.broadcast_to(np.asarray(transform.scale, dtype=np.float64), (3,))
        rot = rot @ np.diag(s)

    m[:3, :3] = rot
    if transform.translation is not None:
        m[:3, 3] = transform.translation
    return m


def matrix_translation(matrix: np.ndarray) -> tuple[float, float, float]:
    return float(matrix[0, 3]), float(matrix[1, 3]), float(matrix[2, 3])
