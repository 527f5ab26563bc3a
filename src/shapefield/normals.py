"""Vertex normal generation with angle-based hard-edge splitting."""

from __future__ import annotations

import numpy as np

MAX_SPLITTING_ANGLE = 180.0


def face_normals(positions: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Unnormalized face normals; the length is twice the triangle area."""
    p = np.asarray(positions, dtype=np.float64)
    t = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    v0, v1, v2 = p[t[:, 0]], p[t[:, 1]], p[t[:, 2]]
    return np.cross(v1 - v0, v2 - v0)


def _normalize(vectors: np.ndarray) -> np.ndarray:
    lengths = np.linalg.norm(vectors, axis=1, keepdims=True)
    out = np.zeros_like(vectors)
    np.divide(vectors, lengths, out=out, where=lengths > 0)
    return out


def smooth_normals(positions: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Area-weighted per-vertex normals, unit length.

    Vertices touched only by zero-area triangles (or by none) get ``(0, 0, 0)``.
    """
    p = np.asarray(positions, dtype=np.float64)
    t = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    accum = np.zeros((len(p), 3), dtype=np.float64)
    if len(t):
        fn = face_normals(p, t)
        for corner in range(3):
            np.add.at(accum, t[:, corner], fn)
    return _normalize(accum)


def corner_angles(positions: np.ndarray, triangles: np.ndarray, normals: np.ndarray) -> np.ndarray:
    """Angle in degrees between each triangle's face normal and its corners' normals.

    Returns shape (M, 3). A zero-length normal on either side counts as 0 degrees.
    """
    t = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    fn = _normalize(face_normals(positions, t))
    vn = _normalize(np.asarray(normals, dtype=np.float64))[t]  # (M, 3, 3)
    cos = np.einsum("mcj,mj->mc", vn, fn)
    degenerate = (np.linalg.norm(vn, axis=2) == 0) | (np.linalg.norm(fn, axis=1) == 0)[:, None]
    angles = np.degrees(np.arccos(np.clip(cos, -1.0, 1.0)))
    angles[degenerate] = 0.0
    return angles


def _compact(positions: np.ndarray, triangles: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    used, remap = np.unique(triangles.reshape(-1), return_inverse=True)
    return positions[used], remap.reshape(-1, 3)


def split_normals(
    positions: np.ndarray, triangles: np.ndarray, angle: float = MAX_SPLITTING_ANGLE
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Duplicate vertices at corners sharper than *angle* degrees.

    Returns ``(positions, triangles, normals)``. ``angle >= 180`` returns the
    smooth baseline unchanged; ``angle <= 0`` gives every triangle its own
    three vertices.
    """
    p = np.asarray(positions, dtype=np.float64)
    t = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)

    if angle >= MAX_SPLITTING_ANGLE or len(t) == 0:
        return p, t, smooth_normals(p, t)

    if angle <= 0.0:
        disjoint = p[t.reshape(-1)]
        t = np.arange(len(disjoint), dtype=np.int64).reshape(-1, 3)
        return disjoint, t, smooth_normals(disjoint, t)

    baseline = smooth_normals(p, t)
    split = corner_angles(p, t, baseline) > angle
    if not split.any():
        return p, t, baseline

    t = t.copy()
    corners = np.flatnonzero(split.reshape(-1))
    flat = t.reshape(-1)
    extra = p[flat[corners]]
    flat[corners] = np.arange(len(p), len(p) + len(corners))
    p, t = _compact(np.concatenate([p, extra], axis=0), t)
    return p, t, smooth_normals(p, t)
