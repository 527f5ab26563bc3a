"""Reference geometry kernel: node arena, field evaluation and polygonization.

The kernel owns every expression node. Callers hold ``NodeHandle`` values,
each an external reference with an id that is never reused, so a released
handle can never alias a newer one. Nodes are reference counted: a node stays
alive while any handle or parent node points at it.
"""

from __future__ import annotations

import itertools
import logging
import math
import threading
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from skimage import measure

from shapefield.config import RuntimeConfig, get_config
from shapefield.errors import InvalidArgumentError, InvalidOperandError, ResourceExhaustionError
from shapefield.opcodes import (
    AXIS_VARIABLES,
    BINARY_FUNCS,
    UNARY_FUNCS,
    Opcode,
    opcode_arity,
    opcode_from_name,
)

logger = logging.getLogger(__name__)

# Non-finite samples are clamped to this magnitude before surface extraction
_FIELD_CLAMP = 1.0e6

# (opcode, constant value, lhs index, rhs index); indices point into the same list
GraphEntry = tuple[Opcode, float, "int | None", "int | None"]


@dataclass(frozen=True)
class NodeHandle:
    """External reference to a kernel node."""

    ref: int


@dataclass(frozen=True)
class Region:
    """Axis-aligned box over which a tree is polygonized."""

    xlo: float
    xhi: float
    ylo: float
    yhi: float
    zlo: float
    zhi: float

    def __post_init__(self) -> None:
        for lo, hi, axis in self._named_intervals():
            if not (math.isfinite(lo) and math.isfinite(hi)):
                raise InvalidArgumentError(f"Region {axis} bounds must be finite")
            if not lo < hi:
                raise InvalidArgumentError(
                    f"Region {axis} bounds must satisfy lo < hi, got {lo}, {hi}"
                )

    @classmethod
    def from_bounds(cls, lower: Sequence[float], upper: Sequence[float]) -> Region:
        return cls(
            float(lower[0]),
            float(upper[0]),
            float(lower[1]),
            float(upper[1]),
            float(lower[2]),
            float(upper[2]),
        )

    @classmethod
    def from_center_size(cls, center: Sequence[float], size: float | Sequence[float]) -> Region:
        """Box centred on *center* with edge length *size* (scalar or per axis)."""
        c = np.asarray(center, dtype=np.float64).reshape(3)
        half = np.broadcast_to(np.asarray(size, dtype=np.float64), (3,)) / 2.0
        return cls.from_bounds(c - half, c + half)

    def _named_intervals(self) -> tuple[tuple[float, float, str], ...]:
        return (
            (self.xlo, self.xhi, "x"),
            (self.ylo, self.yhi, "y"),
            (self.zlo, self.zhi, "z"),
        )

    def intervals(self) -> tuple[tuple[float, float], ...]:
        return ((self.xlo, self.xhi), (self.ylo, self.yhi), (self.zlo, self.zhi))

    @property
    def lower(self) -> np.ndarray:
        return np.array([self.xlo, self.ylo, self.zlo], dtype=np.float64)

    @property
    def upper(self) -> np.ndarray:
        return np.array([self.xhi, self.yhi, self.zhi], dtype=np.float64)


@dataclass
class KernelMesh:
    """Raw triangle soup produced by ``Kernel.render_mesh``.

    Owned by whoever requested it until passed to ``Kernel.release_mesh``.
    """

    id: int
    vertices: np.ndarray | None  # (N, 3) float32
    triangles: np.ndarray | None  # (M, 3) uint32
    released: bool = False

    @property
    def vert_count(self) -> int:
        return 0 if self.vertices is None else len(self.vertices)

    @property
    def tri_count(self) -> int:
        return 0 if self.triangles is None else len(self.triangles)


@dataclass
class _Node:
    opcode: Opcode
    value: float = 0.0
    lhs: int | None = None
    rhs: int | None = None
    refs: int = 0


class Kernel:
    """Thread-safe node arena with evaluation and meshing entry points."""

    def __init__(self, config: RuntimeConfig | None = None) -> None:
        self._config = config
        self._lock = threading.RLock()
        self._nodes: dict[int, _Node] = {}
        self._handles: dict[int, int] = {}
        self._node_ids = itertools.count(1)
        self._ref_ids = itertools.count(1)
        self._mesh_ids = itertools.count(1)
        self._live_meshes: set[int] = set()
        self.stats: Counter[str] = Counter()

    @property
    def config(self) -> RuntimeConfig:
        return self._config if self._config is not None else get_config()

    # --- introspection -----------------------------------------------------

    @property
    def live_tree_count(self) -> int:
        with self._lock:
            return len(self._handles)

    @property
    def live_node_count(self) -> int:
        with self._lock:
            return len(self._nodes)

    @property
    def live_mesh_count(self) -> int:
        with self._lock:
            return len(self._live_meshes)

    @staticmethod
    def opcode_from_name(name: str) -> Opcode | None:
        return opcode_from_name(name)

    @staticmethod
    def opcode_arity(op: int) -> int | None:
        return opcode_arity(op)

    def is_valid(self, handle: object) -> bool:
        with self._lock:
            return isinstance(handle, NodeHandle) and handle.ref in self._handles

    def tree_id(self, handle: NodeHandle) -> int:
        """Identity of the node behind *handle*; equal for duplicated handles."""
        with self._lock:
            return self._node_of(handle)

    def tree_eq(self, a: NodeHandle, b: NodeHandle) -> bool:
        """Same operator, same payload and the same operand nodes."""
        with self._lock:
            na = self._nodes[self._node_of(a)]
            nb = self._nodes[self._node_of(b)]
            if na.opcode is not nb.opcode or na.lhs != nb.lhs or na.rhs != nb.rhs:
                return False
            if na.opcode is Opcode.CONST:
                return na.value == nb.value or (math.isnan(na.value) and math.isnan(nb.value))
            return True

    def constant_value(self, handle: NodeHandle) -> float | None:
        """Return the value of a constant node, or None for any other node."""
        with self._lock:
            node = self._nodes[self._node_of(handle)]
            return node.value if node.opcode is Opcode.CONST else None

    # --- construction ------------------------------------------------------

    def build_constant(self, value: float) -> NodeHandle:
        try:
            value = float(value)
        except (TypeError, ValueError) as e:
            raise InvalidOperandError(f"Constant value must be a real number, got {value!r}") from e
        with self._lock:
            self.stats["build_constant"] += 1
            return self._attach(self._new_node(Opcode.CONST, value))

    def build_variable(self, axis: str | Opcode) -> NodeHandle:
        opcode = AXIS_VARIABLES.get(axis) if isinstance(axis, str) else axis
        if opcode not in (Opcode.VAR_X, Opcode.VAR_Y, Opcode.VAR_Z):
            raise InvalidArgumentError(f"Unknown coordinate variable: {axis!r}")
        with self._lock:
            self.stats["build_variable"] += 1
            return self._attach(self._new_node(opcode))

    def build_unary(self, opcode: Opcode, operand: NodeHandle) -> NodeHandle:
        self._check_arity(opcode, 1)
        with self._lock:
            lhs = self._node_of(operand)
            self.stats["build_unary"] += 1
            return self._attach(self._new_node(opcode, lhs=lhs))

    def build_binary(self, opcode: Opcode, left: NodeHandle, right: NodeHandle) -> NodeHandle:
        self._check_arity(opcode, 2)
        with self._lock:
            lhs = self._node_of(left)
            rhs = self._node_of(right)
            self.stats["build_binary"] += 1
            return self._attach(self._new_node(opcode, lhs=lhs, rhs=rhs))

    def duplicate(self, handle: NodeHandle) -> NodeHandle:
        """Return a new, independently releasable handle to the same node."""
        with self._lock:
            return self._attach(self._node_of(handle))

    def remap(
        self, handle: NodeHandle, x: NodeHandle, y: NodeHandle, z: NodeHandle
    ) -> NodeHandle:
        """Substitute the coordinate variables of *handle* with other trees.

        Sub-graphs that contain no variables are shared with the source tree.
        """
        with self._lock:
            root = self._node_of(handle)
            substitutes = {
                Opcode.VAR_X: self._node_of(x),
                Opcode.VAR_Y: self._node_of(y),
                Opcode.VAR_Z: self._node_of(z),
            }
            self.stats["remap"] += 1
            mapped: dict[int, int] = {}
            for nid in self._topological(root):
                node = self._nodes[nid]
                if node.opcode in substitutes:
                    mapped[nid] = substitutes[node.opcode]
                elif node.lhs is None:
                    mapped[nid] = nid
                else:
                    lhs = mapped[node.lhs]
                    rhs = mapped[node.rhs] if node.rhs is not None else None
                    if lhs == node.lhs and rhs == node.rhs:
                        mapped[nid] = nid
                    else:
                        mapped[nid] = self._new_node(node.opcode, node.value, lhs, rhs)
            return self._attach(mapped[root])

    # --- release -----------------------------------------------------------

    def release_tree(self, handle: NodeHandle) -> None:
        """Drop one external reference. Releasing a released handle is a no-op."""
        with self._lock:
            if not isinstance(handle, NodeHandle):
                return
            nid = self._handles.pop(handle.ref, None)
            if nid is not None:
                self._decref(nid)

    def release_mesh(self, mesh: KernelMesh) -> None:
        """Free a mesh buffer. Releasing twice is a no-op."""
        with self._lock:
            if mesh.released:
                return
            mesh.released = True
            mesh.vertices = None
            mesh.triangles = None
            self._live_meshes.discard(mesh.id)

    # --- graph export/import -------------------------------------------------

    def linearize(self, handle: NodeHandle) -> list[GraphEntry]:
        """Return the graph under *handle* in topological order; the root is last."""
        with self._lock:
            return self._linearize(self._node_of(handle))

    def build_graph(self, entries: Sequence[GraphEntry]) -> NodeHandle:
        """Rebuild a graph produced by ``linearize`` (or decoded from a file)."""
        if not entries:
            raise InvalidArgumentError("Cannot build a tree from an empty graph")
        with self._lock:
            self.stats["build_graph"] += 1
            created: list[int] = []
            try:
                for index, (opcode, value, lhs, rhs) in enumerate(entries):
                    if opcode_arity(opcode) is None:
                        raise InvalidArgumentError(
                            f"Graph entry {index}: unknown opcode {opcode!r}"
                        )
                    opcode = Opcode(opcode)
                    operands = [i for i in (lhs, rhs) if i is not None]
                    if len(operands) != opcode.arity or (rhs is not None and lhs is None):
                        raise InvalidArgumentError(
                            f"Graph entry {index}: {opcode.label!r} "
                            f"expects {opcode.arity} operand(s)"
                        )
                    if any(not 0 <= i < index for i in operands):
                        raise InvalidArgumentError(
                            f"Graph entry {index}: operand index out of order"
                        )
                    nid = self._new_node(
                        opcode,
                        float(value),
                        created[lhs] if lhs is not None else None,
                        created[rhs] if rhs is not None else None,
                    )
                    # Hold every node until the root is attached; unused entries are then freed
                    self._nodes[nid].refs += 1
                    created.append(nid)
                return self._attach(created[-1])
            finally:
                for nid in reversed(created):
                    self._decref(nid)

    # --- evaluation --------------------------------------------------------

    def evaluate(self, handle: NodeHandle, points: np.ndarray | Sequence[float]) -> np.ndarray:
        """Evaluate the field at *points* (shape (N, 3) or (3,)); returns shape (N,)."""
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim == 1:
            pts = pts.reshape(1, -1)
        if pts.ndim != 2 or pts.shape[1] != 3:
            raise InvalidArgumentError(f"Points must have shape (N, 3), got {pts.shape}")
        with self._lock:
            tape = self._linearize(self._node_of(handle))
            self.stats["evaluate"] += 1
        return self._run_tape(tape, pts)

    def render_mesh(self, handle: NodeHandle, region: Region, resolution: float) -> KernelMesh:
        """Polygonize the zero level set of *handle* inside *region*.

        ``resolution`` is the target sampling step; every axis gets at least
        two samples. Raises ``ResourceExhaustionError`` when the sample grid
        exceeds ``max_grid_samples`` or memory runs out.
        """
        try:
            step = float(resolution)
        except (TypeError, ValueError) as e:
            raise InvalidArgumentError(f"Resolution must be a number, got {resolution!r}") from e
        if not (math.isfinite(step) and step > 0):
            raise InvalidArgumentError(f"Resolution must be a positive number, got {resolution!r}")
        with self._lock:
            tape = self._linearize(self._node_of(handle))
            self.stats["render_mesh"] += 1

        axes = [
            np.linspace(lo, hi, max(2, int(math.ceil((hi - lo) / step)) + 1))
            for lo, hi in region.intervals()
        ]
        sample_count = len(axes[0]) * len(axes[1]) * len(axes[2])
        budget = self.config.max_grid_samples
        if sample_count > budget:
            raise ResourceExhaustionError(
                f"Render grid of {sample_count} samples exceeds budget of {budget}"
            )

        try:
            xx, yy, zz = np.meshgrid(*axes, indexing="ij")
            points = np.column_stack([xx.ravel(), yy.ravel(), zz.ravel()])
            volume = self._run_tape(tape, points).reshape(xx.shape)
            volume = np.nan_to_num(
                volume, nan=_FIELD_CLAMP, posinf=_FIELD_CLAMP, neginf=-_FIELD_CLAMP
            )
            np.clip(volume, -_FIELD_CLAMP, _FIELD_CLAMP, out=volume)
            vertices, triangles = _extract_surface(volume, axes)
        except MemoryError as e:
            raise ResourceExhaustionError(f"Out of memory rendering {sample_count} samples") from e

        with self._lock:
            mesh = KernelMesh(id=next(self._mesh_ids), vertices=vertices, triangles=triangles)
            self._live_meshes.add(mesh.id)
        logger.debug(
            "Rendered %d vertices / %d triangles from %d samples",
            mesh.vert_count,
            mesh.tri_count,
            sample_count,
        )
        return mesh

    # --- internals ---------------------------------------------------------

    @staticmethod
    def _check_arity(opcode: Opcode, expected: int) -> None:
        if not isinstance(opcode, Opcode) or opcode.arity != expected:
            raise InvalidArgumentError(f"Opcode {opcode!r} does not take {expected} operand(s)")

    def _node_of(self, handle: object) -> int:
        nid = self._handles.get(handle.ref) if isinstance(handle, NodeHandle) else None
        if nid is None:
            raise InvalidOperandError(f"Invalid or released tree handle: {handle!r}")
        return nid

    def _new_node(
        self, opcode: Opcode, value: float = 0.0, lhs: int | None = None, rhs: int | None = None
    ) -> int:
        for operand in (lhs, rhs):
            if operand is not None:
                self._nodes[operand].refs += 1
        nid = next(self._node_ids)
        self._nodes[nid] = _Node(opcode, value, lhs, rhs)
        return nid

    def _attach(self, nid: int) -> NodeHandle:
        self._nodes[nid].refs += 1
        ref = next(self._ref_ids)
        self._handles[ref] = nid
        return NodeHandle(ref)

    def _decref(self, nid: int) -> None:
        pending = [nid]
        while pending:
            current = pending.pop()
            node = self._nodes[current]
            node.refs -= 1
            if node.refs == 0:
                del self._nodes[current]
                pending.extend(op for op in (node.lhs, node.rhs) if op is not None)

    def _topological(self, root: int) -> list[int]:
        """Iterative post-order walk: operands always precede their users."""
        order: list[int] = []
        visited: set[int] = set()
        stack: list[tuple[int, bool]] = [(root, False)]
        while stack:
            nid, expanded = stack.pop()
            if expanded:
                order.append(nid)
                continue
            if nid in visited:
                continue
            visited.add(nid)
            stack.append((nid, True))
            node = self._nodes[nid]
            for operand in (node.rhs, node.lhs):
                if operand is not None and operand not in visited:
                    stack.append((operand, False))
        return order

    def _linearize(self, root: int) -> list[GraphEntry]:
        order = self._topological(root)
        index = {nid: i for i, nid in enumerate(order)}
        entries: list[GraphEntry] = []
        for nid in order:
            node = self._nodes[nid]
            entries.append(
                (
                    node.opcode,
                    node.value,
                    index[node.lhs] if node.lhs is not None else None,
                    index[node.rhs] if node.rhs is not None else None,
                )
            )
        return entries

    def _run_tape(self, tape: list[GraphEntry], points: np.ndarray) -> np.ndarray:
        out = np.empty(len(points), dtype=np.float64)
        chunk = self.config.eval_chunk_size
        with np.errstate(all="ignore"):
            for start in range(0, len(points), chunk):
                block = points[start : start + chunk]
                out[start : start + len(block)] = _execute(tape, block)
        return out


def _execute(tape: list[GraphEntry], block: np.ndarray) -> np.ndarray:
    """Evaluate a linearized graph over one block of points."""
    values: list[np.ndarray | np.float64] = []
    for opcode, value, lhs, rhs in tape:
        if opcode is Opcode.CONST:
            result = np.float64(value)
        elif opcode is Opcode.VAR_X:
            result = block[:, 0]
        elif opcode is Opcode.VAR_Y:
            result = block[:, 1]
        elif opcode is Opcode.VAR_Z:
            result = block[:, 2]
        elif rhs is None:
            result = UNARY_FUNCS[opcode](values[lhs])
        else:
            result = BINARY_FUNCS[opcode](values[lhs], values[rhs])
        values.append(result)
    return np.broadcast_to(np.asarray(values[-1], dtype=np.float64), (len(block),))


def _extract_surface(volume: np.ndarray, axes: list[np.ndarray]) -> tuple[np.ndarray, np.ndarray]:
    """Marching cubes over a sampled (nx, ny, nz) field; empty when no sign change."""
    if not volume.min() < 0.0 < volume.max():
        return np.zeros((0, 3), dtype=np.float32), np.zeros((0, 3), dtype=np.uint32)

    spacing = tuple(float(a[1] - a[0]) for a in axes)
    origin = np.array([a[0] for a in axes], dtype=np.float64)
    verts, faces, _normals, _values = measure.marching_cubes(
        volume,
        level=0.0,
        spacing=spacing,
        gradient_direction="descent",
        allow_degenerate=False,
    )
    vertices = (np.asarray(verts, dtype=np.float64) + origin).astype(np.float32)
    return vertices, np.asarray(faces, dtype=np.uint32).reshape(-1, 3)


_default_kernel: Kernel | None = None
_default_lock = threading.Lock()


def default_kernel() -> Kernel:
    """Return the process-wide kernel, creating it on first use."""
    global _default_kernel
    with _default_lock:
        if _default_kernel is None:
            _default_kernel = Kernel()
        return _default_kernel
