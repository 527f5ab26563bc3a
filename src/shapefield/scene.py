"""Shape-node hierarchy with fingerprint-based evaluation caching."""

from __future__ import annotations

import hashlib
import itertools
import json
import logging
import math
from collections.abc import Callable, Iterator, Mapping
from enum import Enum
from typing import Any

import numpy as np

from shapefield import csg, shapes
from shapefield.config import get_config
from shapefield.context import Context
from shapefield.errors import InvalidArgumentError, InvalidOperandError
from shapefield.frames import transform_to_matrix
from shapefield.kernel import Kernel, default_kernel
from shapefield.models import Transform
from shapefield.transforms import symmetric_x, symmetric_y, symmetric_z, transform
from shapefield.tree import Tree
from shapefield.warning_policy import emit_warning

logger = logging.getLogger(__name__)


class Arity(Enum):
    NONARY = "nonary"
    UNARY = "unary"
    NARY = "nary"


class Operation(Enum):
    """Closed set of shape-node operations, each with a declared arity."""

    CIRCLE = ("circle", Arity.NONARY)
    SPHERE = ("sphere", Arity.NONARY)
    BOX = ("box", Arity.NONARY)
    CYLINDER = ("cylinder", Arity.NONARY)
    ELLIPSOID = ("ellipsoid", Arity.NONARY)
    TRANSFORM = ("transform", Arity.UNARY)
    INVERSE = ("inverse", Arity.UNARY)
    MIRROR = ("mirror", Arity.UNARY)
    SHELL = ("shell", Arity.UNARY)
    UNION = ("union", Arity.NARY)
    INTERSECTION = ("intersection", Arity.NARY)
    DIFFERENCE = ("difference", Arity.NARY)
    BLEND = ("blend", Arity.NARY)

    def __init__(self, label: str, arity: Arity) -> None:
        self.label = label
        self.arity = arity

    @classmethod
    def from_label(cls, label: str) -> Operation:
        for op in cls:
            if op.label == label:
                return op
        raise InvalidArgumentError(
            f"Unknown shape operation {label!r}; expected one of {sorted(o.label for o in cls)}"
        )

    @classmethod
    def coerce(cls, value: Operation | str) -> Operation:
        return value if isinstance(value, Operation) else cls.from_label(value)


class NodeState(Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    EVALUATING = "evaluating"


_VEC3_ZERO = (0.0, 0.0, 0.0)

DEFAULT_PARAMS: dict[Operation, dict[str, Any]] = {
    Operation.CIRCLE: {"radius": 0.5},
    Operation.SPHERE: {"radius": 0.5, "center": _VEC3_ZERO},
    Operation.BOX: {"lower": (-0.5, -0.5, -0.5), "upper": (0.5, 0.5, 0.5)},
    Operation.CYLINDER: {"radius": 0.5, "height": 1.0, "base": (0.0, 0.0, -0.5)},
    Operation.ELLIPSOID: {"radius": 1.0, "focus_a": (-0.25, 0.0, 0.0), "focus_b": (0.25, 0.0, 0.0)},
    Operation.TRANSFORM: {},
    Operation.INVERSE: {},
    Operation.MIRROR: {"axis": "x"},
    Operation.SHELL: {"offset": 0.025},
    Operation.UNION: {},
    Operation.INTERSECTION: {},
    Operation.DIFFERENCE: {},
    Operation.BLEND: {"amount": 0.5},
}

_MIRROR_AXES = {"x": symmetric_x, "y": symmetric_y, "z": symmetric_z}


def _coerce_param(op: Operation, name: str, value: Any, default: Any) -> Any:
    if isinstance(default, tuple):
        try:
            vec = tuple(float(v) for v in value)
        except (TypeError, ValueError):
            vec = ()
        if len(vec) != 3 or not all(math.isfinite(v) for v in vec):
            raise InvalidArgumentError(f"{op.label}.{name} must be 3 finite numbers, got {value!r}")
        return vec
    if isinstance(default, str):
        if op is Operation.MIRROR and value not in _MIRROR_AXES:
            raise InvalidArgumentError(f"mirror.axis must be one of x, y, z; got {value!r}")
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InvalidArgumentError(f"{op.label}.{name} must be a finite number, got {value!r}")
    return float(value)


def resolve_params(op: Operation, params: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge *params* over the operation's defaults, validating names and types."""
    defaults = DEFAULT_PARAMS[op]
    resolved = dict(defaults)
    for name, value in (params or {}).items():
        if name not in defaults:
            allowed = ", ".join(sorted(defaults)) or "none"
            raise InvalidArgumentError(
                f"Unknown parameter {name!r} for {op.label} (allowed: {allowed})"
            )
        resolved[name] = _coerce_param(op, name, value, defaults[name])
    return resolved


def _render_setting(name: str, value: Any, lo: float, hi: float, *, lo_open: bool) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InvalidArgumentError(f"{name} must be a finite number, got {value!r}")
    if value > hi or value < lo or (lo_open and value == lo):
        bound = f"> {lo:g}" if lo_open else f">= {lo:g}"
        if math.isfinite(hi):
            bound += f" and <= {hi:g}"
        raise InvalidArgumentError(f"{name} must be {bound}, got {value!r}")
    return float(value)


# --- per-operation builders -------------------------------------------------


def _build_circle(p: dict, kernel: Kernel) -> Tree:
    return shapes.circle(p["radius"], kernel=kernel)


def _build_sphere(p: dict, kernel: Kernel) -> Tree:
    return shapes.sphere(p["radius"], p["center"], kernel=kernel)


def _build_box(p: dict, kernel: Kernel) -> Tree:
    return shapes.box(p["lower"], p["upper"], kernel=kernel)


def _build_cylinder(p: dict, kernel: Kernel) -> Tree:
    return shapes.cylinder(p["radius"], p["height"], p["base"], kernel=kernel)


def _build_ellipsoid(p: dict, kernel: Kernel) -> Tree:
    return shapes.ellipsoid(p["radius"], p["focus_a"], p["focus_b"], kernel=kernel)


_NONARY_BUILDERS: dict[Operation, Callable[[dict, Kernel], Tree]] = {
    Operation.CIRCLE: _build_circle,
    Operation.SPHERE: _build_sphere,
    Operation.BOX: _build_box,
    Operation.CYLINDER: _build_cylinder,
    Operation.ELLIPSOID: _build_ellipsoid,
}

_UNARY_BUILDERS: dict[Operation, Callable[[Tree, dict], Tree]] = {
    Operation.TRANSFORM: lambda t, p: t,
    Operation.INVERSE: lambda t, p: csg.inverse(t),
    Operation.MIRROR: lambda t, p: _MIRROR_AXES[p["axis"]](t),
    Operation.SHELL: lambda t, p: csg.shell(t, p["offset"]),
}

_NARY_BUILDERS: dict[Operation, Callable[[list[Tree], dict], Tree]] = {
    Operation.UNION: lambda ts, p: csg.union(ts),
    Operation.INTERSECTION: lambda ts, p: csg.intersection(ts),
    Operation.DIFFERENCE: lambda ts, p: csg.difference(ts),
    Operation.BLEND: lambda ts, p: csg.blend_all(p["amount"], ts),
}

_uids = itertools.count(1)


class ShapeNode:
    """One CSG operation in a scene hierarchy plus its cached expression tree.

    ``tree`` holds the node's shape expressed in its parent's frame (world
    frame for roots). It is rebuilt by ``evaluate()`` only when the node's
    fingerprint changed or an enabled child is dirty.
    """

    def __init__(
        self,
        name: str,
        operation: Operation | str,
        params: Mapping[str, Any] | None = None,
        transform: Transform | None = None,
        enabled: bool = True,
        bounds_size: float | None = None,
        resolution: float | None = None,
        splitting_angle: float | None = None,
        kernel: Kernel | None = None,
    ) -> None:
        config = get_config()
        self.name = name
        self.uid = next(_uids)
        self._operation = Operation.coerce(operation)
        self._params = resolve_params(self._operation, params)
        self.transform = transform
        self.enabled = enabled
        self.bounds_size = config.default_bounds_size if bounds_size is None else bounds_size
        self.resolution = config.default_resolution if resolution is None else resolution
        self.splitting_angle = (
            config.default_splitting_angle if splitting_angle is None else splitting_angle
        )
        self.kernel = kernel if kernel is not None else default_kernel()
        self.parent: ShapeNode | None = None
        self._children: list[ShapeNode] = []
        self.tree: Tree | None = None
        self.state = NodeState.DIRTY
        self.last_error: Exception | None = None
        self.evaluation_count = 0
        self._fingerprint: str | None = None

    def __repr__(self) -> str:
        return f"ShapeNode({self.name!r}, {self._operation.label}, state={self.state.value})"

    # --- structure ----------------------------------------------------------

    @property
    def operation(self) -> Operation:
        return self._operation

    def set_operation(
        self, operation: Operation | str, params: Mapping[str, Any] | None = None
    ) -> None:
        """Switch the operation; parameters reset to the new operation's defaults."""
        op = Operation.coerce(operation)
        self._check_child_count(op, len(self._children))
        resolved = resolve_params(op, params)
        self._operation = op
        self._params = resolved

    @property
    def params(self) -> dict[str, Any]:
        return dict(self._params)

    def set_params(self, **changes: Any) -> None:
        merged = {**self._params, **changes}
        self._params = resolve_params(self._operation, merged)

    # --- render settings ------------------------------------------------------

    @property
    def bounds_size(self) -> float:
        """Edge length of the cube meshed around a root's world position."""
        return self._bounds_size

    @bounds_size.setter
    def bounds_size(self, value: float) -> None:
        self._bounds_size = _render_setting("bounds_size", value, 0.0, math.inf, lo_open=True)

    @property
    def resolution(self) -> float:
        return self._resolution

    @resolution.setter
    def resolution(self, value: float) -> None:
        self._resolution = _render_setting("resolution", value, 0.0, math.inf, lo_open=True)

    @property
    def splitting_angle(self) -> float:
        return self._splitting_angle

    @splitting_angle.setter
    def splitting_angle(self, value: float) -> None:
        self._splitting_angle = _render_setting(
            "splitting_angle", value, 0.0, 180.0, lo_open=False
        )

    @property
    def children(self) -> tuple[ShapeNode, ...]:
        return tuple(self._children)

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @staticmethod
    def _check_child_count(op: Operation, count: int) -> None:
        if op.arity is Arity.NONARY and count > 0:
            raise InvalidArgumentError(f"{op.label} is a primitive and cannot have children")
        if op.arity is Arity.UNARY and count > 1:
            raise InvalidArgumentError(f"{op.label} takes exactly one child")

    def add_child(self, child: ShapeNode) -> ShapeNode:
        self._check_child_count(self._operation, len(self._children) + 1)
        if child.parent is not None:
            raise InvalidArgumentError(f"Shape {child.name!r} already has a parent")
        if child.kernel is not self.kernel:
            raise InvalidArgumentError(f"Shape {child.name!r} belongs to a different kernel")
        node: ShapeNode | None = self
        while node is not None:
            if node is child:
                raise InvalidArgumentError(
                    f"Adding {child.name!r} under {self.name!r} would form a cycle"
                )
            node = node.parent
        self._children.append(child)
        child.parent = self
        return child

    def remove_child(self, child: ShapeNode) -> None:
        if child not in self._children:
            raise InvalidArgumentError(f"Shape {child.name!r} is not a child of {self.name!r}")
        self._children.remove(child)
        child.parent = None

    def walk(self) -> Iterator[ShapeNode]:
        """Depth-first pre-order traversal of this subtree."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node._children))

    def find(self, name: str) -> ShapeNode | None:
        for node in self.walk():
            if node.name == name:
                return node
        return None

    # --- frames ---------------------------------------------------------------

    def local_matrix(self) -> np.ndarray:
        return transform_to_matrix(self.transform)

    def world_matrix(self) -> np.ndarray:
        m = self.local_matrix()
        node = self.parent
        while node is not None:
            m = node.local_matrix() @ m
            node = node.parent
        return m

    def world_position(self) -> tuple[float, float, float]:
        m = self.world_matrix()
        return float(m[0, 3]), float(m[1, 3]), float(m[2, 3])

    # --- caching --------------------------------------------------------------

    def fingerprint(self) -> str:
        """SHA-256 over operation, parameters, world matrix and enabled children."""
        h = hashlib.sha256()
        h.update(self._operation.label.encode())
        h.update(json.dumps(self._params, sort_keys=True).encode())
        h.update(np.ascontiguousarray(self.world_matrix(), dtype=np.float64).tobytes())
        for child in self._children:
            h.update(f"{child.uid}:{int(child.enabled)};".encode())
        return h.hexdigest()

    def refresh(self) -> bool:
        """Recompute dirtiness bottom-up; return True if this node needs evaluation."""
        child_dirty = False
        for child in self._children:
            if child.refresh() and child.enabled:
                child_dirty = True
        if self.state is NodeState.EVALUATING:
            return True
        if child_dirty or self._fingerprint is None or self.fingerprint() != self._fingerprint:
            self.state = NodeState.DIRTY
        else:
            self.state = NodeState.CLEAN
        return self.state is NodeState.DIRTY

    # --- evaluation -----------------------------------------------------------

    def evaluate(self) -> Tree | None:
        """Bring this subtree up to date and return the node's tree.

        Returns None when the node contributes no geometry (for example an
        operation whose children are all disabled).
        """
        self.refresh()
        return self._evaluate()

    def _evaluate(self) -> Tree | None:
        if self.state is not NodeState.DIRTY:
            return self.tree
        fingerprint = self.fingerprint()
        self.state = NodeState.EVALUATING
        try:
            with Context() as ctx:
                result = self._build()
                if result is not None:
                    matrix = self.local_matrix()
                    if not np.array_equal(matrix, np.eye(4)):
                        result = transform(result, matrix)
                    ctx.remove(result)
        except (InvalidOperandError, InvalidArgumentError) as e:
            self.last_error = e
            self._fingerprint = fingerprint
            self.state = NodeState.CLEAN
            emit_warning(
                "W02",
                f"Shape {self.name!r} failed to evaluate ({e}); keeping previous geometry",
                policy=get_config().warning_policy,
            )
            return self.tree
        except BaseException:
            self.state = NodeState.DIRTY
            raise

        previous, self.tree = self.tree, result
        if previous is not None:
            previous.dispose()
        self._fingerprint = fingerprint
        self.last_error = None
        self.state = NodeState.CLEAN
        self.evaluation_count += 1
        logger.debug("Evaluated shape %r (%s)", self.name, self._operation.label)
        return self.tree

    def _build(self) -> Tree | None:
        op = self._operation
        if op.arity is Arity.NONARY:
            return _NONARY_BUILDERS[op](self._params, self.kernel)

        trees: list[Tree] = []
        for child in self._children:
            if not child.enabled:
                continue
            child_tree = child._evaluate()
            if child_tree is not None:
                # Own handle in this context; the child keeps its cached tree
                trees.append(Tree(self.kernel.duplicate(child_tree.handle), self.kernel))
        if not trees:
            return None
        if op.arity is Arity.UNARY:
            return _UNARY_BUILDERS[op](trees[0], self._params)
        return _NARY_BUILDERS[op](trees, self._params)

    def invalidate(self) -> None:
        """Force re-evaluation on the next tick."""
        self._fingerprint = None
        self.state = NodeState.DIRTY

    def dispose(self) -> None:
        """Release the cached trees of this whole subtree."""
        for node in self.walk():
            if node.tree is not None:
                node.tree.dispose()
                node.tree = None
            node._fingerprint = None
            node.state = NodeState.DIRTY
