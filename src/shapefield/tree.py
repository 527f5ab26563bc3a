"""Expression-tree values with arithmetic operator overloading."""

from __future__ import annotations

import numbers
import weakref
from collections.abc import Sequence
from pathlib import Path

import numpy as np

from shapefield.context import active_context
from shapefield.errors import InvalidArgumentError, InvalidOperandError, PersistenceError
from shapefield.kernel import Kernel, NodeHandle, default_kernel
from shapefield.opcodes import Opcode, opcode_from_name
from shapefield.persistence import deserialize_tree, parse_tree, print_tree, serialize_tree


class Tree:
    """A node of an implicit-field expression graph.

    Trees are immutable: every operation builds a new node. A tree registers
    with the active ``Context`` when created and is released when that context
    exits, unless removed from it first. A tree that is neither owned by a
    context nor disposed is released once it is garbage collected.
    """

    def __init__(self, handle: NodeHandle, kernel: Kernel | None = None, *, register: bool = True):
        self._kernel = kernel if kernel is not None else default_kernel()
        self._handle: NodeHandle | None = handle
        self._release = weakref.finalize(self, self._kernel.release_tree, handle)
        self._release.atexit = False
        if register:
            ctx = active_context()
            if ctx is not None:
                ctx.add(self)

    # --- constructors ------------------------------------------------------

    @classmethod
    def constant(cls, value: float, kernel: Kernel | None = None) -> Tree:
        kernel = kernel if kernel is not None else default_kernel()
        return cls(kernel.build_constant(value), kernel)

    @classmethod
    def x(cls, kernel: Kernel | None = None) -> Tree:
        kernel = kernel if kernel is not None else default_kernel()
        return cls(kernel.build_variable("x"), kernel)

    @classmethod
    def y(cls, kernel: Kernel | None = None) -> Tree:
        kernel = kernel if kernel is not None else default_kernel()
        return cls(kernel.build_variable("y"), kernel)

    @classmethod
    def z(cls, kernel: Kernel | None = None) -> Tree:
        kernel = kernel if kernel is not None else default_kernel()
        return cls(kernel.build_variable("z"), kernel)

    @classmethod
    def lift(cls, value: object, kernel: Kernel | None = None) -> Tree:
        """Return *value* if it is a tree, else wrap a real number as a constant."""
        if isinstance(value, Tree):
            return value
        if isinstance(value, numbers.Real) and not isinstance(value, bool):
            return cls.constant(float(value), kernel)
        raise InvalidOperandError(f"Expected a Tree or a real number, got {value!r}")

    @classmethod
    def load(cls, path: str | Path, kernel: Kernel | None = None) -> Tree:
        """Load a tree saved with ``Tree.save`` (text or binary is auto-detected)."""
        kernel = kernel if kernel is not None else default_kernel()
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise PersistenceError(f"Cannot read tree file: {e}") from e
        if data.startswith(b"SFT1"):
            return cls(deserialize_tree(kernel, data), kernel)
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PersistenceError(f"Tree file is neither SFT1 binary nor text: {e}") from e
        return cls(parse_tree(kernel, text), kernel)

    @classmethod
    def parse(cls, text: str, kernel: Kernel | None = None) -> Tree:
        kernel = kernel if kernel is not None else default_kernel()
        return cls(parse_tree(kernel, text), kernel)

    # --- handle management -------------------------------------------------

    @property
    def kernel(self) -> Kernel:
        return self._kernel

    @property
    def handle(self) -> NodeHandle:
        """The live kernel handle; raises ``InvalidOperandError`` once released."""
        if self._handle is None or not self._kernel.is_valid(self._handle):
            raise InvalidOperandError("Tree has been released")
        return self._handle

    @property
    def valid(self) -> bool:
        return self._handle is not None and self._kernel.is_valid(self._handle)

    @property
    def id(self) -> int:
        """Identity of the underlying node (shared by ``retain`` copies)."""
        return self._kernel.tree_id(self.handle)

    def dispose(self) -> None:
        """Release the native handle. Safe to call any number of times."""
        self._handle = None
        self._release()

    def retain(self) -> Tree:
        """Return an unregistered reference to the same node, owned by the caller."""
        return Tree(self._kernel.duplicate(self.handle), self._kernel, register=False)

    def same_as(self, other: Tree) -> bool:
        """Structural equality: same operator and the very same operand nodes."""
        return self._kernel.tree_eq(self.handle, _operand(other, self._kernel))

    # --- evaluation & transforms ------------------------------------------

    def eval(self, points: np.ndarray | Sequence[float]) -> np.ndarray:
        return self._kernel.evaluate(self.handle, points)

    def value_at(self, x: float, y: float, z: float) -> float:
        return float(self._kernel.evaluate(self.handle, (x, y, z))[0])

    def remap(self, x: Tree | float, y: Tree | float, z: Tree | float) -> Tree:
        """Substitute the coordinate variables with other expressions."""
        k = self._kernel
        xs, ys, zs = (Tree.lift(v, k) for v in (x, y, z))
        return Tree(k.remap(self.handle, _operand(xs, k), _operand(ys, k), _operand(zs, k)), k)

    def constant_value(self) -> float | None:
        return self._kernel.constant_value(self.handle)

    # --- persistence -------------------------------------------------------

    def to_sexpr(self) -> str:
        return print_tree(self._kernel, self.handle)

    def to_bytes(self) -> bytes:
        return serialize_tree(self._kernel, self.handle)

    def save(self, path: str | Path, *, binary: bool = False) -> None:
        try:
            if binary:
                Path(path).write_bytes(self.to_bytes())
            else:
                Path(path).write_text(self.to_sexpr() + "\n", encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Cannot write tree file: {e}") from e

    def __str__(self) -> str:
        return self.to_sexpr() if self.valid else "<released>"

    def __repr__(self) -> str:
        if not self.valid:
            return "Tree(<released>)"
        return f"Tree(id={self.id})"

    # --- operators ---------------------------------------------------------

    def __add__(self, other):
        return binary(Opcode.ADD, self, other)

    def __radd__(self, other):
        return binary(Opcode.ADD, other, self)

    def __sub__(self, other):
        return binary(Opcode.SUB, self, other)

    def __rsub__(self, other):
        return binary(Opcode.SUB, other, self)

    def __mul__(self, other):
        return binary(Opcode.MUL, self, other)

    def __rmul__(self, other):
        return binary(Opcode.MUL, other, self)

    def __truediv__(self, other):
        return binary(Opcode.DIV, self, other)

    def __rtruediv__(self, other):
        return binary(Opcode.DIV, other, self)

    def __mod__(self, other):
        return binary(Opcode.MOD, self, other)

    def __rmod__(self, other):
        return binary(Opcode.MOD, other, self)

    def __pow__(self, other):
        return binary(Opcode.POW, self, other)

    def __rpow__(self, other):
        return binary(Opcode.POW, other, self)

    def __neg__(self):
        return unary(Opcode.NEG, self)

    def __abs__(self):
        return unary(Opcode.ABS, self)


def _operand(value: object, kernel: Kernel) -> NodeHandle:
    if not isinstance(value, Tree):
        raise InvalidOperandError(f"Expected a Tree, got {value!r}")
    if value.kernel is not kernel:
        raise InvalidOperandError("Operands belong to different kernels")
    return value.handle


def _kernel_of(*values: object) -> Kernel | None:
    for value in values:
        if isinstance(value, Tree):
            return value.kernel
    return None


def _resolve(op: Opcode | str, arity: int) -> Opcode:
    opcode = opcode_from_name(op) if isinstance(op, str) else op
    if not isinstance(opcode, Opcode) or opcode.arity != arity:
        kind = "unary" if arity == 1 else "binary"
        raise InvalidArgumentError(f"Unsupported {kind} opcode: {op!r}")
    return opcode


def unary(op: Opcode | str, operand: Tree | float) -> Tree:
    """Apply a unary opcode (by enum or label such as ``"sqrt"``)."""
    opcode = _resolve(op, 1)
    if operand is None:
        raise InvalidOperandError("Operand must not be None")
    kernel = _kernel_of(operand) or default_kernel()
    a = Tree.lift(operand, kernel)
    return Tree(kernel.build_unary(opcode, _operand(a, kernel)), kernel)


def binary(op: Opcode | str, left: Tree | float, right: Tree | float) -> Tree:
    """Apply a binary opcode (by enum or label such as ``"atan2"``)."""
    opcode = _resolve(op, 2)
    if left is None or right is None:
        raise InvalidOperandError("Operands must not be None")
    kernel = _kernel_of(left, right) or default_kernel()
    a = Tree.lift(left, kernel)
    b = Tree.lift(right, kernel)
    return Tree(kernel.build_binary(opcode, _operand(a, kernel), _operand(b, kernel)), kernel)


# --- named unary functions -------------------------------------------------


def square(t):
    return unary(Opcode.SQUARE, t)


def sqrt(t):
    return unary(Opcode.SQRT, t)


def sin(t):
    return unary(Opcode.SIN, t)


def cos(t):
    return unary(Opcode.COS, t)


def tan(t):
    return unary(Opcode.TAN, t)


def asin(t):
    return unary(Opcode.ASIN, t)


def acos(t):
    return unary(Opcode.ACOS, t)


def atan(t):
    return unary(Opcode.ATAN, t)


def exp(t):
    return unary(Opcode.EXP, t)


def log(t):
    return unary(Opcode.LOG, t)


def recip(t):
    return unary(Opcode.RECIP, t)


# --- named binary functions ------------------------------------------------


def minimum(a, b):
    return binary(Opcode.MIN, a, b)


def maximum(a, b):
    return binary(Opcode.MAX, a, b)


def atan2(a, b):
    return binary(Opcode.ATAN2, a, b)


def pow(a, b):
    return binary(Opcode.POW, a, b)


def nth_root(a, b):
    return binary(Opcode.NTH_ROOT, a, b)


def nanfill(a, b):
    return binary(Opcode.NANFILL, a, b)


def compare(a, b):
    return binary(Opcode.COMPARE, a, b)
